"""Enumerations shared by the orchestration engine."""

from enum import Enum


class RunState(str, Enum):
    """Lifecycle state of one plan run.

    Transitions::

        created -> running -> {paused, waiting_for_approval} -> running
                -> {completed, failed, cancelled}
    """

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        """Check if the run can no longer change state."""
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


class OutcomeKind(str, Enum):
    """Result of evaluating one flow node."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class FailureReason(str, Enum):
    """Reason codes attached to failed outcomes.

    Timeouts are ordinary failures; the reason code is what tells them
    apart from invoker errors.
    """

    STEP_FAILED = "step_failed"
    STEP_ERROR = "step_error"
    STEP_TIMEOUT = "step_timeout"
    APPROVAL_DENIED = "approval_denied"
    APPROVAL_TIMED_OUT = "approval_timed_out"
    APPROVAL_ERROR = "approval_error"
    CAPABILITY_NOT_FOUND = "capability_not_found"
    CONDITION_ERROR = "condition_error"
    INTERNAL_ERROR = "internal_error"

    def __str__(self) -> str:
        return self.value


class ApprovalStatus(str, Enum):
    """Status of an approval ticket."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"

    def __str__(self) -> str:
        return self.value


class StoreBackend(str, Enum):
    """Plan Store implementations selectable from configuration."""

    MEMORY = "memory"
    FILE = "file"

    def __str__(self) -> str:
        return self.value
