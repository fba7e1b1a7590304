"""
Run-scoped state for plan executions.

This module provides the ``RunContext`` dataclass that carries one plan
run's lifecycle state, shared key/value state and progress counters through
the Flow Executor, plus the value types the engine hands back to callers:

- ``Outcome``: result of evaluating one flow node
- ``RunStatus``: point-in-time snapshot answered by ``status(plan_id)``
- ``RunResult``: terminal result of a run, returned by its handle

Concurrency Model:
    A RunContext is owned by the Execution Coordinator for the run's
    lifetime. Parallel children of the same run may write the shared state
    concurrently, so every access goes through the run's own
    ``asyncio.Lock``. The lock is never shared across runs.
"""

import asyncio
import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.enums import FailureReason, OutcomeKind, RunState
from plan_orchestrator.models.plan import ExecutionPlan


def _now() -> datetime:
    return datetime.now(UTC)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Outcome:
    """Result of executing one flow node.

    Attributes:
        kind: success, failure or cancelled
        reason: Reason code for failures
        step_id: Step that produced a failure, if known
        message: Human-readable failure description
    """

    kind: OutcomeKind
    reason: FailureReason | None = None
    step_id: str | None = None
    message: str | None = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def failure(
        cls,
        reason: FailureReason,
        message: str,
        step_id: str | None = None,
    ) -> "Outcome":
        return cls(OutcomeKind.FAILURE, reason=reason, step_id=step_id, message=message)

    @classmethod
    def cancelled(cls) -> "Outcome":
        return cls(OutcomeKind.CANCELLED)

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.kind is OutcomeKind.FAILURE

    @property
    def is_cancelled(self) -> bool:
        return self.kind is OutcomeKind.CANCELLED


@dataclass(frozen=True)
class RunStatus:
    """Snapshot of a run's progress.

    ``failed_step`` and ``error`` carry the first failing step's identifier
    and reason string; no stack traces are ever exposed here.
    """

    plan_id: str
    state: RunState
    completed_steps: int
    total_steps: int
    current_step: str | None = None
    active_steps: tuple[str, ...] = ()
    pending_approvals: int = 0
    failed_step: str | None = None
    failure_reason: FailureReason | None = None
    error: str | None = None
    persistence_degraded: bool = False
    created_at: datetime | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def progress(self) -> float:
        """Fraction of steps completed, 0.0 to 1.0."""
        if self.total_steps == 0:
            return 1.0 if self.state is RunState.COMPLETED else 0.0
        return self.completed_steps / self.total_steps

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable representation used by stores and the CLI."""
        return {
            "plan_id": self.plan_id,
            "status": self.state.value,
            "completed_steps": self.completed_steps,
            "total_steps": self.total_steps,
            "progress": round(self.progress, 4),
            "current_step": self.current_step,
            "active_steps": list(self.active_steps),
            "pending_approvals": self.pending_approvals,
            "failed_step": self.failed_step,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "error": self.error,
            "persistence_degraded": self.persistence_degraded,
            "created_at": _isoformat(self.created_at),
            "started_at": _isoformat(self.started_at),
            "ended_at": _isoformat(self.ended_at),
        }


@dataclass(frozen=True)
class RunResult:
    """Terminal result of one run."""

    plan_id: str
    state: RunState
    outcome: Outcome
    completed_steps: int
    total_steps: int
    failed_step: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    shared_state: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.state is RunState.COMPLETED

    @property
    def execution_time(self) -> float | None:
        """Wall-clock duration in seconds."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class RunContext:
    """Mutable state of one in-flight plan execution.

    Attributes:
        plan: The immutable plan being executed
        state: Current lifecycle state
        shared_state: Run-scoped key/value map read by predicates and steps
        total_steps: Number of step leaves in the plan
        current_step: Most recently started step id
        active_steps: Ids of steps currently executing
        completed_step_ids: Distinct ids of steps that completed successfully
        failed_step: First failing step id
        failure_reason: Reason code of the first failure
        error: Reason string of the first failure
        persistence_degraded: Set when a Plan Store write failed
        pending_approvals: Number of approval tickets currently open
        cancel_token: Run-scoped cancellation token
    """

    plan: ExecutionPlan
    state: RunState = RunState.CREATED
    shared_state: dict[str, Any] = field(default_factory=dict)
    total_steps: int = 0
    current_step: str | None = None
    active_steps: set[str] = field(default_factory=set)
    completed_step_ids: set[str] = field(default_factory=set)
    failed_step: str | None = None
    failure_reason: FailureReason | None = None
    error: str | None = None
    persistence_degraded: bool = False
    pending_approvals: int = 0
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    ended_at: datetime | None = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    background_tasks: set["asyncio.Task[Any]"] = field(default_factory=set)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)
    _resumed: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.total_steps:
            self.total_steps = self.plan.total_steps
        self._resumed.set()

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

    @property
    def completed_steps(self) -> int:
        return len(self.completed_step_ids)

    @property
    def is_paused(self) -> bool:
        return self.state is RunState.PAUSED

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_token.cancelled

    # -- lifecycle -----------------------------------------------------------

    def mark_running(self) -> None:
        """Record the start; a run paused while queued stays paused."""
        self.started_at = self.started_at or _now()
        if self.state is RunState.CREATED:
            self.state = RunState.RUNNING

    def pause(self) -> bool:
        """Stop the next node from starting. In-flight steps are not interrupted."""
        if self.state not in (RunState.CREATED, RunState.RUNNING, RunState.WAITING_FOR_APPROVAL):
            return False
        self.state = RunState.PAUSED
        self._resumed.clear()
        return True

    def resume(self) -> bool:
        if self.state is not RunState.PAUSED:
            return False
        if self.started_at is None:
            self.state = RunState.CREATED
        elif self.pending_approvals:
            self.state = RunState.WAITING_FOR_APPROVAL
        else:
            self.state = RunState.RUNNING
        self._resumed.set()
        return True

    def cancel(self, reason: str | None = None) -> bool:
        if self.state.is_terminal:
            return False
        self.state = RunState.CANCELLED
        self.cancel_token.cancel(reason)
        # Wake anything parked on the pause signal; it re-checks the token
        self._resumed.set()
        return True

    def finish(self, state: RunState) -> None:
        self.state = state
        self.ended_at = _now()
        self.active_steps.clear()

    async def wait_if_paused(self) -> None:
        """Block while the run is paused.

        Raises:
            OperationCancelledError: The run was cancelled before or while
                waiting.
        """
        self.cancel_token.raise_if_cancelled()
        if not self._resumed.is_set():
            await self.cancel_token.run(self._resumed.wait())
        self.cancel_token.raise_if_cancelled()

    def approval_opened(self) -> None:
        self.pending_approvals += 1
        if self.state is RunState.RUNNING:
            self.state = RunState.WAITING_FOR_APPROVAL

    def approval_closed(self) -> None:
        self.pending_approvals = max(0, self.pending_approvals - 1)
        if self.pending_approvals == 0 and self.state is RunState.WAITING_FOR_APPROVAL:
            self.state = RunState.RUNNING

    # -- shared state --------------------------------------------------------

    async def read_state(self) -> dict[str, Any]:
        """Deep copy of the shared state, safe to hand to predicates and invokers."""
        async with self._lock:
            return copy.deepcopy(self.shared_state)

    async def merge_output(self, delta: Mapping[str, Any]) -> None:
        """Merge a step's output into shared state, last write wins per key."""
        if not delta:
            return
        async with self._lock:
            self.shared_state.update(delta)

    # -- progress ------------------------------------------------------------

    def step_started(self, step_id: str) -> None:
        self.current_step = step_id
        self.active_steps.add(step_id)

    def step_finished(self, step_id: str) -> None:
        self.active_steps.discard(step_id)

    def mark_step_completed(self, step_id: str) -> bool:
        """Record a completed step.

        Steps re-run by a loop count once, which keeps
        ``completed_steps <= total_steps``.

        Returns:
            True if this is the first completion of ``step_id``.
        """
        if step_id in self.completed_step_ids:
            return False
        self.completed_step_ids.add(step_id)
        return True

    def record_failure(self, outcome: Outcome) -> None:
        """Remember the first failure for status reporting."""
        if self.failed_step is not None or self.error is not None:
            return
        self.failed_step = outcome.step_id
        self.failure_reason = outcome.reason
        self.error = outcome.message

    def track_background(self, task: "asyncio.Task[Any]") -> None:
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)

    def snapshot(self) -> RunStatus:
        return RunStatus(
            plan_id=self.plan_id,
            state=self.state,
            completed_steps=self.completed_steps,
            total_steps=self.total_steps,
            current_step=self.current_step,
            active_steps=tuple(sorted(self.active_steps)),
            pending_approvals=self.pending_approvals,
            failed_step=self.failed_step,
            failure_reason=self.failure_reason,
            error=self.error,
            persistence_degraded=self.persistence_degraded,
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )

