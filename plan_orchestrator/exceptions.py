"""Custom exception hierarchy for the plan orchestrator.

Exceptions are raised only at the API boundaries of the engine.
Failures that happen *inside* a run (a step failing, an approval being
denied, a timeout) are not raised past the Flow Executor; they become
``Outcome`` values. The exceptions below are raised where a caller has to
react: starting a plan that is already running, loading a plan that does
not exist, loading an invalid configuration, and so on.

Exception Hierarchy:
    PlanOrchestratorError (base)
    ├── ConfigurationError
    ├── FlowDefinitionError
    ├── PlanNotFoundError
    ├── RunError
    │   └── AlreadyRunningError
    ├── CapabilityNotFoundError
    ├── ApprovalError
    │   └── ApprovalAlreadyPendingError
    ├── PersistenceError
    └── OperationCancelledError

Example Usage:
    >>> from plan_orchestrator.exceptions import AlreadyRunningError
    >>> try:
    ...     await coordinator.start("plan-42")
    ... except AlreadyRunningError as e:
    ...     print(f"Plan {e.plan_id} is busy")
"""


class PlanOrchestratorError(Exception):
    """Base exception for all plan orchestrator errors.

    All custom exceptions inherit from this base class, allowing callers
    to catch every orchestrator-specific error with a single except clause.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(PlanOrchestratorError):
    """The orchestrator settings cannot be loaded.

    Raised by ``OrchestratorSettings.from_yaml`` for a missing or unreadable
    file, broken YAML, a ``${VAR}`` reference to an unset variable or a
    value that fails validation, and by ``configure_logging`` for an
    unknown level name.
    """

    pass


class FlowDefinitionError(PlanOrchestratorError):
    """A plan document or flow tree is malformed.

    Examples:
        - Unknown node ``type``
        - Duplicate step ids within one plan
        - Loop without a positive ``max_iterations``
    """

    pass


class PlanNotFoundError(PlanOrchestratorError):
    """The Plan Store has no plan with the requested identifier."""

    def __init__(self, plan_id: str) -> None:
        self.plan_id = plan_id
        super().__init__(f"Execution plan not found: {plan_id}")


class RunError(PlanOrchestratorError):
    """Base class for run lifecycle errors.

    Attributes:
        plan_id: Identifier of the plan whose run was addressed
    """

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        self.plan_id = plan_id
        super().__init__(message)


class AlreadyRunningError(RunError):
    """A run is already active for the plan."""

    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Execution already in progress for plan: {plan_id}", plan_id=plan_id)


class CapabilityNotFoundError(PlanOrchestratorError):
    """No Step Invoker is registered for a capability.

    This is a configuration error: it fails the step immediately and is
    never retried.

    Attributes:
        capability: The agent identifier that could not be resolved
    """

    def __init__(self, capability: str) -> None:
        self.capability = capability
        super().__init__(f"No invoker registered for capability: {capability}")


class ApprovalError(PlanOrchestratorError):
    """Approval gate errors.

    Attributes:
        plan_id: Plan owning the approval ticket
        step_id: Step the ticket blocks
    """

    def __init__(self, message: str, plan_id: str | None = None, step_id: str | None = None) -> None:
        self.plan_id = plan_id
        self.step_id = step_id
        super().__init__(message)


class ApprovalAlreadyPendingError(ApprovalError):
    """A ticket for the same ``(plan_id, step_id)`` is still pending."""

    def __init__(self, plan_id: str, step_id: str) -> None:
        super().__init__(
            f"Approval already pending for {plan_id}:{step_id}",
            plan_id=plan_id,
            step_id=step_id,
        )


class PersistenceError(PlanOrchestratorError):
    """Plan Store read or write failed.

    Raised by store implementations. The coordinator logs and swallows it
    for progress writes and marks the run as degraded.
    """

    pass


class OperationCancelledError(PlanOrchestratorError):
    """A run-scoped wait observed the run's cancellation token.

    Not an error in the user-facing sense: a cancelled run ends in the
    ``cancelled`` state. The exception only carries the signal up to the
    nearest flow node.
    """

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)
