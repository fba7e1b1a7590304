"""
Abstract base class for step invokers.

A step invoker performs the actual work of a leaf step: a database call, a
file operation, a request to a remote agent. The orchestration engine does
not implement any of that; it looks the invoker up by the step's capability,
awaits it and merges its output into the run's shared state.

Invokers receive the run's cancellation token and are expected to observe it
and return promptly when the run is cancelled. The engine additionally races
every invocation against the token and the per-step timeout, so an invoker
that ignores both is abandoned rather than awaited forever.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.models.flow import StepNode


@dataclass(frozen=True)
class StepResult:
    """Outcome reported by a step invoker.

    Attributes:
        success: Whether the step's work succeeded.
        output: Keys to merge into shared state on success.
        error: Failure description when ``success`` is False.
    """

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def ok(cls, output: Mapping[str, Any] | None = None) -> "StepResult":
        return cls(success=True, output=dict(output or {}))

    @classmethod
    def fail(cls, error: str, output: Mapping[str, Any] | None = None) -> "StepResult":
        return cls(success=False, output=dict(output or {}), error=error)


class StepInvoker(ABC):
    """Pluggable capability that executes steps.

    Implementations are registered per capability (agent identifier) in an
    ``InvokerRegistry``.
    """

    @abstractmethod
    async def invoke(
        self,
        step: StepNode,
        shared_state: Mapping[str, Any],
        timeout: float,
        cancel_token: CancellationToken,
        plan_id: str | None = None,
    ) -> StepResult:
        """Perform a step's work.

        Args:
            step: The step being executed, including its parameters.
            shared_state: Snapshot of the run's shared state. Mutating it has
                no effect; return changes through ``StepResult.output``.
            timeout: Seconds the engine will wait for this call.
            cancel_token: The run's cancellation token.
            plan_id: Identifier of the plan the run executes.

        Returns:
            StepResult describing success or failure. Raising is also
            allowed; the engine reports it as a step error.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the invoker."""
        return None
