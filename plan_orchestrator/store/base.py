"""
Abstract base class for plan stores.

A plan store is the engine's only persistence collaborator. It hands out
execution plans by id and records run status and step completions. The
engine treats every write as best effort: a failing write is logged and
flags the run as ``persistence_degraded``, it never fails the run.
"""

from abc import ABC, abstractmethod
from typing import Any

from plan_orchestrator.models.plan import ExecutionPlan
from plan_orchestrator.models.run import RunStatus


class PlanStore(ABC):
    """Storage for execution plans and their run status."""

    @abstractmethod
    async def load_plan(self, plan_id: str) -> ExecutionPlan:
        """Load an execution plan.

        Raises:
            PlanNotFoundError: No plan with this id exists.
            PersistenceError: The plan exists but could not be read.
        """
        pass

    @abstractmethod
    async def save_plan(self, plan: ExecutionPlan) -> None:
        """Create or replace a plan."""
        pass

    @abstractmethod
    async def delete_plan(self, plan_id: str) -> bool:
        """Delete a plan and its run status.

        Returns:
            True if a plan was deleted.
        """
        pass

    @abstractmethod
    async def list_plans(self) -> list[str]:
        """Ids of all stored plans, sorted."""
        pass

    @abstractmethod
    async def save_run_status(self, plan_id: str, status: RunStatus) -> None:
        """Record the latest status snapshot of a run."""
        pass

    @abstractmethod
    async def save_step_completion(self, plan_id: str, step_id: str) -> None:
        """Record that a step completed successfully."""
        pass

    @abstractmethod
    async def get_run_status(self, plan_id: str) -> dict[str, Any] | None:
        """Last recorded status of a plan's run, or None if never run.

        The record is ``RunStatus.to_dict()`` plus ``completed_step_ids``
        and ``updated_at``.
        """
        pass
