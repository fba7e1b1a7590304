"""Dict-backed plan store for tests and embedding."""

import copy
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import structlog

from plan_orchestrator.exceptions import PlanNotFoundError
from plan_orchestrator.models.plan import ExecutionPlan
from plan_orchestrator.models.run import RunStatus
from plan_orchestrator.store.base import PlanStore

log = structlog.get_logger(__name__)


class InMemoryPlanStore(PlanStore):
    """Keeps plans and run records in process memory.

    Example:
        >>> store = InMemoryPlanStore([plan])
        >>> await store.load_plan(plan.plan_id)
    """

    def __init__(self, plans: Iterable[ExecutionPlan] | None = None) -> None:
        self._plans: dict[str, ExecutionPlan] = {plan.plan_id: plan for plan in plans or ()}
        self._status: dict[str, dict[str, Any]] = {}

    async def load_plan(self, plan_id: str) -> ExecutionPlan:
        try:
            return self._plans[plan_id]
        except KeyError:
            raise PlanNotFoundError(plan_id) from None

    async def save_plan(self, plan: ExecutionPlan) -> None:
        self._plans[plan.plan_id] = plan

    async def delete_plan(self, plan_id: str) -> bool:
        self._status.pop(plan_id, None)
        return self._plans.pop(plan_id, None) is not None

    async def list_plans(self) -> list[str]:
        return sorted(self._plans)

    async def save_run_status(self, plan_id: str, status: RunStatus) -> None:
        record = self._status.setdefault(plan_id, {"completed_step_ids": []})
        record.update(status.to_dict())
        record["updated_at"] = datetime.now(UTC).isoformat()

    async def save_step_completion(self, plan_id: str, step_id: str) -> None:
        record = self._status.setdefault(plan_id, {"completed_step_ids": []})
        if step_id not in record["completed_step_ids"]:
            record["completed_step_ids"].append(step_id)
        record["updated_at"] = datetime.now(UTC).isoformat()

    async def get_run_status(self, plan_id: str) -> dict[str, Any] | None:
        record = self._status.get(plan_id)
        return copy.deepcopy(record) if record is not None else None
