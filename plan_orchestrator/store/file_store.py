"""
File-backed plan store.

Plans are read from a directory of YAML or JSON documents, one per plan,
named after the plan id. Run status is written to a separate state
directory as JSON, one file per plan.

Directory Layout::

    plans/
        plan-42.yaml        # {"planId": "plan-42", "root": {...}}
        nightly-etl.json
    state/
        plan-42.json        # {"plan_id": "plan-42", "status": "running", ...}

State File Structure:
    The state file holds ``RunStatus.to_dict()`` of the latest snapshot
    plus the ids of completed steps::

        {
            "plan_id": "plan-42",
            "status": "completed",
            "completed_steps": 3,
            "total_steps": 3,
            "progress": 1.0,
            "completed_step_ids": ["fetch", "transform", "load"],
            "updated_at": "2024-01-15T11:45:00+00:00",
            ...
        }

Concurrency Model:
    Each plan has its own asyncio lock. Writes go to a temporary file that
    is then renamed over the target, so readers never see a partial file.
"""

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog
import yaml
from pydantic_core import PydanticSerializationError

from plan_orchestrator.exceptions import FlowDefinitionError, PersistenceError, PlanNotFoundError
from plan_orchestrator.models.plan import ExecutionPlan
from plan_orchestrator.models.run import RunStatus
from plan_orchestrator.store.base import PlanStore

log = structlog.get_logger(__name__)

PLAN_SUFFIXES = (".yaml", ".yml", ".json")


class FilePlanStore(PlanStore):
    """Plan store on the local filesystem.

    Attributes:
        plans_dir: Directory holding plan documents.
        state_dir: Directory holding run status files.
    """

    def __init__(self, plans_dir: str | Path, state_dir: str | Path) -> None:
        """Initialize the store, creating both directories if needed.

        Args:
            plans_dir: Directory of ``{plan_id}.yaml|.yml|.json`` documents.
            state_dir: Directory for ``{plan_id}.json`` status files.
        """
        self.plans_dir = Path(plans_dir)
        self.state_dir = Path(state_dir)
        self.plans_dir.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        # Per-plan locks serialize status writes for the same plan
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, plan_id: str) -> asyncio.Lock:
        if plan_id not in self._locks:
            self._locks[plan_id] = asyncio.Lock()
        return self._locks[plan_id]

    @staticmethod
    def _check_id(plan_id: str) -> str:
        if not plan_id or "/" in plan_id or "\\" in plan_id or plan_id.startswith("."):
            raise PersistenceError(f"Invalid plan id for file storage: {plan_id!r}")
        return plan_id

    def _find_plan_file(self, plan_id: str) -> Path | None:
        self._check_id(plan_id)
        for suffix in PLAN_SUFFIXES:
            path = self.plans_dir / f"{plan_id}{suffix}"
            if path.exists():
                return path
        return None

    def _get_state_path(self, plan_id: str) -> Path:
        return self.state_dir / f"{self._check_id(plan_id)}.json"

    async def load_plan(self, plan_id: str) -> ExecutionPlan:
        path = self._find_plan_file(plan_id)
        if path is None:
            raise PlanNotFoundError(plan_id)

        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            data = json.loads(content) if path.suffix == ".json" else yaml.safe_load(content)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise PersistenceError(f"Failed to read plan {plan_id} from {path}: {e}") from e

        if isinstance(data, dict):
            data.setdefault("planId", plan_id)
        plan = ExecutionPlan.from_dict(data)
        if plan.plan_id != plan_id:
            raise FlowDefinitionError(f"Plan file {path.name} declares plan id {plan.plan_id!r}")

        log.debug("plan_loaded", plan_id=plan_id, path=str(path), total_steps=plan.total_steps)
        return plan

    async def save_plan(self, plan: ExecutionPlan) -> None:
        existing = self._find_plan_file(plan.plan_id)
        path = existing or self.plans_dir / f"{plan.plan_id}.yaml"
        try:
            data = plan.model_dump(mode="json", exclude_none=True)
        except PydanticSerializationError as e:
            raise PersistenceError(
                f"Plan {plan.plan_id} cannot be serialized (callable predicates are not storable): {e}"
            ) from e

        if path.suffix == ".json":
            content = json.dumps(data, indent=2)
        else:
            content = yaml.safe_dump(data, sort_keys=False)

        async with self._get_lock(plan.plan_id):
            await self._write_atomic(path, content)
        log.info("plan_saved", plan_id=plan.plan_id, path=str(path))

    async def delete_plan(self, plan_id: str) -> bool:
        path = self._find_plan_file(plan_id)
        async with self._get_lock(plan_id):
            self._get_state_path(plan_id).unlink(missing_ok=True)
            if path is None:
                return False
            path.unlink(missing_ok=True)
        log.info("plan_deleted", plan_id=plan_id)
        return True

    async def list_plans(self) -> list[str]:
        return sorted(
            {path.stem for path in self.plans_dir.iterdir() if path.is_file() and path.suffix in PLAN_SUFFIXES}
        )

    async def save_run_status(self, plan_id: str, status: RunStatus) -> None:
        async with self._get_lock(plan_id):
            record = await self._read_status(plan_id) or {"completed_step_ids": []}
            record.update(status.to_dict())
            await self._write_status(plan_id, record)

    async def save_step_completion(self, plan_id: str, step_id: str) -> None:
        async with self._get_lock(plan_id):
            record = await self._read_status(plan_id) or {"plan_id": plan_id, "completed_step_ids": []}
            completed = record.setdefault("completed_step_ids", [])
            if step_id not in completed:
                completed.append(step_id)
            await self._write_status(plan_id, record)

    async def get_run_status(self, plan_id: str) -> dict[str, Any] | None:
        async with self._get_lock(plan_id):
            return await self._read_status(plan_id)

    async def _read_status(self, plan_id: str) -> dict[str, Any] | None:
        path = self._get_state_path(plan_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
            return json.loads(content)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read run status for {plan_id}: {e}") from e

    async def _write_status(self, plan_id: str, record: dict[str, Any]) -> None:
        record["updated_at"] = datetime.now(UTC).isoformat()
        await self._write_atomic(self._get_state_path(plan_id), json.dumps(record, indent=2))

    async def _write_atomic(self, path: Path, content: str) -> None:
        """Write to a temporary file in the same directory, then rename over ``path``."""
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(content)
            tmp_path.replace(path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
