"""Plan stores: where execution plans come from and run status goes to."""

from plan_orchestrator.config.settings import OrchestratorSettings
from plan_orchestrator.enums import StoreBackend
from plan_orchestrator.store.base import PlanStore
from plan_orchestrator.store.file_store import FilePlanStore
from plan_orchestrator.store.memory import InMemoryPlanStore


def create_store(settings: OrchestratorSettings) -> PlanStore:
    """Build the plan store selected by ``settings.store.backend``."""
    store_settings = settings.store
    if store_settings.backend is StoreBackend.FILE:
        return FilePlanStore(store_settings.plans_directory, store_settings.state_directory)
    return InMemoryPlanStore()


__all__ = ["FilePlanStore", "InMemoryPlanStore", "PlanStore", "create_store"]
