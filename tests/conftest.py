"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest

from plan_orchestrator.config.settings import (
    ApprovalConfig,
    ExecutionConfig,
    OrchestratorSettings,
    StoreConfig,
)
from plan_orchestrator.engine.approval_gate import ApprovalGate
from plan_orchestrator.engine.worker_pool import WorkerPool
from plan_orchestrator.invokers.registry import InvokerRegistry
from plan_orchestrator.store.file_store import FilePlanStore
from plan_orchestrator.store.memory import InMemoryPlanStore
from tests.helpers import ScriptedInvoker


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    """Settings with short timeouts and the in-memory store."""
    return OrchestratorSettings(
        execution=ExecutionConfig(worker_pool_size=10, default_step_timeout=5.0, cancel_grace_period=2.0),
        approval=ApprovalConfig(timeout_seconds=5.0, history_size=10),
        store=StoreConfig(
            backend="memory",
            plans_directory=str(tmp_path / "plans"),
            state_directory=str(tmp_path / "state"),
        ),
    )


@pytest.fixture
def invoker() -> ScriptedInvoker:
    """Invoker registered for the ``scripted`` capability."""
    return ScriptedInvoker()


@pytest.fixture
def registry(invoker: ScriptedInvoker) -> InvokerRegistry:
    return InvokerRegistry({"scripted": invoker})


@pytest.fixture
def gate() -> ApprovalGate:
    return ApprovalGate(timeout=5.0, history_size=10)


@pytest.fixture
def pool() -> WorkerPool:
    return WorkerPool(max_workers=10)


@pytest.fixture
def memory_store() -> InMemoryPlanStore:
    return InMemoryPlanStore()


@pytest.fixture
def file_store(tmp_path: Path) -> FilePlanStore:
    """FilePlanStore instance with temp directories."""
    return FilePlanStore(tmp_path / "plans", tmp_path / "state")
