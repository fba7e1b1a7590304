"""Plan execution engine.

This package provides the runtime that executes declarative execution plans:
walking the flow tree, dispatching steps to invokers, coordinating parallel
branches, and blocking steps on human approval.

Key Components:
    - ExecutionCoordinator: Run lifecycle (start, pause, resume, cancel, status)
    - FlowExecutor: Interprets sequential, parallel, conditional, loop and
      subflow nodes
    - ApprovalGate: Human approval tickets with timeout
    - WorkerPool: Bounded pool shared by runs and parallel branches
    - CancellationToken: Run-scoped cancellation for every blocking wait

Example:
    >>> from plan_orchestrator.engine.coordinator import ExecutionCoordinator
    >>> coordinator = ExecutionCoordinator(settings, store, registry)
    >>> result = await coordinator.execute_plan("plan-42")

Submodules are imported directly; this package only re-exports the
cancellation token, which the data model depends on.
"""

from plan_orchestrator.engine.cancellation import CancellationToken

__all__ = ["CancellationToken"]
