"""
Execution coordinator: the public face of the orchestration engine.

This module provides the ``ExecutionCoordinator`` class, which owns the
table of active runs and exposes the run lifecycle to callers:

- ``start`` / ``execute_plan``: launch a plan (one active run per plan)
- ``pause`` / ``resume``: hold and release a run between nodes
- ``cancel``: terminate a run wherever it is suspended
- ``status`` / ``active_runs``: progress snapshots
- ``shutdown``: cancel everything and wait for the runs to unwind

Run Lifecycle:
    1. ``start`` atomically checks the active table and reserves the plan
       id, then loads the plan from the Plan Store outside the lock
    2. The run is submitted to the shared worker pool and starts once a
       slot is free
    3. The Flow Executor walks the plan's flow tree; every lifecycle change
       and step completion is written to the Plan Store
    4. Background branches left by non-joining parallel nodes are drained
    5. The terminal state is set and persisted, and the run leaves the
       active table

Persistence:
    Store writes are best effort. A failing write is logged and sets the
    run's ``persistence_degraded`` flag; it never fails the run.

Example:
    >>> coordinator = ExecutionCoordinator(settings, store, registry)
    >>> handle = await coordinator.start("plan-42")
    >>> coordinator.status("plan-42").state
    <RunState.RUNNING: 'running'>
    >>> result = await handle.wait()
    >>> result.success
    True
"""

import asyncio

import structlog
from structlog.contextvars import bound_contextvars

from plan_orchestrator.config.settings import OrchestratorSettings
from plan_orchestrator.engine.approval_gate import ApprovalGate
from plan_orchestrator.engine.flow_executor import ExecutionListener, FlowExecutor
from plan_orchestrator.engine.worker_pool import WorkerPool
from plan_orchestrator.enums import FailureReason, RunState
from plan_orchestrator.exceptions import AlreadyRunningError, OperationCancelledError
from plan_orchestrator.invokers.registry import InvokerRegistry
from plan_orchestrator.models.flow import StepNode
from plan_orchestrator.models.run import Outcome, RunContext, RunResult, RunStatus
from plan_orchestrator.store.base import PlanStore

log = structlog.get_logger(__name__)


class RunHandle:
    """Handle on one submitted run.

    Attributes:
        plan_id: Plan being executed.
        context: The run's live context.
    """

    def __init__(self, context: RunContext, task: "asyncio.Task[RunResult]") -> None:
        self.plan_id = context.plan_id
        self.context = context
        self._task = task

    async def wait(self, timeout: float | None = None) -> RunResult:
        """Wait for the run to finish.

        Raises:
            TimeoutError: ``timeout`` elapsed first; the run keeps going.
        """
        if timeout is None:
            return await asyncio.shield(self._task)
        return await asyncio.wait_for(asyncio.shield(self._task), timeout)

    def done(self) -> bool:
        return self._task.done()

    def result(self) -> RunResult:
        """Terminal result of a finished run (``asyncio.InvalidStateError`` otherwise)."""
        return self._task.result()

    def status(self) -> RunStatus:
        return self.context.snapshot()


class RunRecorder(ExecutionListener):
    """Writes run progress to the Plan Store, flagging the run on failure."""

    def __init__(self, store: PlanStore) -> None:
        self.store = store

    async def save_status(self, ctx: RunContext) -> None:
        try:
            await self.store.save_run_status(ctx.plan_id, ctx.snapshot())
        except Exception as e:
            ctx.persistence_degraded = True
            log.error("run_status_persist_failed", plan_id=ctx.plan_id, error=str(e))

    async def save_step(self, ctx: RunContext, step_id: str) -> None:
        try:
            await self.store.save_step_completion(ctx.plan_id, step_id)
        except Exception as e:
            ctx.persistence_degraded = True
            log.error("step_completion_persist_failed", plan_id=ctx.plan_id, step_id=step_id, error=str(e))

    async def state_changed(self, ctx: RunContext) -> None:
        await self.save_status(ctx)

    async def step_started(self, ctx: RunContext, step: StepNode) -> None:
        await self.save_status(ctx)

    async def step_completed(self, ctx: RunContext, step: StepNode) -> None:
        await self.save_step(ctx, step.id)
        await self.save_status(ctx)

    async def step_failed(self, ctx: RunContext, step: StepNode, outcome: Outcome) -> None:
        await self.save_status(ctx)


class ExecutionCoordinator:
    """Manage the lifecycle of plan runs.

    Attributes:
        settings: Orchestrator configuration.
        store: Plan Store plans are loaded from and status is written to.
        registry: Capability -> step invoker lookup.
        approval_gate: Gate for steps that require human approval.
        pool: Worker pool shared by all runs and parallel branches.
        executor: Flow tree interpreter.
    """

    def __init__(
        self,
        settings: OrchestratorSettings,
        store: PlanStore,
        registry: InvokerRegistry,
        approval_gate: ApprovalGate | None = None,
        pool: WorkerPool | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            settings: Orchestrator configuration (pool size, timeouts).
            store: Plan Store used to load plans and record progress.
            registry: Invokers for the capabilities plans reference.
            approval_gate: Shared approval gate; one is created from
                ``settings.approval`` when omitted.
            pool: Shared worker pool; one of ``worker_pool_size`` units is
                created when omitted.
        """
        self.settings = settings
        self.store = store
        self.registry = registry
        self.approval_gate = approval_gate or ApprovalGate(
            timeout=settings.approval.timeout_seconds,
            history_size=settings.approval.history_size,
        )
        self.pool = pool or WorkerPool(settings.execution.worker_pool_size)
        self.recorder = RunRecorder(store)
        self.executor = FlowExecutor(
            registry,
            self.approval_gate,
            self.pool,
            listener=self.recorder,
            default_step_timeout=settings.execution.default_step_timeout,
        )

        self._runs: dict[str, RunHandle] = {}
        self._loading: set[str] = set()
        self._lock = asyncio.Lock()

    async def start(self, plan_id: str) -> RunHandle:
        """Start executing a plan.

        Returns:
            Handle on the submitted run.

        Raises:
            AlreadyRunningError: The plan already has an active run.
            PlanNotFoundError: The store has no such plan.
        """
        async with self._lock:
            if plan_id in self._runs or plan_id in self._loading:
                raise AlreadyRunningError(plan_id)
            self._loading.add(plan_id)

        # Loaded outside the lock; the reservation above holds the plan id
        try:
            plan = await self.store.load_plan(plan_id)
            ctx = RunContext(plan=plan)
            task = asyncio.create_task(self._supervise(ctx), name=f"run:{plan_id}")
            handle = RunHandle(ctx, task)
            self._runs[plan_id] = handle
        finally:
            self._loading.discard(plan_id)

        log.info("run_submitted", plan_id=plan_id, total_steps=ctx.total_steps)
        return handle

    async def execute_plan(self, plan_id: str, timeout: float | None = None) -> RunResult:
        """Start a plan and wait for its result.

        If ``timeout`` elapses the run is cancelled and its cancelled result
        is returned.
        """
        handle = await self.start(plan_id)
        try:
            return await handle.wait(timeout)
        except TimeoutError:
            log.warning("run_wait_timed_out", plan_id=plan_id, timeout=timeout)
            await self.cancel(plan_id, reason=f"Timed out after {timeout}s", wait=True)
            return await handle.wait()

    async def pause(self, plan_id: str) -> bool:
        """Hold a run before its next node. In-flight steps finish normally.

        Returns:
            False if there is no active run or it cannot be paused.
        """
        handle = self._runs.get(plan_id)
        if handle is None or not handle.context.pause():
            return False
        log.info("run_paused", plan_id=plan_id)
        await self.recorder.save_status(handle.context)
        return True

    async def resume(self, plan_id: str) -> bool:
        """Release a paused run.

        Returns:
            False if there is no active run or it is not paused.
        """
        handle = self._runs.get(plan_id)
        if handle is None or not handle.context.resume():
            return False
        log.info("run_resumed", plan_id=plan_id, state=str(handle.context.state))
        await self.recorder.save_status(handle.context)
        return True

    async def cancel(self, plan_id: str, reason: str | None = None, wait: bool = False) -> bool:
        """Cancel a run.

        Args:
            plan_id: Plan whose run to cancel.
            reason: Optional text recorded on the cancellation token.
            wait: Wait up to ``cancel_grace_period`` seconds for the run to
                unwind.

        Returns:
            False if there is no active run or it already finished.
        """
        handle = self._runs.get(plan_id)
        if handle is None or not handle.context.cancel(reason or "Cancelled by request"):
            return False
        log.info("run_cancel_requested", plan_id=plan_id, reason=reason)
        await self.recorder.save_status(handle.context)

        if wait:
            await asyncio.wait({handle._task}, timeout=self.settings.execution.cancel_grace_period)
        return True

    def status(self, plan_id: str) -> RunStatus | None:
        """Snapshot of an active run, or None if the plan has no active run."""
        handle = self._runs.get(plan_id)
        return handle.status() if handle else None

    def active_runs(self) -> list[RunStatus]:
        return [handle.status() for handle in self._runs.values()]

    async def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every active run and wait for them to finish."""
        handles = list(self._runs.values())
        log.info("coordinator_shutdown", active_runs=len(handles))
        for handle in handles:
            handle.context.cancel("Coordinator shutting down")

        tasks = {handle._task for handle in handles}
        if tasks:
            grace = self.settings.execution.cancel_grace_period if timeout is None else timeout
            await asyncio.wait(tasks, timeout=grace)
        await self.pool.shutdown(timeout=timeout)

    async def _supervise(self, ctx: RunContext) -> RunResult:
        with bound_contextvars(plan_id=ctx.plan_id):
            try:
                outcome = await self._execute_run(ctx)
            except asyncio.CancelledError:
                ctx.cancel("Run task cancelled")
                await self._finalize(ctx, Outcome.cancelled())
                raise
            return await self._finalize(ctx, outcome)

    async def _execute_run(self, ctx: RunContext) -> Outcome:
        await self.recorder.save_status(ctx)
        try:
            return await self.pool.run(
                self._execute_flow,
                ctx,
                cancel_token=ctx.cancel_token,
                name=f"run:{ctx.plan_id}",
            )
        except OperationCancelledError:
            return Outcome.cancelled()
        except Exception as e:
            log.error("run_crashed", error=str(e), exc_info=True)
            return Outcome.failure(FailureReason.INTERNAL_ERROR, f"Internal error: {e}")

    async def _execute_flow(self, ctx: RunContext) -> Outcome:
        ctx.mark_running()
        log.info("run_started", total_steps=ctx.total_steps, state=str(ctx.state))
        await self.recorder.save_status(ctx)

        try:
            # A run paused while it waited for a worker slot holds here
            await ctx.wait_if_paused()
        except OperationCancelledError:
            return Outcome.cancelled()
        return await self.executor.execute(ctx.plan.root, ctx)

    async def _drain_background(self, ctx: RunContext) -> None:
        """Wait for branches left running by non-joining parallel nodes."""
        while ctx.background_tasks:
            tasks = list(ctx.background_tasks)
            log.debug("draining_background_branches", count=len(tasks))
            try:
                await ctx.cancel_token.run(asyncio.wait(tasks))
            except OperationCancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.wait(tasks, timeout=self.settings.execution.cancel_grace_period)
                return

    async def _finalize(self, ctx: RunContext, outcome: Outcome) -> RunResult:
        await self._drain_background(ctx)

        if ctx.is_cancelled or outcome.is_cancelled:
            final_state = RunState.CANCELLED
        elif outcome.is_success:
            final_state = RunState.COMPLETED
        else:
            final_state = RunState.FAILED
            ctx.record_failure(outcome)

        ctx.finish(final_state)
        await self.recorder.save_status(ctx)

        async with self._lock:
            handle = self._runs.get(ctx.plan_id)
            if handle is not None and handle.context is ctx:
                del self._runs[ctx.plan_id]

        log.info(
            "run_finished",
            state=str(final_state),
            completed_steps=ctx.completed_steps,
            total_steps=ctx.total_steps,
            failed_step=ctx.failed_step,
            error=ctx.error,
            persistence_degraded=ctx.persistence_degraded,
        )
        return RunResult(
            plan_id=ctx.plan_id,
            state=final_state,
            outcome=outcome,
            completed_steps=ctx.completed_steps,
            total_steps=ctx.total_steps,
            failed_step=ctx.failed_step,
            error=ctx.error,
            started_at=ctx.started_at,
            completed_at=ctx.ended_at,
            shared_state=await ctx.read_state(),
        )
