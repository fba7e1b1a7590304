"""
Flow tree interpreter.

The ``FlowExecutor`` walks an execution plan's flow tree and turns every
node into an ``Outcome``. Composite nodes coordinate their children; step
leaves go through the approval gate (when required) and then the step
invoker registered for their capability.

Node Semantics:
    - Sequential: children in order; cancellation and pause are checked
      before each child; the first non-success outcome stops the sequence.
    - Parallel: children run concurrently as worker pool units. With
      ``wait_for_all`` every child is joined; otherwise the node resolves
      with the first child outcome and the remaining children continue in
      the background (tracked on the run context).
    - Conditional: the predicate is evaluated against a snapshot of the
      shared state; a false predicate with no else branch is a no-op.
    - Loop: the body repeats until the exit condition holds, at most
      ``max_iterations`` times.
    - SubFlow: transparent delegation to the wrapped flow.
    - Step: approval, invocation with a timeout, output merge.

Error Handling:
    Nothing raised inside a run escapes ``execute``. Step failures, denied
    approvals and timeouts become failure outcomes carrying a
    ``FailureReason``; cancellation anywhere becomes a cancelled outcome.

Example:
    >>> executor = FlowExecutor(registry, gate, pool)
    >>> outcome = await executor.execute(plan.root, ctx)
    >>> outcome.is_success
    True
"""

import asyncio
from typing import Any, assert_never

import structlog

from plan_orchestrator.engine.approval_gate import ApprovalGate
from plan_orchestrator.engine.worker_pool import WorkerPool
from plan_orchestrator.enums import ApprovalStatus, FailureReason
from plan_orchestrator.exceptions import (
    ApprovalAlreadyPendingError,
    CapabilityNotFoundError,
    OperationCancelledError,
)
from plan_orchestrator.invokers.base import StepResult
from plan_orchestrator.invokers.registry import InvokerRegistry
from plan_orchestrator.models.flow import (
    ConditionalNode,
    FlowNode,
    LoopNode,
    ParallelNode,
    Predicate,
    SequentialNode,
    StepNode,
    SubFlowNode,
    describe,
)
from plan_orchestrator.models.run import Outcome, RunContext

log = structlog.get_logger(__name__)

DEFAULT_STEP_TIMEOUT = 300.0


class ExecutionListener:
    """Receives progress callbacks from the executor.

    All hooks are no-ops; subclasses override what they need. Exceptions
    raised by a hook are logged and never affect the run.
    """

    async def state_changed(self, ctx: RunContext) -> None:
        pass

    async def step_started(self, ctx: RunContext, step: StepNode) -> None:
        pass

    async def step_completed(self, ctx: RunContext, step: StepNode) -> None:
        pass

    async def step_failed(self, ctx: RunContext, step: StepNode, outcome: Outcome) -> None:
        pass


class FlowExecutor:
    """Interprets flow trees against a run context."""

    def __init__(
        self,
        registry: InvokerRegistry,
        approval_gate: ApprovalGate,
        pool: WorkerPool,
        listener: ExecutionListener | None = None,
        default_step_timeout: float = DEFAULT_STEP_TIMEOUT,
        approval_timeout: float | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: Capability -> invoker lookup for step leaves
            approval_gate: Gate used by steps that require approval
            pool: Worker pool running parallel children
            listener: Progress callbacks (persistence, UI)
            default_step_timeout: Seconds allowed for a step without its own
                ``timeout``
            approval_timeout: Seconds to wait for a decision; None uses the
                gate's default
        """
        self.registry = registry
        self.approval_gate = approval_gate
        self.pool = pool
        self.listener = listener or ExecutionListener()
        self.default_step_timeout = default_step_timeout
        self.approval_timeout = approval_timeout

    async def execute(self, node: FlowNode, ctx: RunContext) -> Outcome:
        """Execute one node of the flow tree.

        Returns:
            The node's outcome. Never raises for errors inside the run.
        """
        try:
            if isinstance(node, SequentialNode):
                return await self._execute_sequential(node, ctx)
            if isinstance(node, ParallelNode):
                return await self._execute_parallel(node, ctx)
            if isinstance(node, ConditionalNode):
                return await self._execute_conditional(node, ctx)
            if isinstance(node, LoopNode):
                return await self._execute_loop(node, ctx)
            if isinstance(node, SubFlowNode):
                log.debug("subflow_entered", flow_id=node.flow_id, node=describe(node))
                return await self.execute(node.flow, ctx)
            if isinstance(node, StepNode):
                return await self._execute_step(node, ctx)
            assert_never(node)
        except OperationCancelledError:
            return Outcome.cancelled()
        except Exception as e:
            log.error("node_execution_crashed", node=describe(node), error=str(e), exc_info=True)
            return Outcome.failure(FailureReason.INTERNAL_ERROR, f"Internal error: {e}")

    async def _execute_sequential(self, node: SequentialNode, ctx: RunContext) -> Outcome:
        for child in node.children:
            if ctx.is_cancelled:
                return Outcome.cancelled()
            await ctx.wait_if_paused()

            outcome = await self.execute(child, ctx)
            if not outcome.is_success:
                return outcome
        return Outcome.success()

    async def _execute_parallel(self, node: ParallelNode, ctx: RunContext) -> Outcome:
        if not node.children:
            return Outcome.success()

        tasks = [
            self.pool.submit(
                self.execute,
                child,
                ctx,
                cancel_token=ctx.cancel_token,
                name=f"{ctx.plan_id}:{describe(child)}",
            )
            for child in node.children
        ]
        log.debug(
            "parallel_started",
            node=describe(node),
            children=len(tasks),
            wait_for_all=node.wait_for_all,
        )

        if node.wait_for_all:
            return await self._join_all(tasks, ctx)
        return await self._join_first(tasks, ctx)

    async def _join_all(self, tasks: list["asyncio.Task[Outcome]"], ctx: RunContext) -> Outcome:
        try:
            results = await ctx.cancel_token.run(asyncio.gather(*tasks, return_exceptions=True))
        except OperationCancelledError:
            for task in tasks:
                task.cancel()
            return Outcome.cancelled()

        outcomes = [self._unit_outcome(result) for result in results]
        if any(outcome.is_cancelled for outcome in outcomes):
            return Outcome.cancelled()
        for outcome in outcomes:
            if outcome.is_failure:
                return outcome
        return Outcome.success()

    async def _join_first(self, tasks: list["asyncio.Task[Outcome]"], ctx: RunContext) -> Outcome:
        try:
            done, _ = await ctx.cancel_token.run(asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED))
        except OperationCancelledError:
            for task in tasks:
                task.cancel()
            return Outcome.cancelled()

        # Lowest child index wins when several finish in the same tick
        first = next(task for task in tasks if task in done)
        for task in tasks:
            if task is not first and not task.done():
                ctx.track_background(task)
                task.add_done_callback(self._background_done)

        outcome = self._unit_outcome(_task_result(first))
        log.debug("parallel_first_resolved", kind=outcome.kind.value, background=len(ctx.background_tasks))
        return outcome

    def _background_done(self, task: "asyncio.Task[Outcome]") -> None:
        outcome = self._unit_outcome(_task_result(task))
        if outcome.is_failure:
            log.warning(
                "background_branch_failed",
                step_id=outcome.step_id,
                reason=str(outcome.reason),
                error=outcome.message,
            )

    @staticmethod
    def _unit_outcome(result: Any) -> Outcome:
        """Map a worker pool unit's result (or exception) to an outcome."""
        if isinstance(result, Outcome):
            return result
        if isinstance(result, (OperationCancelledError, asyncio.CancelledError)):
            return Outcome.cancelled()
        if isinstance(result, BaseException):
            return Outcome.failure(FailureReason.INTERNAL_ERROR, f"Internal error: {result}")
        return Outcome.failure(FailureReason.INTERNAL_ERROR, f"Unexpected unit result: {result!r}")

    async def _execute_conditional(self, node: ConditionalNode, ctx: RunContext) -> Outcome:
        matched, error = await self._evaluate(node.predicate, ctx)
        if error is not None:
            return error

        branch = node.then_branch if matched else node.else_branch
        log.debug("condition_evaluated", node=describe(node), matched=matched)
        if branch is None:
            return Outcome.success()
        return await self.execute(branch, ctx)

    async def _execute_loop(self, node: LoopNode, ctx: RunContext) -> Outcome:
        for iteration in range(1, node.max_iterations + 1):
            if ctx.is_cancelled:
                return Outcome.cancelled()
            await ctx.wait_if_paused()

            outcome = await self.execute(node.body, ctx)
            if not outcome.is_success:
                return outcome

            should_exit, error = await self._evaluate(node.exit_condition, ctx)
            if error is not None:
                return error
            if should_exit:
                log.debug("loop_exited", node=describe(node), iterations=iteration)
                return Outcome.success()

        log.warning(
            "loop_iteration_cap_reached",
            node=describe(node),
            max_iterations=node.max_iterations,
        )
        return Outcome.success()

    async def _evaluate(self, predicate: Predicate, ctx: RunContext) -> tuple[bool, Outcome | None]:
        state = await ctx.read_state()
        try:
            return bool(predicate(state)), None
        except Exception as e:
            log.error("condition_evaluation_failed", error=str(e))
            return False, Outcome.failure(FailureReason.CONDITION_ERROR, f"Condition evaluation failed: {e}")

    async def _execute_step(self, step: StepNode, ctx: RunContext) -> Outcome:
        if ctx.is_cancelled:
            return Outcome.cancelled()

        ctx.step_started(step.id)
        await self._emit("step_started", ctx, step)
        try:
            outcome = await self._run_step(step, ctx)
        except OperationCancelledError:
            outcome = Outcome.cancelled()
        finally:
            ctx.step_finished(step.id)

        if outcome.is_success:
            ctx.mark_step_completed(step.id)
            log.info("step_completed", step_id=step.id, capability=step.capability)
            await self._emit("step_completed", ctx, step)
        elif outcome.is_failure:
            log.warning(
                "step_failed",
                step_id=step.id,
                capability=step.capability,
                reason=str(outcome.reason),
                error=outcome.message,
            )
            await self._emit("step_failed", ctx, step, outcome)
        else:
            log.info("step_cancelled", step_id=step.id)
        return outcome

    async def _run_step(self, step: StepNode, ctx: RunContext) -> Outcome:
        if step.requires_approval:
            rejection = await self._await_approval(step, ctx)
            if rejection is not None:
                return rejection
            # A pause requested while waiting for the decision holds the step here
            await ctx.wait_if_paused()

        try:
            invoker = self.registry.get(step.capability)
        except CapabilityNotFoundError as e:
            return Outcome.failure(FailureReason.CAPABILITY_NOT_FOUND, e.message, step_id=step.id)

        timeout = step.timeout or self.default_step_timeout
        state = await ctx.read_state()
        log.info("step_started", step_id=step.id, capability=step.capability, timeout=timeout)

        try:
            result = await ctx.cancel_token.run(
                invoker.invoke(step, state, timeout, ctx.cancel_token, plan_id=ctx.plan_id),
                timeout=timeout,
            )
        except OperationCancelledError:
            return Outcome.cancelled()
        except TimeoutError:
            return Outcome.failure(
                FailureReason.STEP_TIMEOUT,
                f"Step timed out after {timeout}s",
                step_id=step.id,
            )
        except Exception as e:
            return Outcome.failure(
                FailureReason.STEP_ERROR,
                f"{type(e).__name__}: {e}",
                step_id=step.id,
            )

        if not isinstance(result, StepResult):
            return Outcome.failure(
                FailureReason.STEP_ERROR,
                f"Invoker returned {type(result).__name__} instead of StepResult",
                step_id=step.id,
            )
        if not result.success:
            return Outcome.failure(
                FailureReason.STEP_FAILED,
                result.error or "Step reported failure",
                step_id=step.id,
            )

        await ctx.merge_output(result.output)
        return Outcome.success()

    async def _await_approval(self, step: StepNode, ctx: RunContext) -> Outcome | None:
        """Block on the approval gate.

        Returns:
            None when approved, otherwise the outcome ending the step.
        """
        context = await ctx.read_state()
        ctx.approval_opened()
        await self._emit("state_changed", ctx)
        try:
            ticket = await self.approval_gate.request_ticket(
                ctx.plan_id,
                step.id,
                step.description or step.display_name,
                context,
                cancel_token=ctx.cancel_token,
                timeout=self.approval_timeout,
            )
        except ApprovalAlreadyPendingError as e:
            return Outcome.failure(FailureReason.APPROVAL_ERROR, e.message, step_id=step.id)
        finally:
            ctx.approval_closed()
        await self._emit("state_changed", ctx)

        if ticket.status is ApprovalStatus.APPROVED:
            return None
        if ticket.status is ApprovalStatus.DENIED:
            message = "Approval denied"
            if ticket.comment:
                message = f"{message}: {ticket.comment}"
            return Outcome.failure(FailureReason.APPROVAL_DENIED, message, step_id=step.id)
        if ticket.status is ApprovalStatus.TIMED_OUT:
            return Outcome.failure(FailureReason.APPROVAL_TIMED_OUT, "Approval timed out", step_id=step.id)
        if ctx.is_cancelled:
            return Outcome.cancelled()
        return Outcome.failure(FailureReason.APPROVAL_ERROR, "Approval request failed", step_id=step.id)

    async def _emit(self, hook: str, *args: Any) -> None:
        try:
            await getattr(self.listener, hook)(*args)
        except Exception as e:
            log.error("execution_listener_failed", hook=hook, error=str(e), exc_info=True)


def _task_result(task: "asyncio.Task[Outcome]") -> Any:
    if task.cancelled():
        return asyncio.CancelledError()
    return task.exception() or task.result()
