"""In-process step invoker backed by a Python callable."""

import asyncio
import inspect
from collections.abc import Callable, Mapping
from typing import Any

import structlog

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.invokers.base import StepInvoker, StepResult
from plan_orchestrator.models.flow import StepNode

log = structlog.get_logger(__name__)

StepFunction = Callable[[StepNode, Mapping[str, Any]], Any]


class CallableInvoker(StepInvoker):
    """Adapt a function into a step invoker.

    The function is called as ``fn(step, shared_state)``. It may be async or
    sync; sync functions run in a worker thread so they do not block the
    event loop. Accepted return values:

    - ``StepResult``: used as is
    - ``dict``: treated as a successful step's output
    - ``None``: success with no output

    Exceptions propagate to the engine, which reports them as step errors.

    Example:
        >>> async def count_rows(step, state):
        ...     return {"rows": await db.count(step.parameters["table"])}
        >>> registry.register("db-reader", CallableInvoker(count_rows))
    """

    def __init__(self, fn: StepFunction, name: str | None = None) -> None:
        self.fn = fn
        self.name = name or getattr(fn, "__name__", type(fn).__name__)

    async def invoke(
        self,
        step: StepNode,
        shared_state: Mapping[str, Any],
        timeout: float,
        cancel_token: CancellationToken,
        plan_id: str | None = None,
    ) -> StepResult:
        if inspect.iscoroutinefunction(self.fn):
            result = await self.fn(step, shared_state)
        else:
            result = await asyncio.to_thread(self.fn, step, shared_state)
            if inspect.isawaitable(result):
                result = await result
        return self._coerce(result)

    def _coerce(self, result: Any) -> StepResult:
        if isinstance(result, StepResult):
            return result
        if result is None:
            return StepResult.ok()
        if isinstance(result, Mapping):
            return StepResult.ok(result)
        raise TypeError(f"Invoker {self.name} returned unsupported type {type(result).__name__}")

    def __repr__(self) -> str:
        return f"<CallableInvoker {self.name}>"
