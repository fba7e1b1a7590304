"""Plan builders and test doubles shared by the unit tests."""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.invokers.base import StepInvoker, StepResult
from plan_orchestrator.models.flow import StepNode
from plan_orchestrator.models.plan import ExecutionPlan


class ScriptedInvoker(StepInvoker):
    """Test invoker driven by step parameters.

    Recognized parameters:
        output: dict merged into shared state
        delay: seconds to sleep before answering
        fail: error string for a failed StepResult
        raise: message of a RuntimeError to raise
        hold: name of an asyncio.Event (see ``events``) to wait for
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.plan_ids: list[str | None] = []
        self.seen_state: dict[str, dict[str, Any]] = {}
        self.events: dict[str, asyncio.Event] = {}
        self.active = 0
        self.max_active = 0

    def event(self, name: str) -> asyncio.Event:
        return self.events.setdefault(name, asyncio.Event())

    async def invoke(
        self,
        step: StepNode,
        shared_state: Mapping[str, Any],
        timeout: float,
        cancel_token: CancellationToken,
        plan_id: str | None = None,
    ) -> StepResult:
        self.calls.append(step.id)
        self.plan_ids.append(plan_id)
        self.seen_state[step.id] = dict(shared_state)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            params = step.parameters
            if "hold" in params:
                await self.event(params["hold"]).wait()
            if params.get("delay"):
                await asyncio.sleep(params["delay"])
            if "raise" in params:
                raise RuntimeError(params["raise"])
            if "fail" in params:
                return StepResult.fail(params["fail"])
            return StepResult.ok(params.get("output"))
        finally:
            self.active -= 1


def step(step_id: str, capability: str = "scripted", **kwargs: Any) -> dict[str, Any]:
    """Step node document."""
    return {"type": "step", "stepId": step_id, "agentId": capability, **kwargs}


def sequential(*children: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
    return {"type": "sequential", "children": list(children), **kwargs}


def parallel(*children: dict[str, Any], wait_for_all: bool = True, **kwargs: Any) -> dict[str, Any]:
    return {"type": "parallel", "waitForAll": wait_for_all, "children": list(children), **kwargs}


def make_plan(root: dict[str, Any], plan_id: str = "plan-1", **kwargs: Any) -> ExecutionPlan:
    return ExecutionPlan.from_dict({"planId": plan_id, "name": plan_id, "root": root, **kwargs})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
