"""Step invoker that delegates steps to a remote agent over HTTP."""

from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.invokers.base import StepInvoker, StepResult
from plan_orchestrator.models.flow import StepNode

log = structlog.get_logger(__name__)


class HttpAgentInvoker(StepInvoker):
    """Invoke a remote agent endpoint for each step.

    The agent receives a JSON body::

        {
            "planId": "plan-42",
            "stepId": "fetch",
            "capability": "db-reader",
            "parameters": {...},
            "sharedState": {...}
        }

    and answers with ``{"success": bool, "output": {...}, "error": str|null}``.
    HTTP and transport errors become failed step results; nothing is retried
    here (retry policy belongs in the plan structure).
    """

    def __init__(
        self,
        base_url: str,
        path: str = "/api/v1/steps/execute",
        api_token: str | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float = 300.0,
    ) -> None:
        """Initialize the HTTP invoker.

        Args:
            base_url: Agent base URL (trailing slashes stripped)
            path: Endpoint path for step execution
            api_token: Optional bearer token
            headers: Extra request headers
            timeout: Client-side request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.path = "/" + path.lstrip("/")
        request_headers = {"Content-Type": "application/json", **dict(headers or {})}
        if api_token:
            request_headers["Authorization"] = f"Bearer {api_token}"
        self.client = httpx.AsyncClient(timeout=timeout, headers=request_headers)

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    async def invoke(
        self,
        step: StepNode,
        shared_state: Mapping[str, Any],
        timeout: float,
        cancel_token: CancellationToken,
        plan_id: str | None = None,
    ) -> StepResult:
        payload = {
            "planId": plan_id,
            "stepId": step.id,
            "capability": step.capability,
            "parameters": step.parameters,
            "sharedState": dict(shared_state),
        }
        log.info("agent_request", step_id=step.id, capability=step.capability, url=self.url)

        try:
            response = await self.client.post(self.url, json=payload, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            log.error(
                "agent_request_failed",
                step_id=step.id,
                status_code=e.response.status_code,
            )
            return StepResult.fail(f"Agent returned HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error("agent_unreachable", step_id=step.id, url=self.url, error=str(e))
            return StepResult.fail(f"Agent request failed: {e}")
        except ValueError as e:
            log.error("agent_invalid_response", step_id=step.id, error=str(e))
            return StepResult.fail("Agent returned invalid JSON")

        if not isinstance(body, dict):
            return StepResult.fail("Agent response must be a JSON object")

        output = body.get("output") or {}
        if not isinstance(output, dict):
            output = {step.id: output}

        if body.get("success", False):
            log.info("agent_step_completed", step_id=step.id, output_keys=sorted(output))
            return StepResult.ok(output)

        error = body.get("error") or "Agent reported failure"
        log.warning("agent_step_failed", step_id=step.id, error=error)
        return StepResult.fail(str(error), output)

    async def close(self) -> None:
        await self.client.aclose()
