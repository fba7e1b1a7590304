"""Step invokers: the pluggable capabilities that perform leaf steps.

Key Components:
    - StepInvoker: Abstract base class for invokers
    - StepResult: Success/failure plus output delta
    - InvokerRegistry: Capability -> invoker lookup
    - CallableInvoker: Wraps an in-process function
    - HttpAgentInvoker: Delegates to a remote agent endpoint
"""

from plan_orchestrator.invokers.base import StepInvoker, StepResult
from plan_orchestrator.invokers.http_agent import HttpAgentInvoker
from plan_orchestrator.invokers.local import CallableInvoker
from plan_orchestrator.invokers.registry import InvokerRegistry

__all__ = [
    "CallableInvoker",
    "HttpAgentInvoker",
    "InvokerRegistry",
    "StepInvoker",
    "StepResult",
]
