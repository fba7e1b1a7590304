"""Registry mapping capabilities to step invokers."""

from collections.abc import Iterable

import structlog

from plan_orchestrator.exceptions import CapabilityNotFoundError
from plan_orchestrator.invokers.base import StepInvoker

log = structlog.get_logger(__name__)


class InvokerRegistry:
    """Capability (agent identifier) -> StepInvoker lookup.

    Example:
        >>> registry = InvokerRegistry()
        >>> registry.register("echo", CallableInvoker(echo))
        >>> registry.get("echo")
        <CallableInvoker ...>
    """

    def __init__(self, invokers: dict[str, StepInvoker] | None = None) -> None:
        self._invokers: dict[str, StepInvoker] = dict(invokers or {})

    def register(self, capability: str, invoker: StepInvoker, replace: bool = False) -> None:
        """Register an invoker for a capability.

        Raises:
            ValueError: The capability is already registered and ``replace``
                is False.
        """
        if capability in self._invokers and not replace:
            raise ValueError(f"Capability already registered: {capability}")
        self._invokers[capability] = invoker
        log.debug("invoker_registered", capability=capability, invoker=type(invoker).__name__)

    def unregister(self, capability: str) -> StepInvoker | None:
        return self._invokers.pop(capability, None)

    def get(self, capability: str) -> StepInvoker:
        """Look up the invoker for a capability.

        Raises:
            CapabilityNotFoundError: Nothing is registered for it.
        """
        try:
            return self._invokers[capability]
        except KeyError:
            raise CapabilityNotFoundError(capability) from None

    def __contains__(self, capability: object) -> bool:
        return capability in self._invokers

    def capabilities(self) -> list[str]:
        return sorted(self._invokers)

    def missing(self, capabilities: Iterable[str]) -> list[str]:
        """Capabilities from ``capabilities`` with no registered invoker."""
        return sorted({c for c in capabilities if c not in self._invokers})

    async def close(self) -> None:
        """Close every distinct registered invoker."""
        seen: set[int] = set()
        for invoker in self._invokers.values():
            if id(invoker) in seen:
                continue
            seen.add(id(invoker))
            await invoker.close()
