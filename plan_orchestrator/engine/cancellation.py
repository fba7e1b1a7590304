"""
Run-scoped cancellation tokens.

Every blocking wait inside a run (pause-wait, approval-wait, parallel-join,
worker slot acquisition, step invocation) goes through the run's
``CancellationToken`` so that cancelling a run terminates it in bounded time
no matter where it is suspended.

Cancellation is explicit and cooperative: the token never interrupts the
event loop or other runs. ``CancellationToken.run`` races an awaitable
against the token; the losing awaitable is cancelled but not awaited, so an
invoker that ignores cancellation cannot keep the run alive.

Example:
    >>> token = CancellationToken()
    >>> result = await token.run(invoker.invoke(step, state, 30, token), timeout=30)
"""

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog

from plan_orchestrator.exceptions import OperationCancelledError

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _consume_result(task: "asyncio.Future[Any]") -> None:
    """Retrieve the outcome of an abandoned task so asyncio does not warn about it."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.debug("abandoned_operation_failed", error=str(exc))


class CancellationToken:
    """Single-use cancellation signal shared by everything in one run.

    Attributes:
        reason: Optional human-readable reason passed to ``cancel``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token.

        Returns:
            True if this call cancelled the token, False if it was already
            cancelled.
        """
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason or "Operation cancelled")

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def run(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``awaitable`` unless the token fires or ``timeout`` elapses first.

        Args:
            awaitable: Coroutine, task or future to race against the token.
            timeout: Optional limit in seconds.

        Returns:
            The awaitable's result.

        Raises:
            OperationCancelledError: The token fired first (or was already set).
            TimeoutError: ``timeout`` elapsed first.
            Exception: Whatever the awaitable raised.
        """
        operation = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            operation.cancel()
            operation.add_done_callback(_consume_result)
            raise OperationCancelledError(self.reason or "Operation cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {operation, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            operation.cancel()
            operation.add_done_callback(_consume_result)
            raise
        finally:
            waiter.cancel()

        if operation in done:
            return operation.result()

        operation.cancel()
        operation.add_done_callback(_consume_result)
        if waiter in done:
            raise OperationCancelledError(self.reason or "Operation cancelled")
        raise TimeoutError(f"Operation timed out after {timeout}s")
