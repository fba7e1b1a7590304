"""
Bounded worker pool for flow execution units.

Every top-level run and every child of a ``Parallel`` node is a unit of work
submitted to one shared pool. The pool bounds how many units execute at the
same time with a semaphore; units beyond the limit wait for a free slot.

Slot Semantics:
    A unit keeps its slot for its whole lifetime, including while it is
    blocked on an approval ticket, a paused run, or a parallel join. Size
    the pool for the number of concurrently pending approvals plus the
    parallel fan-out of the plans you run, otherwise blocked units starve
    new runs. A run that is waiting for a slot can still be cancelled; slot
    acquisition observes the run's cancellation token.

Example:
    >>> pool = WorkerPool(max_workers=10)
    >>> task = pool.submit(executor.execute, node, ctx, cancel_token=ctx.cancel_token)
    >>> outcome = await task
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from plan_orchestrator.engine.cancellation import CancellationToken

log = structlog.get_logger(__name__)

T = TypeVar("T")


class WorkerPool:
    """Semaphore-bounded pool of asyncio work units.

    Attributes:
        max_workers: Maximum number of units executing concurrently.
    """

    def __init__(self, max_workers: int = 10) -> None:
        """Initialize the pool with a concurrency limit.

        Args:
            max_workers: Maximum number of units to execute concurrently.
                Defaults to 10.

        Raises:
            ValueError: If max_workers is less than 1.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self._active = 0
        self._waiting = 0
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def active_count(self) -> int:
        """Units currently holding a slot."""
        return self._active

    @property
    def pending_count(self) -> int:
        """Units waiting for a slot."""
        return self._waiting

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        cancel_token: CancellationToken | None = None,
        name: str | None = None,
    ) -> T:
        """Run ``fn(*args)`` once a slot is free.

        Args:
            fn: Async callable producing the unit's result.
            *args: Positional arguments for ``fn``.
            cancel_token: Token observed while waiting for a slot.
            name: Label used in logs.

        Returns:
            Whatever ``fn`` returns.

        Raises:
            OperationCancelledError: The token fired before a slot was free.
        """
        self._waiting += 1
        try:
            if cancel_token is not None:
                await cancel_token.run(self._semaphore.acquire())
            else:
                await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._active += 1
        log.debug("worker_slot_acquired", unit=name, active=self._active, max_workers=self.max_workers)
        try:
            return await fn(*args)
        finally:
            self._active -= 1
            self._semaphore.release()

    def submit(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        cancel_token: CancellationToken | None = None,
        name: str | None = None,
    ) -> "asyncio.Task[T]":
        """Schedule a unit and return its task without waiting for it."""
        task = asyncio.create_task(self.run(fn, *args, cancel_token=cancel_token, name=name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every outstanding unit and wait for them to unwind."""
        tasks = list(self._tasks)
        if not tasks:
            return
        log.info("worker_pool_shutdown", outstanding=len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks, timeout=timeout)
