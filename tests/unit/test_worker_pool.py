"""Tests for plan_orchestrator/engine/worker_pool.py."""

import asyncio

import pytest

from plan_orchestrator.engine.cancellation import CancellationToken
from plan_orchestrator.engine.worker_pool import WorkerPool
from plan_orchestrator.exceptions import OperationCancelledError
from tests.helpers import wait_until


def test_rejects_non_positive_size():
    with pytest.raises(ValueError, match="at least 1"):
        WorkerPool(max_workers=0)


@pytest.mark.asyncio
async def test_run_returns_unit_result():
    pool = WorkerPool(max_workers=1)

    async def double(value):
        return value * 2

    assert await pool.run(double, 21) == 42
    assert pool.active_count == 0


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    pool = WorkerPool(max_workers=2)
    active = 0
    peak = 0

    async def unit():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1

    await asyncio.gather(*(pool.submit(unit) for _ in range(6)))

    assert peak == 2
    assert pool.active_count == 0
    assert pool.pending_count == 0


@pytest.mark.asyncio
async def test_failing_unit_releases_slot():
    pool = WorkerPool(max_workers=1)

    async def explode():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await pool.run(explode)

    async def ok():
        return "ok"

    assert await asyncio.wait_for(pool.run(ok), timeout=1) == "ok"


@pytest.mark.asyncio
async def test_slot_wait_observes_cancellation():
    pool = WorkerPool(max_workers=1)
    release = asyncio.Event()
    token = CancellationToken()

    async def blocker():
        await release.wait()

    async def never_runs():
        raise AssertionError("unit should not start")

    holder = pool.submit(blocker)
    await wait_until(lambda: pool.active_count == 1)

    waiter = pool.submit(never_runs, cancel_token=token)
    await wait_until(lambda: pool.pending_count == 1)
    token.cancel()

    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(waiter, timeout=1)
    assert pool.pending_count == 0

    release.set()
    await holder
    assert pool.active_count == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_outstanding_units():
    pool = WorkerPool(max_workers=2)

    task = pool.submit(asyncio.sleep, 10)
    await wait_until(lambda: pool.active_count == 1)

    await pool.shutdown(timeout=1)

    assert task.cancelled()
    assert pool.active_count == 0
