import asyncio

import pytest

from chatcore.scheduler import BackgroundScheduler


@pytest.mark.asyncio
async def test_jobs_run_in_order_and_failures_do_not_stop_the_batch():
    scheduler = BackgroundScheduler()
    seen = []

    async def first():
        seen.append("first")

    async def broken():
        raise RuntimeError("disk full")

    async def last():
        seen.append("last")

    scheduler.schedule("turn:test", [("first", first), ("broken", broken), ("last", last)])
    assert await scheduler.drain(5) is True
    assert seen == ["first", "last"]
    assert scheduler.completed == 2
    assert scheduler.failed == 1
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_drain_times_out_on_stuck_job():
    scheduler = BackgroundScheduler()
    release = asyncio.Event()

    async def stuck():
        await release.wait()

    scheduler.schedule("turn:stuck", [("stuck", stuck)])
    assert scheduler.pending == 1
    assert await scheduler.drain(0.05) is False
    release.set()
    assert await scheduler.drain(5) is True


@pytest.mark.asyncio
async def test_drain_with_nothing_scheduled():
    assert await BackgroundScheduler().drain(0.01) is True
