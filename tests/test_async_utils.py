"""Tests for PeriodicTask."""

import asyncio

import pytest

from perp_keeper.async_utils import PeriodicTask


@pytest.mark.asyncio
async def test_fire_skips_while_busy():
    release = asyncio.Event()
    runs = []

    async def work():
        runs.append(1)
        await release.wait()

    task = PeriodicTask("test", work, interval_secs=60)
    assert task.fire() is True
    await asyncio.sleep(0)
    assert task.fire() is False

    release.set()
    await task.wait_idle(timeout=1)

    assert runs == [1]
    assert task.get_stats()["skipped"] == 1
    assert task.fire() is True
    await task.wait_idle(timeout=1)


@pytest.mark.asyncio
async def test_failure_is_counted_not_raised():
    async def broken():
        raise RuntimeError("boom")

    task = PeriodicTask("test", broken, interval_secs=60)
    task.fire()
    await task.wait_idle(timeout=1)

    stats = task.get_stats()
    assert stats["runs"] == 1
    assert stats["failures"] == 1


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_cancels_timer():
    ran = asyncio.Event()

    async def work():
        ran.set()

    task = PeriodicTask("test", work, interval_secs=60)
    task.start()
    await asyncio.wait_for(ran.wait(), timeout=1)
    assert task.running

    await task.stop()
    assert not task.running


@pytest.mark.asyncio
async def test_delayed_first_run():
    runs = []

    async def work():
        runs.append(1)

    task = PeriodicTask("test", work, interval_secs=60, run_immediately=False)
    task.start()
    await asyncio.sleep(0.01)
    await task.stop()

    assert runs == []
