import asyncio

import pytest

from solscout.detection.timers import RepeatingTask


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.anyio
async def test_runs_repeatedly_until_stopped():
    calls = []

    async def _tick():
        calls.append(1)

    task = RepeatingTask(_tick, 0.01)
    task.start()
    await _until(lambda: len(calls) >= 3)
    await task.stop()
    seen = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == seen
    assert not task.running


@pytest.mark.anyio
async def test_first_run_waits_for_interval_unless_eager():
    calls = []
    lazy = RepeatingTask(lambda: calls.append("lazy"), 10.0)
    eager = RepeatingTask(lambda: calls.append("eager"), 10.0, run_immediately=True)
    lazy.start()
    eager.start()
    await _until(lambda: "eager" in calls)
    assert "lazy" not in calls
    await lazy.stop()
    await eager.stop()


@pytest.mark.anyio
async def test_failures_do_not_end_the_loop():
    calls = []

    def _tick():
        calls.append(1)
        raise RuntimeError("boom")

    task = RepeatingTask(_tick, 0.01)
    task.start()
    await _until(lambda: len(calls) >= 2)
    await task.stop()


@pytest.mark.anyio
async def test_stop_is_idempotent():
    task = RepeatingTask(lambda: None, 0.01)
    await task.stop()
    task.start()
    await task.stop()
    await task.stop()


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        RepeatingTask(lambda: None, 0)
