from __future__ import annotations

import asyncio

import pytest

from avatar_worker import metrics
from avatar_worker.pipeline.errors import RunnerClosedError, TaskBusyError
from avatar_worker.pipeline.runner import TaskRunner


def test_concurrency_is_bounded(wait_until) -> None:
    async def scenario():
        runner = TaskRunner(max_concurrent=2)
        release = asyncio.Event()
        peak = 0

        async def routine():
            nonlocal peak
            peak = max(peak, runner.active_count)
            await release.wait()

        for i in range(5):
            runner.start(f"t{i}", routine)
        await wait_until(lambda: runner.active_count == 2)
        waiting = runner.waiting_count
        gauges = metrics.get_snapshot()["gauges"]
        release.set()
        await runner.wait_idle()
        return peak, waiting, gauges, runner.active_count

    peak, waiting, gauges, active_after = asyncio.run(scenario())

    assert peak == 2
    assert waiting == 3
    assert gauges["routines.active"] == 2
    assert active_after == 0


def test_one_routine_per_task() -> None:
    async def scenario():
        runner = TaskRunner()
        gate = asyncio.Event()
        runner.start("t1", gate.wait)
        with pytest.raises(TaskBusyError):
            runner.start("t1", gate.wait)
        gate.set()
        await runner.wait_idle()
        runner.start("t1", gate.wait)
        await runner.wait_idle()

    asyncio.run(scenario())


def test_cancel_unwinds_routine() -> None:
    async def scenario():
        runner = TaskRunner()
        unwound = []

        async def routine():
            try:
                await asyncio.sleep(60)
            finally:
                unwound.append(True)

        runner.start("t1", routine)
        await asyncio.sleep(0)
        cancelled = await runner.cancel("t1")
        again = await runner.cancel("t1")
        return cancelled, again, unwound, runner.is_running("t1")

    assert asyncio.run(scenario()) == (True, False, [True], False)


def test_shutdown_refuses_new_routines() -> None:
    async def scenario():
        runner = TaskRunner()
        runner.start("t1", lambda: asyncio.sleep(60))
        await runner.shutdown()
        with pytest.raises(RunnerClosedError):
            runner.start("t2", lambda: asyncio.sleep(0))
        return runner.is_running("t1")

    assert asyncio.run(scenario()) is False
