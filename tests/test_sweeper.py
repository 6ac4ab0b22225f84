from __future__ import annotations

import asyncio

import pytest

from foreman_mcp.sweeper import ManualTimer, PeriodicTimer, periodic_timer_factory


def test_periodic_timer_ticks_until_cancelled() -> None:
    ticks: list[int] = []

    async def tick() -> None:
        ticks.append(len(ticks))

    async def scenario():
        timer = periodic_timer_factory(0.01)(tick)
        timer.start()
        timer.start()
        while len(ticks) < 3:
            await asyncio.sleep(0.01)
        timer.cancel()
        assert not timer.running
        count = len(ticks)
        await asyncio.sleep(0.05)
        return count

    count = asyncio.run(scenario())

    assert len(ticks) == count


def test_periodic_timer_survives_failing_tick() -> None:
    calls: list[str] = []

    async def tick() -> None:
        calls.append("tick")
        if len(calls) == 1:
            raise RuntimeError("sweep failed")

    async def scenario():
        timer = PeriodicTimer(tick, 0.01)
        timer.start()
        while len(calls) < 2:
            await asyncio.sleep(0.01)
        timer.cancel()

    asyncio.run(scenario())

    assert len(calls) >= 2


def test_periodic_timer_rejects_non_positive_interval() -> None:
    async def tick() -> None:
        return None

    with pytest.raises(ValueError):
        PeriodicTimer(tick, 0)


def test_manual_timer_fires_on_demand() -> None:
    fired: list[bool] = []

    async def tick() -> None:
        fired.append(True)

    timer = ManualTimer(tick)
    timer.start()
    asyncio.run(timer.fire())
    timer.cancel()

    assert timer.started and timer.cancelled
    assert fired == [True]
