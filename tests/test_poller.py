import asyncio

import pytest

from autoboard.poller import SchedulerPoller


@pytest.mark.asyncio()
async def test_failing_tick_does_not_stop_polling():
    calls = []

    async def tick():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("transient")

    poller = SchedulerPoller(tick, interval_seconds=60)
    await poller.run_once()
    await poller.run_once()

    assert calls == [0, 1]
    assert poller.tick_count == 2


@pytest.mark.asyncio()
async def test_initializes_once_then_ticks_until_stopped():
    events = []
    ticked = asyncio.Event()

    async def initialize():
        events.append("init")

    async def tick():
        events.append("tick")
        if events.count("tick") >= 2:
            ticked.set()

    poller = SchedulerPoller(tick, interval_seconds=0.01, startup_delay_seconds=0.01, initialize=initialize)
    poller.start()
    assert poller.running

    await asyncio.wait_for(ticked.wait(), timeout=2)
    await poller.stop()

    assert not poller.running
    assert events[0] == "init"
    assert events.count("init") == 1
    assert events.count("tick") >= 2
