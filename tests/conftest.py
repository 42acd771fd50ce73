from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from autoboard.actions import RunRequest, RunResult
from autoboard.event_bus import AutomationEventBus
from autoboard.models import (
    AutomaticSafeguards,
    BoardState,
    Channel,
    Column,
    ColumnTarget,
    InstructionCard,
)
from autoboard.store import BoardStore

T0 = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRunner:
    """Stands in for the LLM-backed runner."""

    def __init__(self, result=None, exc: Exception | None = None, delay: float = 0.0):
        self.result = result
        self.exc = exc
        self.delay = delay
        self.calls: list[RunRequest] = []

    async def run(self, request: RunRequest, abort: asyncio.Event | None = None) -> RunResult:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        if callable(self.result):
            return self.result(request)
        return self.result or RunResult()


def make_instruction(**overrides) -> InstructionCard:
    fields = dict(
        id="ins-1",
        channel_id="ch-1",
        title="Triage inbox",
        action="modify",
        target=ColumnTarget(column_id="inbox"),
        run_mode="automatic",
        is_enabled=True,
        safeguards=AutomaticSafeguards(cooldown_minutes=0, daily_cap=50, prevent_loops=True),
    )
    fields.update(overrides)
    return InstructionCard(**fields)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def bus() -> AutomationEventBus:
    return AutomationEventBus()


@pytest.fixture
def store(clock, bus) -> BoardStore:
    channel = Channel(
        id="ch-1",
        name="Reading list",
        columns=[
            Column(id="inbox", name="Inbox"),
            Column(id="doing", name="Reading"),
            Column(id="done", name="Done"),
        ],
    )
    return BoardStore(BoardState(channels={channel.id: channel}), bus=bus, clock=clock)
