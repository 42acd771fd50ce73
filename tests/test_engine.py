import asyncio
from datetime import timedelta

import pytest

from autoboard.actions import GeneratedCard, ModifiedCard, RunResult
from autoboard.engine import AutomationEngine
from autoboard.models import (
    AutomaticSafeguards,
    CardEvent,
    EventTrigger,
    ScheduledTrigger,
    ThresholdTrigger,
)

from conftest import T0, FakeRunner, make_instruction


def _engine(store, bus, clock, runner=None) -> AutomationEngine:
    return AutomationEngine(store, runner or FakeRunner(), bus=bus, clock=clock)


def _moved_to_doing(card_id: str = "c1") -> CardEvent:
    return CardEvent(type="moved", card_id=card_id, channel_id="ch-1", to_column_id="doing")


@pytest.mark.asyncio()
async def test_cooldown_between_event_runs(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[EventTrigger(event_type="card_moved_to", column_id="doing")],
        safeguards=AutomaticSafeguards(cooldown_minutes=60),
    ))
    engine = _engine(store, bus, clock)

    first = await engine.handle_card_event(_moved_to_doing())
    clock.advance(minutes=30)
    second = await engine.handle_card_event(_moved_to_doing())
    clock.advance(minutes=31)
    third = await engine.handle_card_event(_moved_to_doing())

    assert [r[0].status for r in (first, second, third)] == ["completed", "denied", "completed"]
    assert second[0].decision.reason == "cooldown"
    assert len(store.instruction_cards["ins-1"].execution_history) == 2


@pytest.mark.asyncio()
async def test_daily_cap_resets_at_midnight(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[EventTrigger(event_type="card_moved_to", column_id="doing")],
        safeguards=AutomaticSafeguards(cooldown_minutes=0, daily_cap=5),
    ))
    engine = _engine(store, bus, clock)

    statuses = []
    for _ in range(6):
        results = await engine.handle_card_event(_moved_to_doing())
        statuses.append(results[0].status)
        clock.advance(minutes=1)

    assert statuses == ["completed"] * 5 + ["denied"]

    clock.now = T0.replace(hour=0) + timedelta(days=1, minutes=1)
    results = await engine.handle_card_event(_moved_to_doing())

    assert results[0].status == "completed"
    assert store.instruction_cards["ins-1"].daily_execution_count == 1


@pytest.mark.asyncio()
async def test_concurrent_matches_run_instruction_once(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[EventTrigger(event_type="card_moved_to", column_id="doing")],
    ))
    runner = FakeRunner(delay=0.05)
    engine = _engine(store, bus, clock, runner)

    first, second = await asyncio.gather(
        engine.handle_card_event(_moved_to_doing("c1")),
        engine.handle_card_event(_moved_to_doing("c2")),
    )

    assert sorted([first[0].status, second[0].status]) == ["busy", "completed"]
    assert len(runner.calls) == 1
    assert not engine.is_running("ins-1")


@pytest.mark.asyncio()
async def test_bus_events_drive_execution(store, bus, clock):
    card = store.create_card("ch-1", "inbox", "Paper")
    store.add_instruction_card(make_instruction(
        action="modify",
        target={"type": "column", "column_id": "doing"},
        triggers=[EventTrigger(event_type="card_moved_to", column_id="doing")],
    ))
    runner = FakeRunner(lambda request: RunResult(modified_cards=[
        ModifiedCard(id=c.id, title=c.title.upper()) for c in request.cards
    ]))
    engine = _engine(store, bus, clock, runner)
    engine.attach()

    store.move_card(card.id, "doing")
    await engine.drain()
    engine.detach()

    assert store.cards[card.id].title == "PAPER"
    assert [c.id for c in runner.calls[0].cards] == [card.id]
    assert len(store.instruction_cards["ins-1"].execution_history) == 1


@pytest.mark.asyncio()
async def test_generated_cards_do_not_retrigger_their_instruction(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[EventTrigger(event_type="card_created_in", column_id="inbox")],
    ))
    runner = FakeRunner(RunResult(generated_cards=[GeneratedCard(title="Follow-up")]))
    engine = _engine(store, bus, clock, runner)
    engine.attach()

    store.create_card("ch-1", "inbox", "Seed")
    await engine.drain()

    assert len(runner.calls) == 1
    assert len(store.channels["ch-1"].column("inbox").card_ids) == 2


@pytest.mark.asyncio()
async def test_threshold_check_refills_column(store, bus, clock):
    for title in ("a", "b"):
        store.create_card("ch-1", "inbox", title)
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[ThresholdTrigger(column_id="inbox", operator="below", threshold=3)],
    ))
    runner = FakeRunner(RunResult(generated_cards=[GeneratedCard(title="c")]))
    engine = _engine(store, bus, clock, runner)
    engine.attach()

    engine.check_thresholds("ch-1")
    await engine.drain()

    assert len(runner.calls) == 1
    assert len(store.channels["ch-1"].column("inbox").card_ids) == 3
    record = store.instruction_cards["ins-1"].execution_history[0]
    assert record.triggered_by == "threshold"
    assert record.cards_affected == 1


@pytest.mark.asyncio()
async def test_initialize_schedules_then_poll_runs(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[ScheduledTrigger(interval="hourly")],
    ))
    engine = _engine(store, bus, clock)

    assert await engine.initialize() == []
    assert store.instruction_cards["ins-1"].next_scheduled_run == T0 + timedelta(hours=1)

    clock.advance(hours=1, seconds=1)
    results = await engine.check_scheduled()

    assert [r.status for r in results] == ["completed"]
    updated = store.instruction_cards["ins-1"]
    assert updated.last_executed_at == clock.now
    assert updated.next_scheduled_run == clock.now + timedelta(hours=1)


@pytest.mark.asyncio()
async def test_scheduled_instruction_without_channel_is_skipped(store, bus, clock):
    store.add_instruction_card(make_instruction(
        channel_id="ch-gone",
        action="generate",
        triggers=[ScheduledTrigger(interval="hourly")],
        last_executed_at=T0 - timedelta(hours=2),
    ))
    runner = FakeRunner()

    assert await _engine(store, bus, clock, runner).check_scheduled() == []
    assert runner.calls == []


def test_stimulus_without_event_loop_is_dropped(store, bus, clock):
    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[EventTrigger(event_type="card_moved_to", column_id="doing")],
    ))
    engine = _engine(store, bus, clock)
    engine.attach()

    bus.emit_card_event(_moved_to_doing())

    assert store.instruction_cards["ins-1"].execution_history == []


@pytest.mark.asyncio()
async def test_instruction_added_after_startup_gets_scheduled(store, bus, clock):
    engine = _engine(store, bus, clock)
    await engine.initialize()

    store.add_instruction_card(make_instruction(
        action="generate",
        triggers=[ScheduledTrigger(interval="hourly")],
    ))
    clock.advance(days=2)

    assert await engine.check_scheduled() == []
    next_run = store.instruction_cards["ins-1"].next_scheduled_run
    assert next_run == clock.now + timedelta(hours=1)

    clock.advance(hours=1, seconds=1)
    results = await engine.check_scheduled()

    assert [r.status for r in results] == ["completed"]
