import yaml

from autoboard.context import AutomationContext
from autoboard.models import AutomaticSafeguards, ThresholdCheck
from autoboard.store import BoardStore

from conftest import make_instruction


def test_store_satisfies_context(store):
    assert isinstance(store, AutomationContext)


def test_load_applies_default_safeguards_only_where_missing(tmp_path):
    path = tmp_path / "board.yaml"
    path.write_text(yaml.safe_dump({
        "instruction_cards": {
            "plain": {"id": "plain", "title": "Plain", "action": "generate"},
            "tuned": {
                "id": "tuned",
                "title": "Tuned",
                "action": "generate",
                "safeguards": {"cooldown_minutes": 1},
            },
        },
    }))

    store = BoardStore.load(path, default_safeguards=AutomaticSafeguards(cooldown_minutes=30, daily_cap=7))

    assert store.instruction_cards["plain"].safeguards.cooldown_minutes == 30
    assert store.instruction_cards["plain"].safeguards.daily_cap == 7
    assert store.instruction_cards["tuned"].safeguards.cooldown_minutes == 1
    assert store.instruction_cards["tuned"].safeguards.daily_cap == 50


def test_save_round_trips_automation_fields(store, tmp_path):
    store.add_instruction_card(make_instruction(
        triggers=[{"type": "threshold", "column_id": "inbox", "operator": "below", "threshold": 2}],
    ))
    path = tmp_path / "board.yaml"

    store.save(path)
    loaded = BoardStore.load(path)

    instruction = loaded.instruction_cards["ins-1"]
    assert instruction.threshold_triggers()[0].threshold == 2
    assert loaded.channels["ch-1"].instruction_card_ids == ["ins-1"]


def test_delete_requests_threshold_check(store, bus):
    checks: list[ThresholdCheck] = []
    bus.on_threshold_check(checks.append)
    card = store.create_card("ch-1", "inbox", "Gone soon")

    store.delete_card(card.id)

    assert card.id not in store.cards
    assert store.channels["ch-1"].column("inbox").card_ids == []
    assert [c.card_id for c in checks] == [card.id, None]


def test_property_update_replaces_key(store, clock):
    card = store.create_card("ch-1", "inbox", "Paper")
    clock.advance(minutes=1)

    store.set_card_property(card.id, "pages", "10")
    store.set_card_property(card.id, "pages", "12", display_type="chip")

    updated = store.cards[card.id]
    assert [(p.key, p.value, p.display_type) for p in updated.properties] == [("pages", "12", "chip")]
    assert updated.updated_at == clock.now


def test_cancel_gives_later_runs_a_fresh_signal(store):
    first = store.get_ai_abort_signal()

    store.cancel_ai_operations()

    assert first.is_set()
    assert not store.get_ai_abort_signal().is_set()


def test_load_drops_invalid_triggers_and_keeps_the_board(tmp_path):
    path = tmp_path / "board.yaml"
    path.write_text(yaml.safe_dump({
        "instruction_cards": {
            "good": {
                "id": "good",
                "title": "Hourly digest",
                "action": "generate",
                "run_mode": "automatic",
                "is_enabled": True,
                "triggers": [{"type": "scheduled", "interval": "hourly"}],
            },
            "odd": {
                "id": "odd",
                "title": "Monthly report",
                "action": "generate",
                "run_mode": "automatic",
                "is_enabled": True,
                "triggers": [
                    {"type": "scheduled", "interval": "monthly"},
                    {"type": "scheduled", "interval": "weekly", "day_of_week": 9},
                    {"type": "threshold", "column_id": "inbox", "operator": "below", "threshold": 2},
                ],
            },
        },
    }))

    store = BoardStore.load(path)

    assert store.instruction_cards["good"].scheduled_triggers()[0].interval == "hourly"
    odd = store.instruction_cards["odd"]
    assert odd.scheduled_triggers() == []
    assert [t.column_id for t in odd.threshold_triggers()] == ["inbox"]
