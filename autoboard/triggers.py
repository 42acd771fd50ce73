"""
Trigger Evaluator

Pure functions that turn a stimulus (clock tick, card event, threshold
check) into the instruction cards whose trigger condition currently holds.
No I/O, no exceptions: a malformed trigger simply never matches.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Iterable

from autoboard.models import (
    CardEvent,
    Channel,
    EventTrigger,
    InstructionCard,
    ThresholdCheck,
    ThresholdTrigger,
    TriggerType,
)
from autoboard.schedule import is_due, trigger_due_at


@dataclass(frozen=True)
class TriggerMatch:
    instruction: InstructionCard
    triggered_by: TriggerType
    event: CardEvent | None = None
    threshold_check: ThresholdCheck | None = None

    @property
    def instruction_id(self) -> str:
        return self.instruction.id

    @property
    def card_id(self) -> str | None:
        if self.event is not None:
            return self.event.card_id
        if self.threshold_check is not None:
            return self.threshold_check.card_id
        return None


def _candidates(instructions: Iterable[InstructionCard]) -> list[InstructionCard]:
    return [i for i in instructions if i.is_automatic]


def _in_channel(instruction: InstructionCard, channel: Channel) -> bool:
    return instruction.channel_id == channel.id or instruction.id in channel.instruction_card_ids


def _self_produced(instruction: InstructionCard, origin_instruction_id: str | None) -> bool:
    return (
        instruction.safeguards.prevent_loops
        and origin_instruction_id is not None
        and origin_instruction_id == instruction.id
    )


# ---------------------------------------------------------------------------
# Scheduled
# ---------------------------------------------------------------------------

def evaluate_scheduled(
    now: datetime, instructions: Iterable[InstructionCard], tz: tzinfo
) -> list[TriggerMatch]:
    """Instructions with at least one scheduled trigger past its due instant."""
    due: list[TriggerMatch] = []
    for instruction in _candidates(instructions):
        for trigger in instruction.scheduled_triggers():
            if is_due(trigger_due_at(instruction, trigger, tz), now, tz):
                due.append(TriggerMatch(instruction=instruction, triggered_by="scheduled"))
                break
    return due


# ---------------------------------------------------------------------------
# Event
# ---------------------------------------------------------------------------

def event_matches(trigger: EventTrigger, event: CardEvent, channel: Channel) -> bool:
    if trigger.event_type == "card_moved_to":
        return event.type == "moved" and event.to_column_id == trigger.column_id
    if trigger.event_type == "card_created_in":
        return event.type == "created" and event.to_column_id == trigger.column_id
    if trigger.event_type == "card_modified":
        if event.type != "modified":
            return False
        column = channel.column_of(event.card_id)
        return column is not None and column.id == trigger.column_id
    return False


def evaluate_event(
    event: CardEvent, instructions: Iterable[InstructionCard], channel: Channel | None
) -> list[TriggerMatch]:
    if channel is None or channel.id != event.channel_id:
        return []

    matches: list[TriggerMatch] = []
    for instruction in _candidates(instructions):
        if not _in_channel(instruction, channel):
            continue
        if _self_produced(instruction, event.created_by_instruction_id):
            continue
        if any(event_matches(t, event, channel) for t in instruction.event_triggers()):
            matches.append(TriggerMatch(instruction=instruction, triggered_by="event", event=event))
    return matches


# ---------------------------------------------------------------------------
# Threshold
# ---------------------------------------------------------------------------

def column_card_counts(channel: Channel) -> dict[str, int]:
    return {column.id: len(column.card_ids) for column in channel.columns}


def threshold_satisfied(trigger: ThresholdTrigger, live_counts: dict[str, int]) -> bool:
    count = live_counts.get(trigger.column_id)
    if count is None:
        return False
    if trigger.operator == "below":
        return count < trigger.threshold
    if trigger.operator == "above":
        return count > trigger.threshold
    return False


def evaluate_threshold(
    check: ThresholdCheck,
    live_counts: dict[str, int],
    instructions: Iterable[InstructionCard],
    channel: Channel | None = None,
) -> list[TriggerMatch]:
    matches: list[TriggerMatch] = []
    for instruction in _candidates(instructions):
        if channel is not None:
            if not _in_channel(instruction, channel):
                continue
        elif instruction.channel_id != check.channel_id:
            continue
        if _self_produced(instruction, check.created_by_instruction_id):
            continue
        if any(threshold_satisfied(t, live_counts) for t in instruction.threshold_triggers()):
            matches.append(
                TriggerMatch(instruction=instruction, triggered_by="threshold", threshold_check=check)
            )
    return matches
