"""
In-memory board store.

Implements the Automation Context over a BoardState and optionally
publishes card lifecycle events on an AutomationEventBus, the way the
board-mutation layer is expected to. Boards load from and save to YAML.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from loguru import logger
from pydantic import TypeAdapter, ValidationError

from autoboard.event_bus import AutomationEventBus
from autoboard.models import (
    AutomaticTrigger,
    AutomaticSafeguards,
    BoardState,
    Card,
    CardMessage,
    CardProperty,
    Channel,
    InstructionCard,
    TagDefinition,
    Task,
    utc_now,
)


class BoardStore:
    """Single-writer board state with the Automation Context capabilities."""

    def __init__(
        self,
        state: BoardState | None = None,
        bus: AutomationEventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.state = state or BoardState()
        self.bus = bus
        self.clock = clock
        self.running_instruction_ids: set[str] = set()
        self.ai_operation: dict[str, Any] | None = None
        self.skipped_notices: list[tuple[int, str]] = []
        self._abort = asyncio.Event()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @classmethod
    def load(
        cls,
        path: Path,
        bus: AutomationEventBus | None = None,
        default_safeguards: AutomaticSafeguards | None = None,
    ) -> BoardStore:
        """Load a board. Instructions without their own safeguards get the configured defaults."""
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        for instruction_id, instruction in (raw.get("instruction_cards") or {}).items():
            if isinstance(instruction, dict) and instruction.get("triggers"):
                instruction["triggers"] = _valid_triggers(instruction_id, instruction["triggers"])
        state = BoardState.model_validate(raw)
        if default_safeguards is not None:
            for instruction in state.instruction_cards.values():
                if "safeguards" not in instruction.model_fields_set:
                    instruction.safeguards = default_safeguards.model_copy()
        return cls(state, bus=bus)

    def save(self, path: Path) -> None:
        data = self.state.model_dump(mode="json", exclude_none=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
        logger.debug(f"[STORE] Board saved to {path}")

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def channels(self) -> Mapping[str, Channel]:
        return self.state.channels

    @property
    def cards(self) -> Mapping[str, Card]:
        return self.state.cards

    @property
    def tasks(self) -> Mapping[str, Task]:
        return self.state.tasks

    @property
    def instruction_cards(self) -> Mapping[str, InstructionCard]:
        return self.state.instruction_cards

    # ------------------------------------------------------------------
    # Setup helpers
    # ------------------------------------------------------------------

    def add_channel(self, channel: Channel) -> Channel:
        self.state.channels[channel.id] = channel
        return channel

    def add_instruction_card(self, instruction: InstructionCard) -> InstructionCard:
        self.state.instruction_cards[instruction.id] = instruction
        channel = self.state.channels.get(instruction.channel_id)
        if channel and instruction.id not in channel.instruction_card_ids:
            channel.instruction_card_ids.append(instruction.id)
        return instruction

    # ------------------------------------------------------------------
    # Board mutations
    # ------------------------------------------------------------------

    def create_card(
        self,
        channel_id: str,
        column_id: str,
        title: str,
        initial_message: str | None = None,
        source: str = "manual",
        created_by_instruction_id: str | None = None,
    ) -> Card | None:
        channel = self.state.channels.get(channel_id)
        column = channel.column(column_id) if channel else None
        if column is None:
            logger.warning(f"[STORE] Cannot create card: column {column_id} not in channel {channel_id}")
            return None

        timestamp = self.clock()
        messages = []
        if initial_message:
            messages.append(CardMessage(
                type="ai_response" if source == "ai" else "note",
                content=initial_message,
                created_at=timestamp,
            ))
        card = Card(
            channel_id=channel_id,
            title=title,
            messages=messages,
            source="ai" if source == "ai" else "manual",
            created_at=timestamp,
            updated_at=timestamp,
            created_by_instruction_id=created_by_instruction_id,
        )
        self.state.cards[card.id] = card
        column.card_ids.append(card.id)

        if self.bus:
            self.bus.emit_card_created(card.id, channel_id, column_id, created_by_instruction_id)
        return card

    def update_card(self, card_id: str, updates: dict[str, Any]) -> None:
        card = self.state.cards.get(card_id)
        if card is None:
            return
        self.state.cards[card_id] = card.model_copy(update={**updates, "updated_at": self.clock()})
        if self.bus:
            self.bus.emit_card_modified(card_id, card.channel_id)

    def move_card(self, card_id: str, to_column_id: str, to_index: int = 0) -> None:
        card = self.state.cards.get(card_id)
        channel = self.state.channels.get(card.channel_id) if card else None
        if channel is None:
            return
        from_column = channel.column_of(card_id)
        to_column = channel.column(to_column_id)
        if from_column is None or to_column is None:
            return

        from_column.card_ids.remove(card_id)
        to_column.card_ids.insert(to_index, card_id)

        if self.bus and from_column.id != to_column.id:
            self.bus.emit_card_moved(
                card_id, card.channel_id, from_column.id, to_column.id, card.created_by_instruction_id
            )

    def delete_card(self, card_id: str) -> None:
        card = self.state.cards.pop(card_id, None)
        if card is None:
            return
        channel = self.state.channels.get(card.channel_id)
        if channel:
            for column in channel.columns:
                if card_id in column.card_ids:
                    column.card_ids.remove(card_id)
        if self.bus:
            self.bus.emit_card_deleted(card.channel_id)

    def set_card_property(
        self, card_id: str, key: str, value: str, display_type: str = "field", color: str | None = None
    ) -> None:
        card = self.state.cards.get(card_id)
        if card is None:
            return
        properties = [p for p in card.properties if p.key != key]
        properties.append(CardProperty(key=key, value=value, display_type=display_type, color=color))
        card.properties = properties
        card.updated_at = self.clock()

    def add_message(self, card_id: str, message_type: str, content: str) -> None:
        card = self.state.cards.get(card_id)
        if card is None:
            return
        card.messages.append(CardMessage(type=message_type, content=content, created_at=self.clock()))
        card.updated_at = self.clock()

    def create_task(
        self, channel_id: str, card_id: str | None, title: str, description: str = ""
    ) -> Task | None:
        if channel_id not in self.state.channels:
            return None
        task = Task(channel_id=channel_id, card_id=card_id, title=title, description=description)
        self.state.tasks[task.id] = task
        return task

    def update_instruction_card(self, instruction_id: str, updates: dict[str, Any]) -> None:
        instruction = self.state.instruction_cards.get(instruction_id)
        if instruction is None:
            return
        self.state.instruction_cards[instruction_id] = instruction.model_copy(update=updates)

    def add_tag_definition(self, channel_id: str, name: str, color: str) -> TagDefinition:
        tag = TagDefinition(name=name, color=color)
        channel = self.state.channels.get(channel_id)
        if channel:
            channel.tag_definitions.append(tag)
        return tag

    def add_tag_to_card(self, card_id: str, tag_name: str) -> None:
        card = self.state.cards.get(card_id)
        if card and tag_name not in card.tags:
            card.tags.append(tag_name)
            card.updated_at = self.clock()

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    def start_ai_operation(self, status: str, context: dict[str, Any] | None = None) -> None:
        self.ai_operation = {"status": status, "context": context or {}, "started_at": self.clock()}

    def complete_ai_operation(self) -> None:
        self.ai_operation = None

    def set_card_processing(self, card_id: str, is_processing: bool, status: str | None = None) -> None:
        card = self.state.cards.get(card_id)
        if card is None:
            return
        card.is_processing = is_processing
        card.processing_status = status if is_processing else None

    def set_instruction_running(self, instruction_id: str, is_running: bool) -> None:
        if is_running:
            self.running_instruction_ids.add(instruction_id)
        else:
            self.running_instruction_ids.discard(instruction_id)

    def get_ai_abort_signal(self) -> asyncio.Event | None:
        return self._abort

    def cancel_ai_operations(self) -> None:
        """Abort in-flight runs; later runs get a fresh signal."""
        self._abort.set()
        self._abort = asyncio.Event()

    def record_instruction_run(self, card_id: str, instruction_id: str) -> None:
        card = self.state.cards.get(card_id)
        if card is None:
            return
        card.processed_by_instructions = {**card.processed_by_instructions, instruction_id: self.clock()}

    def on_cards_skipped(self, count: int, instruction_title: str) -> None:
        self.skipped_notices.append((count, instruction_title))
        logger.info(
            f"[STORE] Skipped {count} card{'s' if count > 1 else ''} "
            f"already processed by \"{instruction_title}\""
        )


_TRIGGER_ADAPTER: TypeAdapter = TypeAdapter(AutomaticTrigger)


def _valid_triggers(instruction_id: str, triggers: list[Any]) -> list[Any]:
    """Drop triggers that fail validation so one bad entry cannot sink the board."""
    valid = []
    for trigger in triggers:
        try:
            _TRIGGER_ADAPTER.validate_python(trigger)
        except ValidationError as e:
            logger.warning(
                f"[STORE] Ignoring invalid trigger on instruction {instruction_id}: "
                f"{trigger!r} ({e.error_count()} error(s))"
            )
            continue
        valid.append(trigger)
    return valid
