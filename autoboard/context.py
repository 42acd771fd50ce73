"""
Automation Context

The read/write view of the board handed to every engine call. The engine
never touches storage: it reads the mappings below and mutates the board
only through these capabilities.
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Protocol, runtime_checkable

from autoboard.models import Card, Channel, InstructionCard, TagDefinition, Task


@runtime_checkable
class AutomationContext(Protocol):
    @property
    def channels(self) -> Mapping[str, Channel]: ...

    @property
    def cards(self) -> Mapping[str, Card]: ...

    @property
    def tasks(self) -> Mapping[str, Task]: ...

    @property
    def instruction_cards(self) -> Mapping[str, InstructionCard]: ...

    # Board mutations
    def create_card(
        self,
        channel_id: str,
        column_id: str,
        title: str,
        initial_message: str | None = None,
        source: str = "ai",
        created_by_instruction_id: str | None = None,
    ) -> Card | None: ...

    def update_card(self, card_id: str, updates: dict[str, Any]) -> None: ...

    def move_card(self, card_id: str, to_column_id: str, to_index: int = 0) -> None: ...

    def set_card_property(
        self, card_id: str, key: str, value: str, display_type: str = "field", color: str | None = None
    ) -> None: ...

    def add_message(self, card_id: str, message_type: str, content: str) -> None: ...

    def create_task(
        self, channel_id: str, card_id: str | None, title: str, description: str = ""
    ) -> Task | None: ...

    def update_instruction_card(self, instruction_id: str, updates: dict[str, Any]) -> None: ...

    def add_tag_definition(self, channel_id: str, name: str, color: str) -> TagDefinition: ...

    def add_tag_to_card(self, card_id: str, tag_name: str) -> None: ...

    # Lifecycle hooks
    def start_ai_operation(self, status: str, context: dict[str, Any] | None = None) -> None: ...

    def complete_ai_operation(self) -> None: ...

    def set_card_processing(self, card_id: str, is_processing: bool, status: str | None = None) -> None: ...

    def set_instruction_running(self, instruction_id: str, is_running: bool) -> None: ...

    def get_ai_abort_signal(self) -> asyncio.Event | None: ...

    def record_instruction_run(self, card_id: str, instruction_id: str) -> None: ...

    def on_cards_skipped(self, count: int, instruction_title: str) -> None: ...
