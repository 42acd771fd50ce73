"""
Autoboard data model.

Board entities (channels, columns, cards, tasks) and the automation
fields carried by instruction cards. Everything here is plain pydantic;
behaviour lives in the engine modules.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

InstructionAction = Literal["generate", "modify", "move"]
RunMode = Literal["manual", "automatic"]
TriggerType = Literal["scheduled", "event", "threshold"]
ScheduleInterval = Literal["hourly", "every4hours", "daily", "weekly"]
EventTriggerType = Literal["card_moved_to", "card_created_in", "card_modified"]
ThresholdOperator = Literal["below", "above"]
CardEventType = Literal["moved", "created", "modified"]


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Triggers & Safeguards
# ---------------------------------------------------------------------------

class ScheduledTrigger(BaseModel):
    type: Literal["scheduled"] = "scheduled"
    interval: ScheduleInterval
    specific_time: str | None = None  # "HH:mm"
    day_of_week: int | None = Field(default=None, ge=0, le=6)  # 0 = Sunday


class EventTrigger(BaseModel):
    type: Literal["event"] = "event"
    event_type: EventTriggerType
    column_id: str


class ThresholdTrigger(BaseModel):
    type: Literal["threshold"] = "threshold"
    column_id: str
    operator: ThresholdOperator
    threshold: int


AutomaticTrigger = Annotated[
    Union[ScheduledTrigger, EventTrigger, ThresholdTrigger],
    Field(discriminator="type"),
]


class AutomaticSafeguards(BaseModel):
    cooldown_minutes: int = 5
    daily_cap: int = 50
    prevent_loops: bool = True


class ExecutionRecord(BaseModel):
    """One audit entry. Never mutated after creation."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    triggered_by: TriggerType
    success: bool
    cards_affected: int = 0


# ---------------------------------------------------------------------------
# Instruction Cards
# ---------------------------------------------------------------------------

class ColumnTarget(BaseModel):
    type: Literal["column"] = "column"
    column_id: str


class ColumnsTarget(BaseModel):
    type: Literal["columns"] = "columns"
    column_ids: list[str] = Field(default_factory=list)


class BoardTarget(BaseModel):
    type: Literal["board"] = "board"


InstructionTarget = Annotated[
    Union[ColumnTarget, ColumnsTarget, BoardTarget],
    Field(discriminator="type"),
]


class AllColumns(BaseModel):
    type: Literal["all"] = "all"


ContextColumnSelection = Annotated[
    Union[AllColumns, ColumnsTarget],
    Field(discriminator="type"),
]


class InstructionCard(BaseModel):
    id: str = Field(default_factory=new_id)
    channel_id: str = ""  # empty = global
    title: str
    instructions: str = ""
    action: InstructionAction
    target: InstructionTarget = Field(default_factory=BoardTarget)
    context_columns: ContextColumnSelection | None = None  # None = all columns
    run_mode: RunMode = "manual"
    card_count: int | None = None

    # Automation fields (only meaningful when run_mode == "automatic")
    is_enabled: bool = False
    triggers: list[AutomaticTrigger] = Field(default_factory=list)
    safeguards: AutomaticSafeguards = Field(default_factory=AutomaticSafeguards)
    last_executed_at: datetime | None = None
    next_scheduled_run: datetime | None = None
    daily_execution_count: int = 0
    daily_count_reset_at: datetime | None = None
    execution_history: list[ExecutionRecord] = Field(default_factory=list)

    @property
    def is_automatic(self) -> bool:
        return self.run_mode == "automatic" and self.is_enabled and bool(self.triggers)

    def scheduled_triggers(self) -> list[ScheduledTrigger]:
        return [t for t in self.triggers if isinstance(t, ScheduledTrigger)]

    def event_triggers(self) -> list[EventTrigger]:
        return [t for t in self.triggers if isinstance(t, EventTrigger)]

    def threshold_triggers(self) -> list[ThresholdTrigger]:
        return [t for t in self.triggers if isinstance(t, ThresholdTrigger)]


# ---------------------------------------------------------------------------
# Board
# ---------------------------------------------------------------------------

class Column(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    card_ids: list[str] = Field(default_factory=list)


class TagDefinition(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    color: str


class Channel(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    ai_instructions: str = ""
    columns: list[Column] = Field(default_factory=list)
    instruction_card_ids: list[str] = Field(default_factory=list)
    tag_definitions: list[TagDefinition] = Field(default_factory=list)

    def column(self, column_id: str) -> Column | None:
        return next((c for c in self.columns if c.id == column_id), None)

    def column_of(self, card_id: str) -> Column | None:
        return next((c for c in self.columns if card_id in c.card_ids), None)


class CardMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    type: Literal["note", "question", "ai_response"] = "note"
    content: str
    created_at: datetime = Field(default_factory=utc_now)


class CardProperty(BaseModel):
    key: str
    value: str
    display_type: Literal["chip", "field"] = "field"
    color: str | None = None


class Card(BaseModel):
    id: str = Field(default_factory=new_id)
    channel_id: str
    title: str
    messages: list[CardMessage] = Field(default_factory=list)
    properties: list[CardProperty] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    source: Literal["manual", "ai"] = "manual"
    is_processing: bool = False
    processing_status: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    created_by_instruction_id: str | None = None
    processed_by_instructions: dict[str, datetime] = Field(default_factory=dict)

    def processed_since_change(self, instruction_id: str) -> bool:
        """True when the instruction processed this card after its last change."""
        processed_at = self.processed_by_instructions.get(instruction_id)
        return processed_at is not None and processed_at >= self.updated_at


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    channel_id: str
    card_id: str | None = None
    title: str
    description: str = ""
    status: Literal["not_started", "in_progress", "done"] = "not_started"
    created_at: datetime = Field(default_factory=utc_now)


class BoardState(BaseModel):
    channels: dict[str, Channel] = Field(default_factory=dict)
    cards: dict[str, Card] = Field(default_factory=dict)
    tasks: dict[str, Task] = Field(default_factory=dict)
    instruction_cards: dict[str, InstructionCard] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Stimuli
# ---------------------------------------------------------------------------

class CardEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CardEventType
    card_id: str
    channel_id: str
    to_column_id: str | None = None
    from_column_id: str | None = None
    created_by_instruction_id: str | None = None


class ThresholdCheck(BaseModel):
    """Request to re-evaluate threshold triggers of a channel."""
    model_config = ConfigDict(frozen=True)

    channel_id: str
    card_id: str | None = None
    created_by_instruction_id: str | None = None
