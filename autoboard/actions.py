"""
Instruction action contract.

The engine delegates the actual generate / modify / move work to an
injected InstructionRunner. This module holds the request and result
shapes exchanged with it, plus target resolution shared by the runner
and the dispatcher.
"""

from __future__ import annotations

import asyncio
from typing import Protocol

from pydantic import BaseModel, Field

from autoboard.models import (
    BoardTarget,
    Card,
    Channel,
    ColumnsTarget,
    ColumnTarget,
    ContextColumnSelection,
    InstructionCard,
    InstructionTarget,
    Task,
)


class RunnerError(Exception):
    """The instruction runner failed or reported an error."""
    pass


class RunCancelled(RunnerError):
    pass


class GeneratedCard(BaseModel):
    title: str
    content: str | None = None


class ModifiedCardProperty(BaseModel):
    key: str
    value: str
    display_type: str = "field"
    color: str | None = None


class ModifiedCardTask(BaseModel):
    title: str
    description: str = ""


class ModifiedCard(BaseModel):
    id: str
    title: str
    content: str | None = None
    tags: list[str] = Field(default_factory=list)
    properties: list[ModifiedCardProperty] = Field(default_factory=list)
    tasks: list[ModifiedCardTask] = Field(default_factory=list)


class MovedCard(BaseModel):
    card_id: str
    destination_column_id: str
    reason: str | None = None


class RunRequest(BaseModel):
    """Everything the runner may read for one instruction run."""
    instruction: InstructionCard
    channel: Channel
    target_column_ids: list[str]
    context_column_ids: list[str]
    cards: list[Card] = Field(default_factory=list)  # cards to modify / move
    context_cards: list[Card] = Field(default_factory=list)  # cards the AI may read
    tasks: list[Task] = Field(default_factory=list)
    card_count: int = 5


class RunResult(BaseModel):
    generated_cards: list[GeneratedCard] = Field(default_factory=list)
    modified_cards: list[ModifiedCard] = Field(default_factory=list)
    moved_cards: list[MovedCard] = Field(default_factory=list)
    message: str | None = None
    error: str | None = None


class InstructionRunner(Protocol):
    async def run(self, request: RunRequest, abort: asyncio.Event | None = None) -> RunResult: ...


def resolve_target_column_ids(target: InstructionTarget, channel: Channel) -> list[str]:
    """Column ids the instruction writes to. Unknown columns are dropped."""
    known = [c.id for c in channel.columns]
    if isinstance(target, ColumnTarget):
        return [target.column_id] if target.column_id in known else []
    if isinstance(target, ColumnsTarget):
        return [cid for cid in target.column_ids if cid in known]
    if isinstance(target, BoardTarget):
        return known
    return []


def resolve_context_column_ids(selection: ContextColumnSelection | None, channel: Channel) -> list[str]:
    """Column ids the AI may read; None or "all" means the whole board."""
    known = [c.id for c in channel.columns]
    if isinstance(selection, ColumnsTarget):
        return [cid for cid in selection.column_ids if cid in known]
    return known
