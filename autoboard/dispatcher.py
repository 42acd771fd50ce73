"""
Execution Dispatcher

Runs one permitted instruction through the injected InstructionRunner and
writes the outcome back through the Automation Context:

  - running / processing flags set before the run, cleared in `finally`
  - generate / modify / move results applied via context mutators
  - one ExecutionRecord per run, daily counter, last_executed_at (success
    only) and next_scheduled_run updated together

Failures are logged and returned as results. Nothing raised by the runner
escapes execute().
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Callable, Literal

from loguru import logger

from autoboard.actions import (
    InstructionRunner,
    RunCancelled,
    RunnerError,
    RunRequest,
    RunResult,
    resolve_context_column_ids,
    resolve_target_column_ids,
)
from autoboard.context import AutomationContext
from autoboard.models import (
    Card,
    CardEvent,
    Channel,
    ExecutionRecord,
    InstructionCard,
    TriggerType,
    utc_now,
)
from autoboard.safeguards import SafeguardDecision, current_daily_count
from autoboard.schedule import compute_next_scheduled_run, start_of_day

ExecutionStatus = Literal["completed", "failed", "denied", "busy"]

DEFAULT_TAG_COLORS = ["blue", "green", "purple", "orange", "pink", "cyan"]


class DispatchError(Exception):
    """Raised when an instruction cannot be dispatched against the board."""
    pass


@dataclass
class ExecutionResult:
    instruction_id: str
    triggered_by: TriggerType
    status: ExecutionStatus
    cards_affected: int = 0
    cards_skipped: int = 0
    error: str | None = None
    decision: SafeguardDecision | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed"


class ExecutionDispatcher:
    """Invokes instruction actions and keeps their bookkeeping current."""

    def __init__(
        self,
        runner: InstructionRunner,
        tz: tzinfo,
        history_limit: int = 10,
        default_card_count: int = 5,
        tag_colors: list[str] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.runner = runner
        self.tz = tz
        self.history_limit = history_limit
        self.default_card_count = default_card_count
        self.tag_colors = tag_colors or DEFAULT_TAG_COLORS
        self.clock = clock

    async def execute(
        self,
        instruction: InstructionCard,
        triggered_by: TriggerType,
        ctx: AutomationContext,
        event: CardEvent | None = None,
        channel_id: str | None = None,
    ) -> ExecutionResult:
        triggering_card_id = event.card_id if event else None
        cards_affected = 0
        cards_skipped = 0
        error: str | None = None

        ctx.set_instruction_running(instruction.id, True)
        try:
            if triggering_card_id:
                ctx.set_card_processing(triggering_card_id, True, f"Running: {instruction.title}")

            logger.info(f"[DISPATCH] Executing {instruction.title} (triggered by: {triggered_by})")

            ctx.start_ai_operation(
                f"Auto: {instruction.title}",
                {"action": instruction.action, "instruction_title": instruction.title},
            )
            try:
                channel = ctx.channels.get(channel_id or instruction.channel_id)
                if channel is None:
                    raise DispatchError(f"Channel not found for instruction {instruction.id}")
                cards_affected, cards_skipped = await self._perform(
                    instruction, channel, ctx, triggering_card_id
                )
            except RunCancelled:
                error = "cancelled"
                logger.warning(f"[DISPATCH] {instruction.title} cancelled")
            except Exception as e:
                error = str(e) or e.__class__.__name__
                logger.error(f"[DISPATCH] Error executing {instruction.title}: {error}")

            success = error is None
            self._record(instruction, triggered_by, ctx, success, cards_affected if success else 0)
        finally:
            ctx.set_instruction_running(instruction.id, False)
            ctx.complete_ai_operation()
            if triggering_card_id:
                ctx.set_card_processing(triggering_card_id, False)

        if error is not None:
            return ExecutionResult(
                instruction_id=instruction.id,
                triggered_by=triggered_by,
                status="failed",
                cards_skipped=cards_skipped,
                error=error,
            )

        logger.info(f"[DISPATCH] Completed {instruction.title}: {cards_affected} cards affected")
        return ExecutionResult(
            instruction_id=instruction.id,
            triggered_by=triggered_by,
            status="completed",
            cards_affected=cards_affected,
            cards_skipped=cards_skipped,
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _perform(
        self,
        instruction: InstructionCard,
        channel: Channel,
        ctx: AutomationContext,
        triggering_card_id: str | None,
    ) -> tuple[int, int]:
        target_ids = resolve_target_column_ids(instruction.target, channel)
        context_ids = resolve_context_column_ids(instruction.context_columns, channel)

        work_cards: list[Card] = []
        skipped: list[Card] = []
        if instruction.action in ("modify", "move"):
            work_cards, skipped = self._select_cards(instruction, channel, ctx, target_ids, triggering_card_id)
            if skipped:
                ctx.on_cards_skipped(len(skipped), instruction.title)
            if not work_cards:
                logger.info(
                    f"[DISPATCH] {instruction.title}: nothing to do "
                    f"({len(skipped)} card(s) already processed)"
                )
                return 0, len(skipped)

        request = RunRequest(
            instruction=instruction,
            channel=channel,
            target_column_ids=target_ids,
            context_column_ids=context_ids,
            cards=work_cards,
            context_cards=[
                ctx.cards[card_id]
                for column in channel.columns if column.id in context_ids
                for card_id in column.card_ids if card_id in ctx.cards
            ],
            tasks=[t for t in ctx.tasks.values() if t.channel_id == channel.id],
            card_count=instruction.card_count or self.default_card_count,
        )

        result = await self._invoke(request, ctx.get_ai_abort_signal())
        if result.error:
            raise RunnerError(result.error)

        if instruction.action == "generate":
            affected = self._apply_generate(instruction, channel, ctx, result, target_ids, request.card_count)
        elif instruction.action == "modify":
            affected = self._apply_modify(instruction, channel, ctx, result, work_cards)
        else:
            affected = self._apply_move(instruction, channel, ctx, result, work_cards)
        return affected, len(skipped)

    @staticmethod
    def _select_cards(
        instruction: InstructionCard,
        channel: Channel,
        ctx: AutomationContext,
        target_ids: list[str],
        triggering_card_id: str | None,
    ) -> tuple[list[Card], list[Card]]:
        """Split candidate cards into (to process, already processed)."""
        if triggering_card_id and triggering_card_id in ctx.cards:
            candidates = [ctx.cards[triggering_card_id]]
        else:
            candidates = [
                ctx.cards[card_id]
                for column in channel.columns if column.id in target_ids
                for card_id in column.card_ids if card_id in ctx.cards
            ]

        work: list[Card] = []
        skipped: list[Card] = []
        for card in candidates:
            if card.processed_since_change(instruction.id):
                skipped.append(card)
            else:
                work.append(card)
        return work, skipped

    async def _invoke(self, request: RunRequest, abort: asyncio.Event | None) -> RunResult:
        """Await the runner, giving up as soon as the abort signal fires."""
        if abort is None:
            return await self.runner.run(request, None)
        if abort.is_set():
            raise RunCancelled("Abort signal already set")

        run_task = asyncio.ensure_future(self.runner.run(request, abort))
        abort_task = asyncio.ensure_future(abort.wait())
        try:
            done, _ = await asyncio.wait({run_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_task.cancel()
            if not run_task.done() and abort.is_set():
                run_task.cancel()

        if run_task in done:
            return run_task.result()

        run_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await run_task
        raise RunCancelled("Aborted while running")

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply_generate(
        self,
        instruction: InstructionCard,
        channel: Channel,
        ctx: AutomationContext,
        result: RunResult,
        target_ids: list[str],
        card_count: int,
    ) -> int:
        column_id = target_ids[0] if target_ids else (channel.columns[0].id if channel.columns else None)
        if column_id is None:
            raise DispatchError(f"Channel {channel.id} has no column to generate into")

        affected = 0
        for generated in result.generated_cards[:card_count]:
            ctx.create_card(
                channel.id,
                column_id,
                generated.title,
                initial_message=generated.content,
                source="ai",
                created_by_instruction_id=instruction.id,
            )
            affected += 1
        return affected

    def _apply_modify(
        self,
        instruction: InstructionCard,
        channel: Channel,
        ctx: AutomationContext,
        result: RunResult,
        work_cards: list[Card],
    ) -> int:
        allowed = {card.id for card in work_cards}
        affected = 0
        for modified in result.modified_cards:
            if modified.id not in allowed:
                logger.warning(f"[DISPATCH] Ignoring modification of unselected card {modified.id}")
                continue

            ctx.update_card(modified.id, {"title": modified.title})
            for tag_name in modified.tags:
                self._apply_tag(channel.id, modified.id, tag_name, ctx)
            for prop in modified.properties:
                ctx.set_card_property(modified.id, prop.key, prop.value, prop.display_type, prop.color)
            for task in modified.tasks:
                ctx.create_task(channel.id, modified.id, task.title, task.description)
            if modified.content:
                ctx.add_message(modified.id, "ai_response", modified.content)

            ctx.record_instruction_run(modified.id, instruction.id)
            affected += 1
        return affected

    def _apply_tag(self, channel_id: str, card_id: str, tag_name: str, ctx: AutomationContext) -> None:
        channel = ctx.channels.get(channel_id)
        definitions = channel.tag_definitions if channel else []
        existing = next((t for t in definitions if t.name.lower() == tag_name.lower()), None)
        if existing is not None:
            final_name = existing.name
        else:
            color = self.tag_colors[len(definitions) % len(self.tag_colors)]
            final_name = ctx.add_tag_definition(channel_id, tag_name, color).name

        card = ctx.cards.get(card_id)
        if card is not None and final_name not in card.tags:
            ctx.add_tag_to_card(card_id, final_name)

    @staticmethod
    def _apply_move(
        instruction: InstructionCard,
        channel: Channel,
        ctx: AutomationContext,
        result: RunResult,
        work_cards: list[Card],
    ) -> int:
        allowed = {card.id for card in work_cards}
        column_ids = {column.id for column in channel.columns}
        affected = 0
        for move in result.moved_cards:
            if move.card_id not in allowed:
                logger.warning(f"[DISPATCH] Ignoring move of unselected card {move.card_id}")
                continue
            if move.destination_column_id not in column_ids:
                logger.warning(
                    f"[DISPATCH] Ignoring move of {move.card_id} to unknown column "
                    f"{move.destination_column_id}"
                )
                continue
            ctx.move_card(move.card_id, move.destination_column_id, 0)
            ctx.record_instruction_run(move.card_id, instruction.id)
            affected += 1
        return affected

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        instruction: InstructionCard,
        triggered_by: TriggerType,
        ctx: AutomationContext,
        success: bool,
        cards_affected: int,
    ) -> None:
        now = self.clock()
        current = ctx.instruction_cards.get(instruction.id, instruction)

        record = ExecutionRecord(
            timestamp=now,
            triggered_by=triggered_by,
            success=success,
            cards_affected=cards_affected,
        )
        updates: dict[str, Any] = {
            "execution_history": [record, *current.execution_history][: self.history_limit],
            "daily_execution_count": current_daily_count(current, now, self.tz) + 1,
            "daily_count_reset_at": start_of_day(now, self.tz),
        }
        if success:
            updates["last_executed_at"] = now

        if current.scheduled_triggers():
            projected = current.model_copy(update=updates)
            updates["next_scheduled_run"] = compute_next_scheduled_run(projected, now, self.tz)

        ctx.update_instruction_card(instruction.id, updates)
