"""
Autoboard Engine, the composition root.

Two independent stimulus sources feed one pipeline:

  card events / threshold checks (Event Bus)  ─┐
                                               ├─> evaluate → claim → gate → dispatch
  scheduler poller ticks                       ─┘

The claim is a per-instruction check-and-set taken before the gate runs,
so two near-simultaneous matches for the same instruction never both
dispatch. Different instructions run concurrently.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Coroutine

from loguru import logger

from autoboard.actions import InstructionRunner
from autoboard.config_loader import AutoboardConfig
from autoboard.context import AutomationContext
from autoboard.dispatcher import ExecutionDispatcher, ExecutionResult
from autoboard.event_bus import AutomationEventBus
from autoboard.models import CardEvent, ThresholdCheck, utc_now
from autoboard.poller import SchedulerPoller
from autoboard.safeguards import SafeguardGate
from autoboard.schedule import compute_next_scheduled_run
from autoboard.triggers import (
    TriggerMatch,
    column_card_counts,
    evaluate_event,
    evaluate_scheduled,
    evaluate_threshold,
)


class AutomationEngine:

    def __init__(
        self,
        context: AutomationContext,
        runner: InstructionRunner,
        config: AutoboardConfig | None = None,
        bus: AutomationEventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.context = context
        self.config = config or AutoboardConfig()
        self.tz = self.config.tz
        self.clock = clock
        self.bus = bus or AutomationEventBus()

        self.gate = SafeguardGate(self.tz)
        self.dispatcher = ExecutionDispatcher(
            runner,
            self.tz,
            history_limit=self.config.engine.history_limit,
            default_card_count=self.config.generation.default_card_count,
            tag_colors=self.config.generation.tag_colors,
            clock=clock,
        )
        self.poller = SchedulerPoller(
            self.check_scheduled,
            interval_seconds=self.config.engine.poll_interval_seconds,
            startup_delay_seconds=self.config.engine.startup_delay_seconds,
            initialize=self.initialize,
        )

        self._claimed: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._unsubscribers: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the event bus. Idempotent."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self.bus.on_card_event(lambda event: self._spawn(self.handle_card_event(event))),
            self.bus.on_threshold_check(lambda check: self._spawn(self.handle_threshold_check(check))),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def start(self) -> None:
        self.attach()
        self.poller.start()
        logger.info("[ENGINE] Automation engine started")

    async def stop(self) -> None:
        await self.poller.stop()
        self.detach()
        await self.drain()
        logger.info("[ENGINE] Automation engine stopped")

    async def drain(self) -> None:
        """Wait for every in-flight event / threshold handler, including ones they spawn."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro: Coroutine) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            logger.warning("[ENGINE] No running event loop; automation stimulus dropped")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Event Bus API
    # ------------------------------------------------------------------

    def emit_card_event(self, event: CardEvent) -> None:
        self.bus.emit_card_event(event)

    def check_thresholds(self, check: ThresholdCheck | str) -> None:
        self.bus.emit_threshold_check(check)

    # ------------------------------------------------------------------
    # Stimulus handlers
    # ------------------------------------------------------------------

    async def handle_card_event(self, event: CardEvent) -> list[ExecutionResult]:
        ctx = self.context
        event = self._with_origin(event)
        channel = ctx.channels.get(event.channel_id)
        matches = evaluate_event(event, list(ctx.instruction_cards.values()), channel)
        if matches:
            logger.debug(f"[ENGINE] {event.type} event on {event.card_id}: {len(matches)} match(es)")
        return await self._run_matches(matches, event.channel_id)

    async def handle_threshold_check(self, check: ThresholdCheck) -> list[ExecutionResult]:
        ctx = self.context
        check = self._with_origin(check)
        channel = ctx.channels.get(check.channel_id)
        if channel is None:
            return []
        matches = evaluate_threshold(
            check, column_card_counts(channel), list(ctx.instruction_cards.values()), channel
        )
        if matches:
            logger.debug(f"[ENGINE] Threshold check on {check.channel_id}: {len(matches)} match(es)")
        return await self._run_matches(matches, check.channel_id)

    async def check_scheduled(self) -> list[ExecutionResult]:
        ctx = self.context
        # Instructions added or switched to automatic since the last tick
        self.initialize_scheduled_triggers()
        matches = []
        for match in evaluate_scheduled(self.clock(), list(ctx.instruction_cards.values()), self.tz):
            if match.instruction.channel_id not in ctx.channels:
                logger.debug(f"[ENGINE] Skipping {match.instruction.title}: no channel to act on")
                continue
            matches.append(match)
        logger.debug(f"[ENGINE] Scheduled check: {len(matches)} due")
        return await self._run_matches(matches, None)

    def initialize_scheduled_triggers(self) -> int:
        """Give never-scheduled automatic instructions their first due time."""
        ctx = self.context
        now = self.clock()
        scheduled = 0
        for instruction in list(ctx.instruction_cards.values()):
            if instruction.run_mode != "automatic" or not instruction.scheduled_triggers():
                continue
            if instruction.next_scheduled_run is not None:
                continue
            next_run = compute_next_scheduled_run(instruction, now, self.tz)
            if next_run is None:
                continue
            ctx.update_instruction_card(instruction.id, {"next_scheduled_run": next_run})
            logger.info(f"[ENGINE] Scheduled {instruction.title} for {next_run.isoformat()}")
            scheduled += 1
        return scheduled

    async def initialize(self) -> list[ExecutionResult]:
        """Startup pass: schedule missing runs, then catch up on anything already due."""
        scheduled = self.initialize_scheduled_triggers()
        logger.debug(f"[ENGINE] Initialized {scheduled} scheduled instruction(s)")
        return await self.check_scheduled()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def try_claim(self, instruction_id: str) -> bool:
        if instruction_id in self._claimed:
            return False
        self._claimed.add(instruction_id)
        return True

    def release(self, instruction_id: str) -> None:
        self._claimed.discard(instruction_id)

    def is_running(self, instruction_id: str) -> bool:
        return instruction_id in self._claimed

    async def _run_matches(self, matches: list[TriggerMatch], channel_id: str | None) -> list[ExecutionResult]:
        if not matches:
            return []
        return list(await asyncio.gather(*(self._run_candidate(m, channel_id) for m in matches)))

    async def _run_candidate(self, match: TriggerMatch, channel_id: str | None) -> ExecutionResult:
        instruction_id = match.instruction_id
        if not self.try_claim(instruction_id):
            logger.info(f"[ENGINE] Skipping {match.instruction.title} - already executing")
            return ExecutionResult(instruction_id, match.triggered_by, status="busy")

        try:
            ctx = self.context
            # Re-read: the evaluated copy may be stale by now
            instruction = ctx.instruction_cards.get(instruction_id)
            if instruction is None:
                return ExecutionResult(
                    instruction_id, match.triggered_by, status="failed", error="Instruction not found"
                )

            decision = self.gate.permits(
                instruction,
                self.clock(),
                match.triggered_by,
                event=match.event,
                threshold_check=match.threshold_check,
                cards=ctx.cards,
            )
            if not decision.allowed:
                return ExecutionResult(instruction_id, match.triggered_by, status="denied", decision=decision)

            return await self.dispatcher.execute(
                instruction, match.triggered_by, ctx, event=match.event, channel_id=channel_id
            )
        except Exception as e:
            logger.error(f"[ENGINE] Unexpected error running {match.instruction.title}: {e}")
            return ExecutionResult(instruction_id, match.triggered_by, status="failed", error=str(e))
        finally:
            self.release(instruction_id)

    def _with_origin(self, stimulus):
        """Fill in created_by_instruction_id from the board when the emitter left it out."""
        if stimulus.created_by_instruction_id or not stimulus.card_id:
            return stimulus
        card = self.context.cards.get(stimulus.card_id)
        if card is None or card.created_by_instruction_id is None:
            return stimulus
        return stimulus.model_copy(update={"created_by_instruction_id": card.created_by_instruction_id})
