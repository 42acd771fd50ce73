"""
Safeguard Gate

Decides whether a candidate instruction may execute right now.
Checks run in order and short-circuit: enabled, cooldown, daily cap,
loop prevention. Nothing is cached; every call reads the instruction
fields as they are.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Literal, Mapping

from loguru import logger

from autoboard.models import Card, CardEvent, InstructionCard, ThresholdCheck, TriggerType
from autoboard.schedule import localize, start_of_day

DenyReason = Literal["not_enabled", "cooldown", "daily_cap", "loop"]


@dataclass(frozen=True)
class SafeguardDecision:
    allowed: bool
    reason: DenyReason | None = None
    details: str = ""

    @classmethod
    def allow(cls) -> SafeguardDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, details: str) -> SafeguardDecision:
        return cls(allowed=False, reason=reason, details=details)


def current_daily_count(instruction: InstructionCard, now: datetime, tz: tzinfo) -> int:
    """Daily counter as seen from `now`: zero once the day boundary has passed."""
    reset_at = instruction.daily_count_reset_at
    if reset_at is None or localize(reset_at, tz) < start_of_day(now, tz):
        return 0
    return instruction.daily_execution_count


class SafeguardGate:
    """Cooldown, daily cap and loop prevention for automatic runs."""

    def __init__(self, tz: tzinfo):
        self.tz = tz

    def permits(
        self,
        instruction: InstructionCard,
        now: datetime,
        triggered_by: TriggerType,
        event: CardEvent | None = None,
        threshold_check: ThresholdCheck | None = None,
        cards: Mapping[str, Card] | None = None,
    ) -> SafeguardDecision:
        decision = self._evaluate(instruction, now, event, threshold_check, cards or {})
        if not decision.allowed:
            logger.info(
                f"[GATE] {instruction.title} ({triggered_by}) denied: "
                f"{decision.reason}: {decision.details}"
            )
        return decision

    def _evaluate(
        self,
        instruction: InstructionCard,
        now: datetime,
        event: CardEvent | None,
        threshold_check: ThresholdCheck | None,
        cards: Mapping[str, Card],
    ) -> SafeguardDecision:
        if instruction.run_mode != "automatic" or not instruction.is_enabled:
            return SafeguardDecision.deny("not_enabled", "Automatic execution is disabled")

        safeguards = instruction.safeguards
        now = localize(now, self.tz)

        # 1. Cooldown
        if instruction.last_executed_at is not None:
            elapsed = now - localize(instruction.last_executed_at, self.tz)
            cooldown = timedelta(minutes=safeguards.cooldown_minutes)
            if elapsed < cooldown:
                remaining = cooldown - elapsed
                remaining_minutes = -(-int(remaining.total_seconds()) // 60)
                return SafeguardDecision.deny(
                    "cooldown", f"Cooldown active. {remaining_minutes} minute(s) remaining."
                )

        # 2. Daily cap
        if current_daily_count(instruction, now, self.tz) >= safeguards.daily_cap:
            return SafeguardDecision.deny(
                "daily_cap", f"Daily cap of {safeguards.daily_cap} executions reached."
            )

        # 3. Loop prevention
        if safeguards.prevent_loops:
            reason = self._loop_reason(instruction, event, threshold_check, cards)
            if reason:
                return SafeguardDecision.deny("loop", reason)

        return SafeguardDecision.allow()

    @staticmethod
    def _loop_reason(
        instruction: InstructionCard,
        event: CardEvent | None,
        threshold_check: ThresholdCheck | None,
        cards: Mapping[str, Card],
    ) -> str | None:
        origin_ids: list[str | None] = []
        card_id: str | None = None
        if event is not None:
            origin_ids.append(event.created_by_instruction_id)
            card_id = event.card_id
        elif threshold_check is not None:
            origin_ids.append(threshold_check.created_by_instruction_id)
            card_id = threshold_check.card_id

        card = cards.get(card_id) if card_id else None
        if card is not None:
            origin_ids.append(card.created_by_instruction_id)

        if instruction.id in origin_ids:
            return "Card was created by this instruction. Loop prevention active."

        if instruction.action == "modify" and card is not None and card.processed_since_change(instruction.id):
            return "Card already processed by this instruction since its last change."

        return None
