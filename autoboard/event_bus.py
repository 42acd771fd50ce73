from __future__ import annotations

from typing import Callable, Generic, TypeVar

from loguru import logger

from autoboard.models import CardEvent, ThresholdCheck

M = TypeVar("M")

CardEventListener = Callable[[CardEvent], None]
ThresholdCheckListener = Callable[[ThresholdCheck], None]


class _Topic(Generic[M]):
    """Fire-and-forget fan-out for one message kind."""

    def __init__(self, name: str):
        self.name = name
        self._subscribers: list[Callable[[M], None]] = []

    def subscribe(self, callback: Callable[[M], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, message: M) -> None:
        # Snapshot: listeners added during delivery miss this message
        for subscriber in list(self._subscribers):
            try:
                subscriber(message)
            except Exception as e:
                logger.error(f"[BUS] Error in {self.name} listener: {e}")

    def __len__(self) -> int:
        return len(self._subscribers)


class AutomationEventBus:
    """
    A lightweight, synchronous pub/sub carrying card lifecycle events and
    threshold-check requests. Messages are not stored: a subscriber added
    after a publish never sees it.
    """

    def __init__(self):
        self.card_events: _Topic[CardEvent] = _Topic("card event")
        self.threshold_checks: _Topic[ThresholdCheck] = _Topic("threshold check")

    def on_card_event(self, listener: CardEventListener) -> Callable[[], None]:
        """Register a card event listener. Returns an unsubscribe callable."""
        return self.card_events.subscribe(listener)

    def on_threshold_check(self, listener: ThresholdCheckListener) -> Callable[[], None]:
        """Register a threshold check listener. Returns an unsubscribe callable."""
        return self.threshold_checks.subscribe(listener)

    def emit_card_event(self, event: CardEvent) -> None:
        self.card_events.publish(event)

    def emit_threshold_check(self, check: ThresholdCheck | str) -> None:
        if isinstance(check, str):
            check = ThresholdCheck(channel_id=check)
        self.threshold_checks.publish(check)

    # -- Convenience emitters used by the board-mutation layer --

    def emit_card_moved(
        self,
        card_id: str,
        channel_id: str,
        from_column_id: str,
        to_column_id: str,
        created_by_instruction_id: str | None = None,
    ) -> None:
        self.emit_card_event(CardEvent(
            type="moved",
            card_id=card_id,
            channel_id=channel_id,
            from_column_id=from_column_id,
            to_column_id=to_column_id,
            created_by_instruction_id=created_by_instruction_id,
        ))
        # Column counts changed on both sides
        self.emit_threshold_check(ThresholdCheck(
            channel_id=channel_id,
            card_id=card_id,
            created_by_instruction_id=created_by_instruction_id,
        ))

    def emit_card_created(
        self,
        card_id: str,
        channel_id: str,
        to_column_id: str,
        created_by_instruction_id: str | None = None,
    ) -> None:
        self.emit_card_event(CardEvent(
            type="created",
            card_id=card_id,
            channel_id=channel_id,
            to_column_id=to_column_id,
            created_by_instruction_id=created_by_instruction_id,
        ))
        self.emit_threshold_check(ThresholdCheck(
            channel_id=channel_id,
            card_id=card_id,
            created_by_instruction_id=created_by_instruction_id,
        ))

    def emit_card_modified(self, card_id: str, channel_id: str) -> None:
        self.emit_card_event(CardEvent(type="modified", card_id=card_id, channel_id=channel_id))

    def emit_card_deleted(self, channel_id: str) -> None:
        # The card is gone; only the counts matter
        self.emit_threshold_check(ThresholdCheck(channel_id=channel_id))
