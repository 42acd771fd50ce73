"""
Scheduled trigger arithmetic.

Next-due rule, all on wall-clock time in the configured timezone:

  hourly / every4hours  anchor + 1h / + 4h
  daily                 first specific_time strictly after the anchor,
                        else the anchor's time of day on the next day
  weekly                first (day_of_week, specific_time) strictly after the
                        anchor; each part defaults to the anchor's own value

The anchor is last_executed_at. An instruction that never ran is due at its
cached next_scheduled_run, which initial_run() computes from "now".
A due instant counts as reached only once the clock is strictly past it.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo

from autoboard.models import InstructionCard, ScheduledTrigger

_INTERVAL_STEPS = {
    "hourly": timedelta(hours=1),
    "every4hours": timedelta(hours=4),
}

_DEFAULT_TIME = (6, 0)
_DEFAULT_WEEKDAY = 1  # Monday


def localize(dt: datetime, tz: tzinfo) -> datetime:
    """Return dt in tz; naive values are taken to already be tz wall-clock."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=tz)
    return dt.astimezone(tz)


def start_of_day(dt: datetime, tz: tzinfo) -> datetime:
    local = localize(dt, tz)
    return datetime.combine(local.date(), time(0, 0), tzinfo=tz)


def parse_time(value: str | None) -> tuple[int, int] | None:
    """Parse "HH:mm". Malformed values yield None."""
    if not value:
        return None
    try:
        hours_str, minutes_str = value.strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours, minutes


def js_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def _at(day: date, hm: tuple[int, int], tz: tzinfo) -> datetime:
    return datetime.combine(day, time(hm[0], hm[1]), tzinfo=tz)


def _first_weekly_slot_after(
    local: datetime, weekday: int, hm: tuple[int, int], tz: tzinfo
) -> datetime | None:
    for offset in range(0, 8):
        day = local.date() + timedelta(days=offset)
        if js_weekday(day) != weekday:
            continue
        candidate = _at(day, hm, tz)
        if candidate > local:
            return candidate
    return None


def next_due(trigger: ScheduledTrigger, anchor: datetime, tz: tzinfo) -> datetime | None:
    """Next due instant after a run at `anchor`, or None for malformed triggers."""
    local = localize(anchor, tz)
    step = _INTERVAL_STEPS.get(trigger.interval)
    if step is not None:
        return local + step

    hm = parse_time(trigger.specific_time)
    if trigger.specific_time and hm is None:
        return None
    if hm is None:
        hm = (local.hour, local.minute)

    if trigger.interval == "daily":
        candidate = _at(local.date(), hm, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=1), hm, tz)
        return candidate

    if trigger.interval == "weekly":
        weekday = trigger.day_of_week if trigger.day_of_week is not None else js_weekday(local.date())
        return _first_weekly_slot_after(local, weekday, hm, tz)

    return None


def initial_run(trigger: ScheduledTrigger, now: datetime, tz: tzinfo) -> datetime | None:
    """First slot strictly after `now` for an instruction that never ran."""
    local = localize(now, tz)

    if trigger.interval == "hourly":
        return local.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    if trigger.interval == "every4hours":
        next_hour = ((local.hour // 4) + 1) * 4
        if next_hour >= 24:
            return _at(local.date() + timedelta(days=1), (0, 0), tz)
        return _at(local.date(), (next_hour, 0), tz)

    hm = parse_time(trigger.specific_time)
    if trigger.specific_time and hm is None:
        return None
    hm = hm or _DEFAULT_TIME

    if trigger.interval == "daily":
        candidate = _at(local.date(), hm, tz)
        if candidate <= local:
            candidate = _at(local.date() + timedelta(days=1), hm, tz)
        return candidate

    if trigger.interval == "weekly":
        weekday = trigger.day_of_week if trigger.day_of_week is not None else _DEFAULT_WEEKDAY
        return _first_weekly_slot_after(local, weekday, hm, tz)

    return None


def trigger_due_at(
    instruction: InstructionCard, trigger: ScheduledTrigger, tz: tzinfo
) -> datetime | None:
    if instruction.last_executed_at is not None:
        return next_due(trigger, instruction.last_executed_at, tz)
    if instruction.next_scheduled_run is not None:
        return localize(instruction.next_scheduled_run, tz)
    return None


def is_due(due_at: datetime | None, now: datetime, tz: tzinfo) -> bool:
    return due_at is not None and localize(now, tz) > due_at


def compute_next_scheduled_run(
    instruction: InstructionCard, now: datetime, tz: tzinfo
) -> datetime | None:
    """Earliest upcoming slot across all scheduled triggers of an instruction."""
    candidates: list[datetime] = []
    for trigger in instruction.scheduled_triggers():
        if instruction.last_executed_at is not None:
            due = next_due(trigger, instruction.last_executed_at, tz)
        else:
            due = initial_run(trigger, now, tz)
        if due is not None:
            candidates.append(due)
    return min(candidates) if candidates else None
