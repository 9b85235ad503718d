"""
Slot expansion.

Turns recurring weekly availability rules into concrete bookable windows for
a date range, minus anything already reserved and anything already started.
Pure: identical inputs always give identical output, so the booking path can
re-derive the truth at commit time instead of trusting a client's list.
"""
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from ..core.config import settings
from ..models.enums import DayOfWeek, ReservationStatus
from ..models.schemas import AvailabilityRule, Reservation, Slot, minutes_of


BLOCKING_STATUSES = (ReservationStatus.BOOKED, ReservationStatus.COMPLETED)


def clinic_zone(tz: Optional[str] = None) -> ZoneInfo:
    return ZoneInfo(tz or settings.clinic_timezone)


def local_start(slot_date: date, start_time: time, tz: Optional[str] = None) -> datetime:
    """Aware datetime of a wall-clock start in the clinic zone."""
    return datetime.combine(slot_date, start_time, tzinfo=clinic_zone(tz))


def _time_from_minutes(total: int) -> time:
    return time(total // 60, total % 60)


def windows_for_rule(rule: AvailabilityRule) -> list[tuple[time, time]]:
    """
    Consecutive fixed-duration windows of one rule.
    A trailing remainder shorter than the duration is never offered.
    """
    start = minutes_of(rule.start_time)
    end = minutes_of(rule.end_time)
    step = rule.slot_duration_minutes
    windows = []
    while start + step <= end:
        windows.append((_time_from_minutes(start), _time_from_minutes(start + step)))
        start += step
    return windows


def is_on_grid(rule: AvailabilityRule, start_time: time) -> bool:
    """True when `start_time` begins one of the rule's windows."""
    return any(window[0] == start_time for window in windows_for_rule(rule))


def expand(
    rules: Iterable[AvailabilityRule],
    date_from: date,
    date_to: date,
    existing_reservations: Iterable[Reservation],
    now: Optional[datetime] = None,
    tz: Optional[str] = None
) -> list[Slot]:
    """
    Expand availability rules into open slots.

    Args:
        rules: Availability rules; inactive ones are skipped
        date_from: First date (inclusive)
        date_to: Last date (inclusive)
        existing_reservations: Reservations to subtract; only BOOKED and
            COMPLETED block a window, and any overlap removes the whole window
        now: Windows starting at or before this instant are dropped;
            defaults to the current time. Naive values are read as clinic
            wall-clock time.
        tz: Clinic time zone override

    Returns:
        Slots ordered by date, then start time
    """
    if date_to < date_from:
        return []

    zone = clinic_zone(tz)
    if now is None:
        now = datetime.now(zone)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=zone)

    rules_by_day: dict[DayOfWeek, list[AvailabilityRule]] = {}
    for rule in rules:
        if rule.is_active:
            rules_by_day.setdefault(rule.day_of_week, []).append(rule)

    blocking: dict[tuple[str, date], list[Reservation]] = {}
    for reservation in existing_reservations:
        if reservation.status in BLOCKING_STATUSES:
            blocking.setdefault(
                (reservation.provider_id, reservation.slot_date), []
            ).append(reservation)

    slots: list[Slot] = []
    current = date_from
    while current <= date_to:
        for rule in rules_by_day.get(DayOfWeek.from_date(current), []):
            taken = blocking.get((rule.provider_id, current), [])
            for start, end in windows_for_rule(rule):
                if any(r.overlaps(current, start, end) for r in taken):
                    continue
                if datetime.combine(current, start, tzinfo=zone) <= now:
                    continue
                slots.append(Slot(
                    provider_id=rule.provider_id,
                    slot_date=current,
                    start_time=start,
                    end_time=end
                ))
        current += timedelta(days=1)

    slots.sort(key=lambda s: (s.slot_date, s.start_time, s.provider_id))
    return slots
