"""
Minimum-notice cutoff policy for reschedule and cancel.
"""
from datetime import datetime
from typing import Optional

from ..core.config import settings
from ..models.enums import EntityType


def hours_until(reservation_start: datetime, now: datetime) -> float:
    """Signed hours from `now` until the reservation starts."""
    return (reservation_start - now).total_seconds() / 3600


def is_within_cutoff(
    reservation_start: datetime,
    now: datetime,
    min_notice_hours: float
) -> bool:
    """
    True when a change is no longer allowed without override.

    A reservation that has already started is always inside the cutoff;
    a missed slot becomes a NO_SHOW, never a reschedule.
    """
    if reservation_start <= now:
        return True
    return hours_until(reservation_start, now) < min_notice_hours


def min_notice_hours_for(entity_type: Optional[EntityType] = None) -> float:
    """Configured minimum notice for an entity type, falling back to the default."""
    overrides = {
        EntityType.VIDEO_CONSULT: settings.min_notice_hours_video_consult,
        EntityType.SAMPLE_COLLECTION: settings.min_notice_hours_sample_collection,
    }
    value = overrides.get(entity_type) if entity_type else None
    return settings.default_min_notice_hours if value is None else value
