"""
Enum types that match the PostgreSQL ENUM types in Supabase.
These must stay in sync with migrations/001_scheduling.sql.
"""
from datetime import date
from enum import Enum


class DayOfWeek(str, Enum):
    """
    Day of week for recurring availability.
    Matches: create type day_of_week as enum ('MONDAY', ..., 'SUNDAY');
    """
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @classmethod
    def from_date(cls, value: date) -> "DayOfWeek":
        """Map a calendar date to its day of week (Monday=0)."""
        return _WEEKDAY_ORDER[value.weekday()]

    @property
    def weekday(self) -> int:
        return _WEEKDAY_ORDER.index(self)


_WEEKDAY_ORDER = list(DayOfWeek)


class ReservationStatus(str, Enum):
    """
    Reservation lifecycle. BOOKED is the only non-terminal state.
    Matches: create type reservation_status as enum ('BOOKED', 'CANCELLED', 'COMPLETED', 'NO_SHOW');
    """
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class EntityType(str, Enum):
    """Tracked entity types with service-level deadlines."""
    VIDEO_CONSULT = "VIDEO_CONSULT"
    SAMPLE_COLLECTION = "SAMPLE_COLLECTION"
    MEDICATION_DISPATCH = "MEDICATION_DISPATCH"


class DeadlineStatus(str, Enum):
    """Derived urgency tier of a tracked entity."""
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    BREACHED = "BREACHED"


class ActorRole(str, Enum):
    """Roles of callers acting on reservations."""
    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    COLLECTOR = "COLLECTOR"
    COORDINATOR = "COORDINATOR"
    ADMIN = "ADMIN"

    @property
    def can_override_cutoff(self) -> bool:
        """Administrative roles may change a reservation inside the cutoff."""
        return self in (ActorRole.ADMIN, ActorRole.COORDINATOR)


class BookingEventType(str, Enum):
    """Lifecycle events emitted to the notification collaborator."""
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    NO_SHOW_THRESHOLD_REACHED = "NO_SHOW_THRESHOLD_REACHED"
    LINKED_ENTITY_STATUS_CHANGED = "LINKED_ENTITY_STATUS_CHANGED"
    ESCALATED = "ESCALATED"
