"""
Pydantic schemas for data validation and serialization.
Covers availability rules, computed slots, reservations and escalation read models.

Database rows store dates as ISO strings and wall-clock times as "HH:MM";
`from_row` / `to_row` convert between rows and schemas.
"""
from datetime import date, datetime, time
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import (
    ActorRole,
    DayOfWeek,
    DeadlineStatus,
    EntityType,
    ReservationStatus,
)


def format_hhmm(value: time) -> str:
    """Format a wall-clock time as zero-padded 24h HH:MM."""
    return f"{value.hour:02d}:{value.minute:02d}"


def parse_hhmm(value: Any, field: str = "time") -> time:
    """Parse a strict HH:MM (24h) string into a time."""
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    text = str(value).strip()
    parts = text.split(":")
    if len(parts) < 2 or len(parts[0]) != 2 or len(parts[1]) != 2:
        raise ValueError(f"Invalid {field} format: {value}. Use HH:MM (24hr)")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Invalid {field} format: {value}. Use HH:MM (24hr)")
    if not (0 <= hours <= 23 and 0 <= minutes <= 59):
        raise ValueError(f"Invalid {field} format: {value}. Use HH:MM (24hr)")
    return time(hours, minutes)


def minutes_of(value: time) -> int:
    """Minutes since midnight."""
    return value.hour * 60 + value.minute


# ==========================================
# AVAILABILITY SCHEMAS
# ==========================================

class AvailabilityRuleInput(BaseModel):
    """One recurring weekly window as submitted by a provider."""
    day_of_week: DayOfWeek
    start_time: time
    end_time: time
    slot_duration_minutes: int = Field(15, ge=5, le=240)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_wall_clock(cls, value: Any) -> time:
        return parse_hhmm(value)

    @model_validator(mode="after")
    def validate_window(self) -> "AvailabilityRuleInput":
        """Start must precede end and the window must hold at least one slot."""
        if self.start_time >= self.end_time:
            raise ValueError(
                f"Start time {format_hhmm(self.start_time)} must be before "
                f"end time {format_hhmm(self.end_time)}"
            )
        span = minutes_of(self.end_time) - minutes_of(self.start_time)
        if span < self.slot_duration_minutes:
            raise ValueError(
                f"Window must be at least {self.slot_duration_minutes} minutes"
            )
        return self


class AvailabilityRule(AvailabilityRuleInput):
    """Availability rule as stored in the database."""
    id: Optional[str] = None
    provider_id: str
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "AvailabilityRule":
        return cls.model_validate(row)

    def to_row(self) -> dict:
        row = {
            "provider_id": self.provider_id,
            "day_of_week": self.day_of_week.value,
            "start_time": format_hhmm(self.start_time),
            "end_time": format_hhmm(self.end_time),
            "slot_duration_minutes": self.slot_duration_minutes,
            "is_active": self.is_active,
        }
        if self.id:
            row["id"] = self.id
        return row


class Slot(BaseModel):
    """A computed, never persisted, bookable window."""
    provider_id: str
    slot_date: date
    start_time: time
    end_time: time

    @property
    def key(self) -> tuple:
        return (self.provider_id, self.slot_date, self.start_time)


# ==========================================
# RESERVATION SCHEMAS
# ==========================================

class Reservation(BaseModel):
    """A persisted reservation of a provider window."""
    id: str
    provider_id: str
    subject_id: str
    linked_entity_id: str
    entity_type: EntityType = EntityType.VIDEO_CONSULT
    slot_date: date
    start_time: time
    end_time: time
    status: ReservationStatus = ReservationStatus.BOOKED
    created_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    rescheduled_from_id: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def parse_wall_clock(cls, value: Any) -> time:
        return parse_hhmm(value)

    @classmethod
    def from_row(cls, row: dict) -> "Reservation":
        return cls.model_validate(row)

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "provider_id": self.provider_id,
            "subject_id": self.subject_id,
            "linked_entity_id": self.linked_entity_id,
            "entity_type": self.entity_type.value,
            "slot_date": self.slot_date.isoformat(),
            "start_time": format_hhmm(self.start_time),
            "end_time": format_hhmm(self.end_time),
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_transition_at": (
                self.last_transition_at.isoformat() if self.last_transition_at else None
            ),
            "cancellation_reason": self.cancellation_reason,
            "rescheduled_from_id": self.rescheduled_from_id,
        }

    def overlaps(self, slot_date: date, start_time: time, end_time: time) -> bool:
        """True when [start, end) on the same date intersects this reservation."""
        return (
            self.slot_date == slot_date
            and start_time < self.end_time
            and self.start_time < end_time
        )


class NoShowResult(BaseModel):
    """Outcome of marking a reservation as NO_SHOW."""
    reservation: Reservation
    no_show_count: int
    admin_alert: bool


# ==========================================
# DEADLINE / ESCALATION SCHEMAS
# ==========================================

class DeadlineClassification(BaseModel):
    """Computed urgency of a tracked entity. Never stored."""
    entity_id: Optional[str] = None
    entity_type: EntityType
    current_status: str
    status: DeadlineStatus
    hours_overdue: int = 0
    hours_remaining: Optional[float] = None
    deadline_at: Optional[datetime] = None
    computed_at: datetime


class PartyContact(BaseModel):
    """Denormalized identity used to act on an escalation without a follow-up query."""
    id: Optional[str] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class Escalation(BaseModel):
    """A human-actionable AT_RISK or BREACHED entity."""
    entity_id: str
    entity_type: EntityType
    current_status: str
    status_entered_at: datetime
    deadline_status: DeadlineStatus
    hours_overdue: int
    hours_remaining: Optional[float] = None
    deadline_at: Optional[datetime] = None
    expected_next_status: Optional[str] = None
    rule_description: Optional[str] = None
    is_critical: bool = False
    subject: PartyContact
    responsible_party: PartyContact
    already_flagged: bool = False


class EscalationReport(BaseModel):
    """
    Escalations plus what could not be read.

    `failed_entity_types` holds entity types whose source (or some of whose
    rows) could not be read; `failed_lookups` holds the contact and flag
    lookups that failed, in which case escalations carry id-only contacts
    or `already_flagged=False`.
    """
    escalations: list[Escalation] = Field(default_factory=list)
    failed_entity_types: dict[str, str] = Field(default_factory=dict)
    failed_lookups: dict[str, str] = Field(default_factory=dict)
    generated_at: datetime

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_entity_types or self.failed_lookups)


class BreachSummary(BaseModel):
    """Per-entity-type counts for dashboards."""
    at_risk_by_type: dict[str, int] = Field(default_factory=dict)
    breached_by_type: dict[str, int] = Field(default_factory=dict)
    total_at_risk: int = 0
    total_breached: int = 0
    critical_count: int = 0
    failed_entity_types: dict[str, str] = Field(default_factory=dict)
    generated_at: datetime


# ==========================================
# API REQUEST SCHEMAS
# ==========================================

class SetAvailabilityRequest(BaseModel):
    """Full replacement rule set for a provider."""
    rules: list[AvailabilityRuleInput]


class BookRequest(BaseModel):
    """Request body for booking a window."""
    provider_id: str = Field(..., min_length=1)
    subject_id: str = Field(..., min_length=1)
    linked_entity_id: str = Field(..., min_length=1)
    slot_date: date
    start_time: time
    entity_type: EntityType = EntityType.VIDEO_CONSULT

    @field_validator("start_time", mode="before")
    @classmethod
    def parse_wall_clock(cls, value: Any) -> time:
        return parse_hhmm(value, "start time")


class CancelRequest(BaseModel):
    """Request body for cancelling a reservation."""
    reason: str = Field(..., min_length=1, max_length=500)


class RescheduleRequest(BaseModel):
    """Request body for moving a reservation."""
    new_date: date
    new_start_time: time

    @field_validator("new_start_time", mode="before")
    @classmethod
    def parse_wall_clock(cls, value: Any) -> time:
        return parse_hhmm(value, "start time")


class EscalationFlagRequest(BaseModel):
    """Request body for recording that a human picked up an escalation."""
    reason: str = Field(..., min_length=1, max_length=500)
    actor_id: Optional[str] = None


class Actor(BaseModel):
    """Caller acting on a reservation."""
    id: str
    role: ActorRole
