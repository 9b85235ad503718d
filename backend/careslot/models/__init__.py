# Data models - Enums and Pydantic Schemas
from .enums import (
    DayOfWeek,
    ReservationStatus,
    EntityType,
    DeadlineStatus,
    ActorRole,
    BookingEventType,
)
from .schemas import (
    AvailabilityRuleInput,
    AvailabilityRule,
    Slot,
    Reservation,
    NoShowResult,
    DeadlineClassification,
    PartyContact,
    Escalation,
    EscalationReport,
    BreachSummary,
    Actor,
)

__all__ = [
    # Enums
    "DayOfWeek",
    "ReservationStatus",
    "EntityType",
    "DeadlineStatus",
    "ActorRole",
    "BookingEventType",
    # Availability Schemas
    "AvailabilityRuleInput",
    "AvailabilityRule",
    "Slot",
    # Reservation Schemas
    "Reservation",
    "NoShowResult",
    "Actor",
    # Deadline / Escalation Schemas
    "DeadlineClassification",
    "PartyContact",
    "Escalation",
    "EscalationReport",
    "BreachSummary",
]
