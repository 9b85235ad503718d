# Services - Business Logic Layer
"""
Careslot Services Module.

This module provides the core business logic for:
- Slot expansion from recurring availability
- Atomic reservation commits and the reservation state machine
- Cutoff and deadline evaluation
- Escalation scans and notification dispatch
"""

from .availability import AvailabilityService
from .booking import BookingService
from .cutoff import hours_until, is_within_cutoff, min_notice_hours_for
from .deadlines import (
    DEFAULT_DEADLINE_RULES,
    TERMINAL_STATUSES,
    DeadlineRule,
    classify,
    is_critical,
)
from .escalation import ENTITY_SOURCES, EntitySource, EscalationService
from .ledger import ALLOWED_TRANSITIONS, ReservationLedger, can_transition
from .locks import KeyedLockRegistry, get_lock_registry
from .notifications import NotificationResult, NotificationService
from .slot_expander import expand

__all__ = [
    "AvailabilityService",
    "BookingService",
    "hours_until",
    "is_within_cutoff",
    "min_notice_hours_for",
    "DEFAULT_DEADLINE_RULES",
    "TERMINAL_STATUSES",
    "DeadlineRule",
    "classify",
    "is_critical",
    "ENTITY_SOURCES",
    "EntitySource",
    "EscalationService",
    "ALLOWED_TRANSITIONS",
    "ReservationLedger",
    "can_transition",
    "KeyedLockRegistry",
    "get_lock_registry",
    "NotificationResult",
    "NotificationService",
    "expand",
]
