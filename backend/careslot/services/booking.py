"""
Booking Service.

Orchestrates listing, booking, cancelling and rescheduling:
- Re-derives open slots at commit time instead of trusting the client
- Gates cancel/reschedule on the minimum-notice cutoff
- Emits lifecycle events for the notification collaborator
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from ..core.config import settings
from ..core.database import SupabaseClient, get_supabase_client
from ..core.exceptions import CutoffExceededError, InvalidTransitionError, ValidationError
from ..models.enums import ActorRole, BookingEventType, EntityType, ReservationStatus
from ..models.schemas import (
    Actor,
    NoShowResult,
    Reservation,
    Slot,
    format_hhmm,
    minutes_of,
)
from .availability import AvailabilityService
from .cutoff import hours_until, is_within_cutoff, min_notice_hours_for
from .ledger import ReservationLedger
from .notifications import NotificationService, reservation_payload
from .slot_expander import clinic_zone, expand, is_on_grid, local_start


logger = logging.getLogger(__name__)


PROVIDER_ROLES = (ActorRole.DOCTOR, ActorRole.COLLECTOR)


def _end_time(start_time: time, duration_minutes: int) -> time:
    end = minutes_of(start_time) + duration_minutes
    if end > 24 * 60 - 1:
        raise ValidationError(
            f"A {duration_minutes}-minute slot cannot start at {format_hhmm(start_time)}",
            field="start_time",
            value=format_hhmm(start_time)
        )
    return time(end // 60, end % 60)


class BookingService:
    """Entry point for every reservation operation."""

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        ledger: Optional[ReservationLedger] = None,
        availability: Optional[AvailabilityService] = None,
        notifications: Optional[NotificationService] = None
    ):
        self.db = db or get_supabase_client()
        self.ledger = ledger or ReservationLedger(self.db)
        self.availability = availability or AvailabilityService(self.db)
        self.notifications = notifications or NotificationService(self.db)

    @staticmethod
    def _now(now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(timezone.utc)
        return now if now.tzinfo else now.replace(tzinfo=clinic_zone())

    # ==========================================
    # LISTING
    # ==========================================

    def list_available(
        self,
        provider_id: str,
        date_from: date,
        date_to: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> list[Slot]:
        """Open slots of a provider; read-only."""
        if date_to is None:
            date_to = date_from + timedelta(days=settings.booking_horizon_days - 1)
        if date_to < date_from:
            raise ValidationError(
                "date_to must not be before date_from",
                field="date_to",
                value=date_to.isoformat()
            )

        rules = self.availability.get_availability(provider_id)
        reservations = self.ledger.list_active(provider_id, date_from, date_to)
        return expand(rules, date_from, date_to, reservations, now=self._now(now))

    def list_upcoming(self, user_id: str, role: ActorRole, now: Optional[datetime] = None) -> list[Reservation]:
        """BOOKED reservations that have not started, for a subject or a provider."""
        now = self._now(now)
        party_field = "provider_id" if role in PROVIDER_ROLES else "subject_id"
        today = now.astimezone(clinic_zone()).date()

        reservations = self.ledger.list_for_party(party_field, user_id, today)
        return [
            r for r in reservations
            if local_start(r.slot_date, r.start_time) > now
        ]

    def get_reservation(self, reservation_id: str) -> Reservation:
        return self.ledger.get(reservation_id)

    # ==========================================
    # BOOK
    # ==========================================

    def _validate_window(
        self,
        provider_id: str,
        slot_date: date,
        start_time: time,
        now: datetime
    ) -> time:
        """Check a requested start against the provider's rules; return its end."""
        rules = self.availability.get_availability(provider_id)
        duration = self.availability.get_slot_duration(provider_id, rules)
        end_time = _end_time(start_time, duration)

        if local_start(slot_date, start_time) <= now:
            raise ValidationError(
                "This time has already passed. Please choose a future slot.",
                field="start_time",
                value=f"{slot_date.isoformat()} {format_hhmm(start_time)}"
            )

        day_rules = [r for r in rules if r.day_of_week.weekday == slot_date.weekday()]
        if not any(is_on_grid(rule, start_time) for rule in day_rules):
            raise ValidationError(
                "The provider is not available at this time. Please choose a listed slot.",
                field="start_time",
                value=f"{slot_date.isoformat()} {format_hhmm(start_time)}"
            )
        return end_time

    def book(
        self,
        provider_id: str,
        subject_id: str,
        linked_entity_id: str,
        slot_date: date,
        start_time: time,
        entity_type: EntityType = EntityType.VIDEO_CONSULT,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Book one slot.

        Raises:
            ValidationError: the window is in the past or off the provider's grid
            ConflictError: the window was taken; re-list and pick again
        """
        now = self._now(now)
        end_time = self._validate_window(provider_id, slot_date, start_time, now)

        reservation = self.ledger.commit(
            provider_id=provider_id,
            subject_id=subject_id,
            linked_entity_id=linked_entity_id,
            slot_date=slot_date,
            start_time=start_time,
            end_time=end_time,
            entity_type=entity_type
        )

        self.notifications.emit(
            BookingEventType.BOOKED,
            reservation_payload(reservation),
            recipient_id=subject_id
        )
        self._emit_linked_status(reservation, "SLOT_BOOKED")
        return reservation

    # ==========================================
    # CANCEL / RESCHEDULE
    # ==========================================

    def _check_cutoff(
        self,
        reservation: Reservation,
        now: datetime,
        actor: Optional[Actor]
    ) -> bool:
        """
        Enforce minimum notice. Returns True when an override was used.
        """
        start = local_start(reservation.slot_date, reservation.start_time)
        min_notice = min_notice_hours_for(reservation.entity_type)
        if not is_within_cutoff(start, now, min_notice):
            return False

        if actor is not None and actor.role.can_override_cutoff:
            return True

        logger.info(
            f"Cutoff blocked change to reservation {reservation.id}: "
            f"{hours_until(start, now):.2f}h before start, {min_notice}h required"
        )
        raise CutoffExceededError(
            reservation_id=reservation.id,
            min_notice_hours=min_notice,
            hours_until_start=hours_until(start, now)
        )

    def _require_booked(self, reservation: Reservation, attempted: ReservationStatus) -> None:
        if reservation.status == ReservationStatus.BOOKED:
            return
        logger.warning(
            f"Invalid transition for reservation {reservation.id}: "
            f"{reservation.status.value} -> {attempted.value}"
        )
        raise InvalidTransitionError(
            f"Cannot change a {reservation.status.value} reservation",
            reservation_id=reservation.id,
            current_status=reservation.status.value,
            attempted_status=attempted.value
        )

    def cancel(
        self,
        reservation_id: str,
        actor: Actor,
        reason: str,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Cancel a reservation.

        Inside the cutoff only an override role may cancel; such a late
        cancellation is written to the audit log.
        """
        now = self._now(now)
        reservation = self.ledger.get(reservation_id)
        self._require_booked(reservation, ReservationStatus.CANCELLED)
        overridden = self._check_cutoff(reservation, now, actor)

        cancelled = self.ledger.cancel(reservation_id, reason)

        if overridden:
            self._audit_late_change(cancelled, actor, "late_cancellation", reason, now)

        self.notifications.emit(
            BookingEventType.CANCELLED,
            reservation_payload(cancelled, reason=reason, cancelled_by=actor.id),
            recipient_id=cancelled.subject_id
        )
        self._emit_linked_status(cancelled, "SLOT_CANCELLED")
        return cancelled

    def reschedule(
        self,
        reservation_id: str,
        new_date: date,
        new_start_time: time,
        actor: Optional[Actor] = None,
        now: Optional[datetime] = None
    ) -> Reservation:
        """
        Move a reservation to another slot of the same provider.

        The cutoff is measured against the original start time.
        """
        now = self._now(now)
        reservation = self.ledger.get(reservation_id)
        self._require_booked(reservation, ReservationStatus.CANCELLED)
        overridden = self._check_cutoff(reservation, now, actor)

        new_end_time = self._validate_window(
            reservation.provider_id, new_date, new_start_time, now
        )
        replacement = self.ledger.reschedule(
            reservation_id, new_date, new_start_time, new_end_time
        )

        if overridden:
            self._audit_late_change(replacement, actor, "late_reschedule", None, now)

        self.notifications.emit(
            BookingEventType.RESCHEDULED,
            reservation_payload(
                replacement,
                previous_reservation_id=reservation.id,
                previous_slot_date=reservation.slot_date.isoformat(),
                previous_start_time=format_hhmm(reservation.start_time)
            ),
            recipient_id=replacement.subject_id
        )
        self._emit_linked_status(replacement, "SLOT_RESCHEDULED")
        return replacement

    # ==========================================
    # COMPLETION / NO-SHOW
    # ==========================================

    def mark_completed(self, reservation_id: str) -> Reservation:
        reservation = self.ledger.mark_completed(reservation_id)
        self.notifications.emit(
            BookingEventType.COMPLETED,
            reservation_payload(reservation),
            recipient_id=reservation.subject_id
        )
        return reservation

    def mark_no_show(self, reservation_id: str) -> NoShowResult:
        """Mark NO_SHOW and alert admins when the subject reaches the threshold."""
        reservation = self.ledger.mark_no_show(reservation_id)
        count = self.ledger.count_for_subject(reservation.subject_id, ReservationStatus.NO_SHOW)
        admin_alert = count >= settings.no_show_alert_threshold

        self.notifications.emit(
            BookingEventType.NO_SHOW,
            reservation_payload(reservation, no_show_count=count),
            recipient_id=reservation.subject_id
        )
        if admin_alert:
            logger.warning(
                f"Subject {reservation.subject_id} reached {count} no-shows "
                f"(threshold {settings.no_show_alert_threshold})"
            )
            self.notifications.emit(
                BookingEventType.NO_SHOW_THRESHOLD_REACHED,
                reservation_payload(reservation, no_show_count=count)
            )

        return NoShowResult(reservation=reservation, no_show_count=count, admin_alert=admin_alert)

    # ==========================================
    # HELPERS
    # ==========================================

    def _audit_late_change(
        self,
        reservation: Reservation,
        actor: Actor,
        action: str,
        reason: Optional[str],
        now: datetime
    ) -> None:
        start = local_start(reservation.slot_date, reservation.start_time)
        logger.warning(
            f"{action} of reservation {reservation.id} by {actor.role.value} {actor.id} "
            f"({hours_until(start, now):.2f}h before start)"
        )
        self.db.log_audit(
            entity_type="reservation",
            entity_id=reservation.id,
            action=action,
            field_changed="status",
            new_value=reservation.status.value,
            changed_by=actor.id,
            reason=reason,
            metadata={"actor_role": actor.role.value}
        )

    def _emit_linked_status(self, reservation: Reservation, status: str) -> None:
        self.notifications.emit(
            BookingEventType.LINKED_ENTITY_STATUS_CHANGED,
            {
                "linked_entity_id": reservation.linked_entity_id,
                "entity_type": reservation.entity_type.value,
                "reservation_id": reservation.id,
                "status": status,
            }
        )
