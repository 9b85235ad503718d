"""
Reservation Ledger.

The durable record of booked windows and the owner of the reservation state
machine:

    BOOKED -> CANCELLED | COMPLETED | NO_SHOW   (all three terminal)

It upholds one invariant: for a provider, BOOKED and COMPLETED reservations
never overlap. Every write that could break it runs the overlap check and
the write under the (provider_id, slot_date) lock; the partial unique index
in the database backs it up across processes.
"""
import logging
from datetime import date, datetime, time, timezone
from typing import Iterable, Optional

from ..core.database import (
    SupabaseClient,
    get_supabase_client,
    is_window_violation,
    new_id,
)
from ..core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..models.enums import EntityType, ReservationStatus
from ..models.schemas import Reservation, format_hhmm
from .locks import KeyedLockRegistry, get_lock_registry, slot_key


logger = logging.getLogger(__name__)


ACTIVE_STATUSES = (ReservationStatus.BOOKED, ReservationStatus.COMPLETED)

ALLOWED_TRANSITIONS: dict[ReservationStatus, set[ReservationStatus]] = {
    ReservationStatus.BOOKED: {
        ReservationStatus.CANCELLED,
        ReservationStatus.COMPLETED,
        ReservationStatus.NO_SHOW,
    },
}

RESCHEDULE_REASON = "Rescheduled"


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class ReservationLedger:
    """Durable reservation store with serialized, overlap-free writes."""

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        locks: Optional[KeyedLockRegistry] = None
    ):
        self.db = db or get_supabase_client()
        self.locks = locks or get_lock_registry()

    # ==========================================
    # READS
    # ==========================================

    def get(self, reservation_id: str) -> Reservation:
        row = self.db.get_reservation(reservation_id)
        if not row:
            raise NotFoundError(
                f"Reservation {reservation_id} not found",
                resource_type="reservation",
                resource_id=reservation_id
            )
        return Reservation.from_row(row)

    def list_active(
        self,
        provider_id: str,
        date_from: date,
        date_to: Optional[date] = None
    ) -> list[Reservation]:
        """BOOKED and COMPLETED reservations of a provider in a date range."""
        rows = self.db.list_reservations(
            provider_id,
            date_from,
            date_to,
            statuses=[s.value for s in ACTIVE_STATUSES]
        )
        return [Reservation.from_row(row) for row in rows]

    def list_for_party(
        self,
        party_field: str,
        party_id: str,
        from_date: date,
        statuses: Iterable[ReservationStatus] = (ReservationStatus.BOOKED,)
    ) -> list[Reservation]:
        rows = self.db.list_reservations_for_party(
            party_field, party_id, [s.value for s in statuses], from_date
        )
        return [Reservation.from_row(row) for row in rows]

    def count_for_subject(self, subject_id: str, status: ReservationStatus) -> int:
        return self.db.count_reservations(subject_id, status.value)

    # ==========================================
    # COMMIT
    # ==========================================

    def commit(
        self,
        provider_id: str,
        subject_id: str,
        linked_entity_id: str,
        slot_date: date,
        start_time: time,
        end_time: time,
        entity_type: EntityType = EntityType.VIDEO_CONSULT
    ) -> Reservation:
        """
        Atomically reserve a window.

        Raises:
            ValidationError: start is not before end
            ConflictError: an active reservation overlaps the window
            LockTimeoutError: the provider's day is busy
        """
        _validate_window(start_time, end_time)

        with self.locks.hold([slot_key(provider_id, slot_date)]):
            self._ensure_free(provider_id, slot_date, start_time, end_time)
            reservation = self._insert(
                provider_id=provider_id,
                subject_id=subject_id,
                linked_entity_id=linked_entity_id,
                entity_type=entity_type,
                slot_date=slot_date,
                start_time=start_time,
                end_time=end_time,
            )

        logger.info(
            f"Reservation {reservation.id} BOOKED: provider {provider_id} "
            f"{slot_date} {format_hhmm(start_time)}-{format_hhmm(end_time)}"
        )
        return reservation

    # ==========================================
    # TRANSITIONS
    # ==========================================

    def cancel(self, reservation_id: str, reason: str) -> Reservation:
        return self._transition(
            reservation_id,
            ReservationStatus.CANCELLED,
            {"cancellation_reason": reason}
        )

    def mark_completed(self, reservation_id: str) -> Reservation:
        return self._transition(reservation_id, ReservationStatus.COMPLETED)

    def mark_no_show(self, reservation_id: str) -> Reservation:
        return self._transition(reservation_id, ReservationStatus.NO_SHOW)

    def reschedule(
        self,
        reservation_id: str,
        new_date: date,
        new_start_time: time,
        new_end_time: time
    ) -> Reservation:
        """
        Move a BOOKED reservation to a new window as one unit.

        The new reservation is inserted before the old one is cancelled, and
        both writes share a transaction: if either fails, the new row is
        removed and the old reservation is left BOOKED with its original
        window. The old reservation still counts as occupied when checking
        the target window.

        Returns:
            The new BOOKED reservation (its `rescheduled_from_id` is the old id)
        """
        _validate_window(new_start_time, new_end_time)

        current = self.get(reservation_id)
        keys = [
            slot_key(current.provider_id, current.slot_date),
            slot_key(current.provider_id, new_date),
        ]

        with self.locks.hold(keys):
            # Re-read under the lock; a concurrent cancel may have won.
            current = self.get(reservation_id)
            self._guard(current, ReservationStatus.CANCELLED)

            if (current.slot_date, current.start_time, current.end_time) == (
                new_date, new_start_time, new_end_time
            ):
                raise ValidationError(
                    "The new time is the same as the current booking",
                    field="new_start_time",
                    value=format_hhmm(new_start_time)
                )

            self._ensure_free(current.provider_id, new_date, new_start_time, new_end_time)

            with self.db.transaction() as tx:
                replacement = self._insert(
                    provider_id=current.provider_id,
                    subject_id=current.subject_id,
                    linked_entity_id=current.linked_entity_id,
                    entity_type=current.entity_type,
                    slot_date=new_date,
                    start_time=new_start_time,
                    end_time=new_end_time,
                    rescheduled_from_id=current.id,
                )
                tx.add_created("reservations", replacement.id)

                tx.store_original("reservations", current.id, {
                    "status": current.status.value,
                    "cancellation_reason": current.cancellation_reason,
                    "last_transition_at": (
                        current.last_transition_at.isoformat()
                        if current.last_transition_at else None
                    ),
                })
                self._write_status(current.id, ReservationStatus.CANCELLED, {
                    "cancellation_reason": RESCHEDULE_REASON,
                })

        logger.info(
            f"Reservation {current.id} rescheduled to {replacement.id}: "
            f"{current.slot_date} {format_hhmm(current.start_time)} -> "
            f"{new_date} {format_hhmm(new_start_time)}"
        )
        return replacement

    # ==========================================
    # INTERNALS
    # ==========================================

    def _transition(
        self,
        reservation_id: str,
        target: ReservationStatus,
        extra: Optional[dict] = None
    ) -> Reservation:
        current = self.get(reservation_id)

        with self.locks.hold([slot_key(current.provider_id, current.slot_date)]):
            current = self.get(reservation_id)
            self._guard(current, target)
            updated = self._write_status(reservation_id, target, extra or {})

        logger.info(f"Reservation {reservation_id} {current.status.value} -> {target.value}")
        return updated

    def _guard(self, reservation: Reservation, target: ReservationStatus) -> None:
        if can_transition(reservation.status, target):
            return
        logger.warning(
            f"Invalid transition for reservation {reservation.id}: "
            f"{reservation.status.value} -> {target.value}"
        )
        raise InvalidTransitionError(
            f"Cannot change a {reservation.status.value} reservation to {target.value}",
            reservation_id=reservation.id,
            current_status=reservation.status.value,
            attempted_status=target.value
        )

    def _write_status(
        self,
        reservation_id: str,
        target: ReservationStatus,
        extra: dict
    ) -> Reservation:
        update = {
            "status": target.value,
            "last_transition_at": datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        row = self.db.update_reservation(reservation_id, update)
        if not row:
            raise NotFoundError(
                f"Reservation {reservation_id} not found",
                resource_type="reservation",
                resource_id=reservation_id
            )
        return Reservation.from_row(row)

    def _ensure_free(
        self,
        provider_id: str,
        slot_date: date,
        start_time: time,
        end_time: time
    ) -> None:
        for existing in self.list_active(provider_id, slot_date):
            if existing.overlaps(slot_date, start_time, end_time):
                logger.warning(
                    f"Booking conflict: provider {provider_id} {slot_date} "
                    f"{format_hhmm(start_time)} overlaps reservation {existing.id}"
                )
                raise ConflictError(
                    provider_id=provider_id,
                    slot_date=slot_date.isoformat(),
                    start_time=format_hhmm(start_time),
                    conflicting_reservation_id=existing.id
                )

    def _insert(self, **fields) -> Reservation:
        now = datetime.now(timezone.utc)
        reservation = Reservation(
            id=new_id(),
            status=ReservationStatus.BOOKED,
            created_at=now,
            last_transition_at=now,
            **fields
        )
        try:
            row = self.db.insert_reservation(reservation.to_row())
        except Exception as e:
            if is_window_violation(e):
                logger.warning(
                    f"Database rejected overlapping window for provider {reservation.provider_id} "
                    f"{reservation.slot_date} {format_hhmm(reservation.start_time)}"
                )
                raise ConflictError(
                    provider_id=reservation.provider_id,
                    slot_date=reservation.slot_date.isoformat(),
                    start_time=format_hhmm(reservation.start_time)
                ) from e
            raise
        return Reservation.from_row(row)


def _validate_window(start_time: time, end_time: time) -> None:
    if start_time >= end_time:
        raise ValidationError(
            f"Start time {format_hhmm(start_time)} must be before end time {format_hhmm(end_time)}",
            field="start_time",
            value=format_hhmm(start_time)
        )
