"""
Booking API Routes for Careslot.

Handlers are plain `def` so FastAPI runs them on its worker thread pool;
concurrent bookings for the same provider and day are serialized by the
ledger, not by the event loop.

The caller identity comes from the X-Actor-Id / X-Actor-Role headers set
by the authenticating gateway.
"""
from typing import Optional

from fastapi import APIRouter, Header, Path, Query

from ...core.database import get_supabase_client
from ...core.exceptions import ValidationError
from ...models.enums import ActorRole
from ...models.schemas import (
    Actor,
    BookRequest,
    CancelRequest,
    Reservation,
    RescheduleRequest,
    format_hhmm,
)
from ...services.booking import BookingService


router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def _actor(actor_id: Optional[str], actor_role: Optional[str]) -> Actor:
    if not actor_id or not actor_role:
        raise ValidationError("X-Actor-Id and X-Actor-Role headers are required", field="actor")
    try:
        role = ActorRole(actor_role.upper())
    except ValueError:
        raise ValidationError(f"Unknown actor role: {actor_role}", field="X-Actor-Role", value=actor_role)
    return Actor(id=actor_id, role=role)


def _reservation_response(reservation: Reservation) -> dict:
    row = reservation.model_dump(mode="json")
    row["start_time"] = format_hhmm(reservation.start_time)
    row["end_time"] = format_hhmm(reservation.end_time)
    return row


@router.post(
    "",
    status_code=201,
    summary="Book Slot",
    description="Reserve one open slot; 409 means re-list and pick another time"
)
def book_slot(body: BookRequest):
    service = BookingService(get_supabase_client())
    reservation = service.book(
        provider_id=body.provider_id,
        subject_id=body.subject_id,
        linked_entity_id=body.linked_entity_id,
        slot_date=body.slot_date,
        start_time=body.start_time,
        entity_type=body.entity_type
    )
    return {"status": "success", "reservation": _reservation_response(reservation)}


@router.get(
    "/upcoming",
    summary="Upcoming Bookings",
    description="BOOKED reservations that have not started, for a patient or a provider"
)
def list_upcoming(
    user_id: str = Query(..., description="Subject or provider ID"),
    role: ActorRole = Query(ActorRole.PATIENT, description="Role of the user")
):
    service = BookingService(get_supabase_client())
    reservations = service.list_upcoming(user_id, role)
    return {
        "user_id": user_id,
        "reservations": [_reservation_response(r) for r in reservations],
        "count": len(reservations),
    }


@router.get("/{reservation_id}", summary="Get Reservation")
def get_reservation(reservation_id: str = Path(..., description="Reservation ID")):
    service = BookingService(get_supabase_client())
    return _reservation_response(service.get_reservation(reservation_id))


@router.post(
    "/{reservation_id}/cancel",
    summary="Cancel Reservation",
    description="Cancel a BOOKED reservation, subject to the minimum-notice cutoff"
)
def cancel_reservation(
    body: CancelRequest,
    reservation_id: str = Path(..., description="Reservation ID"),
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
):
    service = BookingService(get_supabase_client())
    reservation = service.cancel(
        reservation_id,
        _actor(x_actor_id, x_actor_role),
        body.reason
    )
    return {"status": "success", "reservation": _reservation_response(reservation)}


@router.post(
    "/{reservation_id}/reschedule",
    summary="Reschedule Reservation",
    description="Move a BOOKED reservation; the original stays booked if the move fails"
)
def reschedule_reservation(
    body: RescheduleRequest,
    reservation_id: str = Path(..., description="Reservation ID"),
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None)
):
    actor = _actor(x_actor_id, x_actor_role)
    service = BookingService(get_supabase_client())
    reservation = service.reschedule(
        reservation_id,
        body.new_date,
        body.new_start_time,
        actor=actor
    )
    return {
        "status": "success",
        "previous_reservation_id": reservation_id,
        "reservation": _reservation_response(reservation),
    }


@router.post("/{reservation_id}/complete", summary="Mark Completed")
def complete_reservation(reservation_id: str = Path(..., description="Reservation ID")):
    service = BookingService(get_supabase_client())
    reservation = service.mark_completed(reservation_id)
    return {"status": "success", "reservation": _reservation_response(reservation)}


@router.post("/{reservation_id}/no-show", summary="Mark No-Show")
def no_show_reservation(reservation_id: str = Path(..., description="Reservation ID")):
    service = BookingService(get_supabase_client())
    result = service.mark_no_show(reservation_id)
    return {
        "status": "success",
        "reservation": _reservation_response(result.reservation),
        "no_show_count": result.no_show_count,
        "admin_alert": result.admin_alert,
    }
