"""
Availability API Routes for Careslot.

Providers publish recurring weekly availability; consumers list the open
slots derived from it.
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Path, Query

from ...core.database import get_supabase_client
from ...models.schemas import SetAvailabilityRequest, format_hhmm
from ...services.availability import AvailabilityService
from ...services.booking import BookingService


router = APIRouter(prefix="/api/availability", tags=["Availability"])


def _rule_response(rule) -> dict:
    return {
        "id": rule.id,
        "provider_id": rule.provider_id,
        "day_of_week": rule.day_of_week.value,
        "start_time": format_hhmm(rule.start_time),
        "end_time": format_hhmm(rule.end_time),
        "slot_duration_minutes": rule.slot_duration_minutes,
        "is_active": rule.is_active,
    }


@router.put(
    "/{provider_id}",
    summary="Set Availability",
    description="Replace a provider's full weekly availability"
)
def set_availability(
    body: SetAvailabilityRequest,
    provider_id: str = Path(..., description="Provider ID")
):
    service = AvailabilityService(get_supabase_client())
    rules = service.set_availability(provider_id, body.rules)
    return {
        "status": "success",
        "provider_id": provider_id,
        "rules": [_rule_response(rule) for rule in rules],
    }


@router.get(
    "/{provider_id}",
    summary="Get Availability",
    description="Get a provider's availability rules"
)
def get_availability(
    provider_id: str = Path(..., description="Provider ID"),
    include_inactive: bool = Query(False, description="Include deactivated rules")
):
    service = AvailabilityService(get_supabase_client())
    rules = service.get_availability(provider_id, include_inactive=include_inactive)
    return {
        "provider_id": provider_id,
        "rules": [_rule_response(rule) for rule in rules],
        "count": len(rules),
    }


@router.delete(
    "/{provider_id}/rules/{rule_id}",
    summary="Deactivate Rule",
    description="Deactivate one availability rule (kept for audit)"
)
def deactivate_rule(
    provider_id: str = Path(..., description="Provider ID"),
    rule_id: str = Path(..., description="Rule ID")
):
    service = AvailabilityService(get_supabase_client())
    rule = service.deactivate_rule(rule_id, provider_id)
    return {"status": "success", "rule": _rule_response(rule)}


@router.get(
    "/{provider_id}/slots",
    summary="List Available Slots",
    description="Open slots for a provider; defaults to the booking horizon"
)
def list_available_slots(
    provider_id: str = Path(..., description="Provider ID"),
    date_from: date = Query(..., description="First date (inclusive)"),
    date_to: Optional[date] = Query(None, description="Last date (inclusive)")
):
    service = BookingService(get_supabase_client())
    slots = service.list_available(provider_id, date_from, date_to)
    return {
        "provider_id": provider_id,
        "slots": [
            {
                "slot_date": slot.slot_date.isoformat(),
                "start_time": format_hhmm(slot.start_time),
                "end_time": format_hhmm(slot.end_time),
            }
            for slot in slots
        ],
        "count": len(slots),
    }
