"""
Escalation API Routes for Careslot.

Read-only views over open deadlines plus manual escalation flags.
Every response is rebuilt from the status stores on each call.
"""
from typing import Optional

from fastapi import APIRouter, Path, Query

from ...core.database import get_supabase_client
from ...models.enums import EntityType
from ...models.schemas import EscalationFlagRequest
from ...services.escalation import EscalationService


router = APIRouter(prefix="/api/escalations", tags=["Escalations"])


def _entity_types(entity_types: Optional[list[EntityType]]) -> Optional[list[EntityType]]:
    return entity_types or None


@router.get(
    "",
    summary="List Escalations",
    description="AT_RISK and BREACHED entities, breached and most overdue first"
)
def list_escalations(
    entity_types: Optional[list[EntityType]] = Query(None, description="Filter by entity type")
):
    service = EscalationService(get_supabase_client())
    report = service.list_escalations(_entity_types(entity_types))
    return {
        "escalations": [e.model_dump(mode="json") for e in report.escalations],
        "count": len(report.escalations),
        "is_partial": report.is_partial,
        "failed_entity_types": report.failed_entity_types,
        "failed_lookups": report.failed_lookups,
        "generated_at": report.generated_at.isoformat(),
    }


@router.get(
    "/summary",
    summary="Breach Summary",
    description="AT_RISK / BREACHED counts per entity type"
)
def get_breach_summary(
    entity_types: Optional[list[EntityType]] = Query(None, description="Filter by entity type")
):
    service = EscalationService(get_supabase_client())
    summary = service.get_breach_summary(_entity_types(entity_types))
    return summary.model_dump(mode="json")


@router.post(
    "/scan",
    summary="Run Escalation Scan",
    description="Run the scheduled scan now: notify and flag new escalations"
)
def run_scan():
    service = EscalationService(get_supabase_client())
    return service.run_escalation_scan()


@router.get(
    "/{entity_type}/{entity_id}",
    summary="Check Entity Deadline",
    description="Classify a single entity against its deadline rule"
)
def check_entity_deadline(
    entity_type: EntityType = Path(..., description="Entity type"),
    entity_id: str = Path(..., description="Entity ID")
):
    service = EscalationService(get_supabase_client())
    return service.check_entity_deadline(entity_type, entity_id).model_dump(mode="json")


@router.post(
    "/{entity_type}/{entity_id}/flag",
    status_code=201,
    summary="Flag Escalation",
    description="Record that a human picked up this escalation"
)
def flag_escalation(
    body: EscalationFlagRequest,
    entity_type: EntityType = Path(..., description="Entity type"),
    entity_id: str = Path(..., description="Entity ID")
):
    service = EscalationService(get_supabase_client())
    flag = service.mark_escalated(entity_type, entity_id, body.reason, body.actor_id)
    return {"status": "success", "flag": flag}
