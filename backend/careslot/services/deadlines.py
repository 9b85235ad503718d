"""
Deadline Evaluator.

Maps a tracked entity's current status and the time it entered that status
to ON_TRACK / AT_RISK / BREACHED, using a static per-(entity type, status)
rule table. A status with no rule (including every terminal status) is
ON_TRACK regardless of elapsed time.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from ..models.enums import DeadlineStatus, EntityType
from ..models.schemas import DeadlineClassification


@dataclass(frozen=True)
class DeadlineRule:
    """
    Maximum dwell time in one status.

    The at-risk threshold is either a fixed lead time before the deadline or
    a fraction of the dwell time; the lead time wins when both are set.
    """
    entity_type: EntityType
    status: str
    max_dwell_hours: float
    at_risk_lead_hours: Optional[float] = None
    at_risk_fraction: Optional[float] = None
    critical_after_hours: Optional[float] = None
    next_status: Optional[str] = None
    description: str = ""

    @property
    def at_risk_after_hours(self) -> float:
        """Elapsed hours at which the entity becomes AT_RISK."""
        if self.at_risk_lead_hours is not None:
            lead = self.at_risk_lead_hours
        elif self.at_risk_fraction is not None:
            lead = self.max_dwell_hours * self.at_risk_fraction
        else:
            lead = 0
        return max(self.max_dwell_hours - lead, 0)


RuleTable = Mapping[tuple[EntityType, str], DeadlineRule]


def _rules(*rules: DeadlineRule) -> dict[tuple[EntityType, str], DeadlineRule]:
    return {(rule.entity_type, rule.status): rule for rule in rules}


DEFAULT_DEADLINE_RULES: dict[tuple[EntityType, str], DeadlineRule] = _rules(
    # Sample collection
    DeadlineRule(
        EntityType.SAMPLE_COLLECTION, "ORDERED", 4, at_risk_lead_hours=1,
        critical_after_hours=4, next_status="SLOT_BOOKED",
        description="Patient should book a collection slot within 4 hours"
    ),
    DeadlineRule(
        EntityType.SAMPLE_COLLECTION, "SLOT_BOOKED", 2, at_risk_lead_hours=0.5,
        critical_after_hours=2, next_status="COLLECTOR_ASSIGNED",
        description="A collector should be assigned within 2 hours"
    ),
    DeadlineRule(
        EntityType.SAMPLE_COLLECTION, "DELIVERED_TO_LAB", 4, at_risk_lead_hours=1,
        critical_after_hours=4, next_status="SAMPLE_RECEIVED",
        description="Lab should confirm receipt within 4 hours"
    ),
    DeadlineRule(
        EntityType.SAMPLE_COLLECTION, "SAMPLE_RECEIVED", 48, at_risk_fraction=0.25,
        critical_after_hours=24, next_status="RESULTS_READY",
        description="Results should be uploaded within 48 hours"
    ),
    DeadlineRule(
        EntityType.SAMPLE_COLLECTION, "RESULTS_READY", 24, at_risk_fraction=0.25,
        critical_after_hours=24, next_status="DOCTOR_REVIEWED",
        description="Doctor should review results within 24 hours"
    ),
    # Medication dispatch
    DeadlineRule(
        EntityType.MEDICATION_DISPATCH, "ASSIGNED", 4, at_risk_lead_hours=1,
        critical_after_hours=4, next_status="PHARMACY_ACCEPTED",
        description="Pharmacy should accept the order within 4 hours"
    ),
    DeadlineRule(
        EntityType.MEDICATION_DISPATCH, "PHARMACY_ACCEPTED", 4, at_risk_lead_hours=1,
        critical_after_hours=4, next_status="PREPARING",
        description="Pharmacy should start preparing within 4 hours"
    ),
    DeadlineRule(
        EntityType.MEDICATION_DISPATCH, "PREPARING", 4, at_risk_lead_hours=1,
        critical_after_hours=4, next_status="OUT_FOR_DELIVERY",
        description="Order should be dispatched within 4 hours"
    ),
    DeadlineRule(
        EntityType.MEDICATION_DISPATCH, "OUT_FOR_DELIVERY", 6, at_risk_lead_hours=1,
        critical_after_hours=6, next_status="DELIVERED",
        description="Order should be delivered within 6 hours"
    ),
    # Video consultation
    DeadlineRule(
        EntityType.VIDEO_CONSULT, "DOCTOR_REVIEWING", 24, at_risk_fraction=0.25,
        critical_after_hours=24, next_status="VIDEO_SCHEDULED",
        description="Doctor should review the case within 24 hours"
    ),
    DeadlineRule(
        EntityType.VIDEO_CONSULT, "VIDEO_SCHEDULED", 48, at_risk_fraction=0.25,
        critical_after_hours=24, next_status="VIDEO_COMPLETED",
        description="Video call should happen within 48 hours of scheduling"
    ),
    DeadlineRule(
        EntityType.VIDEO_CONSULT, "AWAITING_PRESCRIPTION", 24, at_risk_fraction=0.25,
        critical_after_hours=24, next_status="PRESCRIPTION_ISSUED",
        description="Prescription should be issued within 24 hours of the call"
    ),
)


TERMINAL_STATUSES: dict[EntityType, tuple[str, ...]] = {
    EntityType.VIDEO_CONSULT: ("COMPLETED", "CANCELLED", "REJECTED", "PRESCRIPTION_ISSUED"),
    EntityType.SAMPLE_COLLECTION: ("COMPLETED", "CANCELLED", "DOCTOR_REVIEWED"),
    EntityType.MEDICATION_DISPATCH: ("DELIVERED", "CANCELLED", "RETURNED"),
}


def get_rule(
    entity_type: EntityType,
    current_status: str,
    rules: Optional[RuleTable] = None
) -> Optional[DeadlineRule]:
    table = DEFAULT_DEADLINE_RULES if rules is None else rules
    return table.get((entity_type, current_status))


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def classify(
    entity_type: EntityType,
    current_status: str,
    status_entered_at: datetime,
    now: datetime,
    rules: Optional[RuleTable] = None,
    entity_id: Optional[str] = None
) -> DeadlineClassification:
    """
    Classify one entity against its deadline rule.

    hours_overdue is whole hours past the deadline, rounded down; it is 0
    unless the entity is BREACHED. hours_remaining is set while the
    deadline is still ahead.
    """
    now = _aware(now)
    rule = get_rule(entity_type, current_status, rules)
    if rule is None:
        return DeadlineClassification(
            entity_id=entity_id,
            entity_type=entity_type,
            current_status=current_status,
            status=DeadlineStatus.ON_TRACK,
            computed_at=now
        )

    entered = _aware(status_entered_at)
    elapsed_hours = (now - entered).total_seconds() / 3600
    deadline_at = entered + timedelta(hours=rule.max_dwell_hours)

    if elapsed_hours >= rule.max_dwell_hours:
        status = DeadlineStatus.BREACHED
        hours_overdue = int(elapsed_hours - rule.max_dwell_hours)
        hours_remaining = None
    else:
        status = (
            DeadlineStatus.AT_RISK
            if elapsed_hours >= rule.at_risk_after_hours
            else DeadlineStatus.ON_TRACK
        )
        hours_overdue = 0
        hours_remaining = round(rule.max_dwell_hours - elapsed_hours, 2)

    return DeadlineClassification(
        entity_id=entity_id,
        entity_type=entity_type,
        current_status=current_status,
        status=status,
        hours_overdue=hours_overdue,
        hours_remaining=hours_remaining,
        deadline_at=deadline_at,
        computed_at=now
    )


def is_critical(
    classification: DeadlineClassification,
    rules: Optional[RuleTable] = None
) -> bool:
    """BREACHED by at least the rule's critical threshold."""
    if classification.status != DeadlineStatus.BREACHED:
        return False
    rule = get_rule(classification.entity_type, classification.current_status, rules)
    if rule is None or rule.critical_after_hours is None:
        return False
    return classification.hours_overdue >= rule.critical_after_hours
