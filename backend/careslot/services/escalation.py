"""
Escalation Aggregator for Careslot.

Scans every entity with an open deadline, classifies it, and produces a
prioritized list for human action: BREACHED first, most overdue first.

Key Features:
- Read model rebuilt on every call, never cached
- Read failures degrade the report instead of failing it: an unreachable
  store or unreadable row marks its entity type as failed, and a failed
  contact or flag lookup is recorded in `failed_lookups`
- Escalations carry subject and responsible-party contact details
- The only writes are escalation flags (and their notifications)
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..core.database import SupabaseClient, get_supabase_client
from ..core.exceptions import NotFoundError, UpstreamSourceError
from ..models.enums import BookingEventType, DeadlineStatus, EntityType
from ..models.schemas import (
    BreachSummary,
    DeadlineClassification,
    Escalation,
    EscalationReport,
    PartyContact,
)
from .deadlines import (
    TERMINAL_STATUSES,
    RuleTable,
    classify,
    get_rule,
    is_critical,
)
from .notifications import NotificationService


logger = logging.getLogger(__name__)


FLAG_TABLE = "escalation_flags"
SCHEDULER_ACTOR = "system:scheduler"


@dataclass(frozen=True)
class EntitySource:
    """Where an entity type's current status lives."""
    entity_type: EntityType
    table: str
    subject_field: str
    responsible_field: str
    status_field: str = "status"
    entered_at_field: str = "status_entered_at"


ENTITY_SOURCES: dict[EntityType, EntitySource] = {
    EntityType.VIDEO_CONSULT: EntitySource(
        EntityType.VIDEO_CONSULT, "consultations", "patient_id", "doctor_id"
    ),
    EntityType.SAMPLE_COLLECTION: EntitySource(
        EntityType.SAMPLE_COLLECTION, "lab_orders", "patient_id", "phlebotomist_id"
    ),
    EntityType.MEDICATION_DISPATCH: EntitySource(
        EntityType.MEDICATION_DISPATCH, "pharmacy_orders", "patient_id", "pharmacy_id"
    ),
}


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _overdue_hours(escalation: Escalation, now: datetime) -> float:
    if escalation.deadline_at is None:
        return 0.0
    return (now - escalation.deadline_at).total_seconds() / 3600


def sort_escalations(escalations: list[Escalation], now: datetime) -> list[Escalation]:
    """BREACHED first, then most overdue, then least time remaining."""
    return sorted(
        escalations,
        key=lambda e: (
            e.deadline_status != DeadlineStatus.BREACHED,
            -_overdue_hours(e, now),
            e.hours_remaining if e.hours_remaining is not None else 0.0,
            e.entity_id,
        )
    )


class EscalationService:
    """Builds escalation read models from the linked-entity status stores."""

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        notifications: Optional[NotificationService] = None,
        rules: Optional[RuleTable] = None,
        sources: Optional[dict[EntityType, EntitySource]] = None
    ):
        self.db = db or get_supabase_client()
        self.notifications = notifications or NotificationService(self.db)
        self.rules = rules
        self.sources = sources or ENTITY_SOURCES

    # ==========================================
    # SOURCE ACCESS
    # ==========================================

    def fetch_open_entities(self, entity_type: EntityType) -> list[dict]:
        """Non-terminal rows of one entity type."""
        source = self.sources[entity_type]
        try:
            response = (
                self.db.client.table(source.table)
                .select("*")
                .not_.in_(source.status_field, list(TERMINAL_STATUSES.get(entity_type, ())))
                .execute()
            )
        except Exception as e:
            raise UpstreamSourceError(
                f"Could not read {entity_type.value} statuses",
                entity_type=entity_type.value,
                original_error=str(e)
            ) from e
        return response.data or []

    def fetch_entity(self, entity_type: EntityType, entity_id: str) -> dict:
        source = self.sources[entity_type]
        try:
            response = (
                self.db.client.table(source.table)
                .select("*")
                .eq("id", entity_id)
                .execute()
            )
        except Exception as e:
            raise UpstreamSourceError(
                f"Could not read {entity_type.value} statuses",
                entity_type=entity_type.value,
                original_error=str(e)
            ) from e
        if not response.data:
            raise NotFoundError(
                f"{entity_type.value} {entity_id} not found",
                resource_type=source.table,
                resource_id=entity_id
            )
        return response.data[0]

    def _flagged_keys(self, entity_ids: list[str]) -> set[tuple[str, str, str]]:
        if not entity_ids:
            return set()
        response = (
            self.db.client.table(FLAG_TABLE)
            .select("entity_id, status_entered_at, tier")
            .in_("entity_id", entity_ids)
            .execute()
        )
        return {
            (row["entity_id"], _parse_timestamp(row["status_entered_at"]).isoformat(), row["tier"])
            for row in (response.data or [])
        }

    # ==========================================
    # CLASSIFICATION
    # ==========================================

    def _classify_row(
        self,
        entity_type: EntityType,
        row: dict,
        now: datetime
    ) -> tuple[DeadlineClassification, datetime]:
        source = self.sources[entity_type]
        entered_at = _parse_timestamp(row[source.entered_at_field])
        classification = classify(
            entity_type,
            row[source.status_field],
            entered_at,
            now,
            rules=self.rules,
            entity_id=row["id"]
        )
        return classification, entered_at

    def _to_escalation(
        self,
        entity_type: EntityType,
        row: dict,
        classification: DeadlineClassification,
        entered_at: datetime,
        users: dict[str, dict],
        flagged: set[tuple[str, str, str]]
    ) -> Escalation:
        source = self.sources[entity_type]
        rule = get_rule(entity_type, classification.current_status, self.rules)
        return Escalation(
            entity_id=row["id"],
            entity_type=entity_type,
            current_status=classification.current_status,
            status_entered_at=entered_at,
            deadline_status=classification.status,
            hours_overdue=classification.hours_overdue,
            hours_remaining=classification.hours_remaining,
            deadline_at=classification.deadline_at,
            expected_next_status=rule.next_status if rule else None,
            rule_description=rule.description if rule else None,
            is_critical=is_critical(classification, self.rules),
            subject=_contact(row.get(source.subject_field), users),
            responsible_party=_contact(row.get(source.responsible_field), users),
            already_flagged=(
                row["id"], entered_at.isoformat(), classification.status.value
            ) in flagged
        )

    def list_escalations(
        self,
        entity_types: Optional[Iterable[EntityType]] = None,
        now: Optional[datetime] = None
    ) -> EscalationReport:
        """
        AT_RISK and BREACHED entities across the requested types.

        A type whose store cannot be read is reported in
        `failed_entity_types` instead of failing the whole call.
        """
        now = now or datetime.now(timezone.utc)
        types = list(entity_types) if entity_types else list(self.sources)

        candidates: list[tuple[EntityType, dict, DeadlineClassification, datetime]] = []
        failed: dict[str, str] = {}

        for entity_type in types:
            try:
                rows = self.fetch_open_entities(entity_type)
            except UpstreamSourceError as e:
                logger.error(f"Escalation scan skipped {entity_type.value}: {e.details}")
                failed[entity_type.value] = e.message
                continue

            skipped = 0
            for row in rows:
                try:
                    classification, entered_at = self._classify_row(entity_type, row, now)
                except (KeyError, TypeError, ValueError) as e:
                    logger.error(
                        f"Escalation scan skipped {entity_type.value} row {row.get('id')}: {e}"
                    )
                    skipped += 1
                    continue
                if classification.status != DeadlineStatus.ON_TRACK:
                    candidates.append((entity_type, row, classification, entered_at))
            if skipped:
                failed[entity_type.value] = f"Skipped {skipped} unreadable {entity_type.value} rows"

        failed_lookups: dict[str, str] = {}

        user_ids = []
        for entity_type, row, _, _ in candidates:
            source = self.sources[entity_type]
            user_ids.extend([row.get(source.subject_field), row.get(source.responsible_field)])
        try:
            users = self.db.get_users(user_ids)
        except Exception as e:
            logger.error(f"Escalation contact lookup failed: {e}")
            failed_lookups["users"] = "Could not read contact details"
            users = {}

        try:
            flagged = self._flagged_keys([row["id"] for _, row, _, _ in candidates])
        except Exception as e:
            logger.error(f"Escalation flag lookup failed: {e}")
            failed_lookups[FLAG_TABLE] = "Could not read escalation flags"
            flagged = set()

        escalations = [
            self._to_escalation(entity_type, row, classification, entered_at, users, flagged)
            for entity_type, row, classification, entered_at in candidates
        ]

        return EscalationReport(
            escalations=sort_escalations(escalations, now),
            failed_entity_types=failed,
            failed_lookups=failed_lookups,
            generated_at=now
        )

    def get_breach_summary(
        self,
        entity_types: Optional[Iterable[EntityType]] = None,
        now: Optional[datetime] = None
    ) -> BreachSummary:
        """Per-type AT_RISK / BREACHED counts for dashboards."""
        report = self.list_escalations(entity_types, now)
        types = list(entity_types) if entity_types else list(self.sources)

        at_risk = {t.value: 0 for t in types}
        breached = {t.value: 0 for t in types}
        critical = 0
        for escalation in report.escalations:
            key = escalation.entity_type.value
            if escalation.deadline_status == DeadlineStatus.BREACHED:
                breached[key] += 1
            else:
                at_risk[key] += 1
            if escalation.is_critical:
                critical += 1

        return BreachSummary(
            at_risk_by_type=at_risk,
            breached_by_type=breached,
            total_at_risk=sum(at_risk.values()),
            total_breached=sum(breached.values()),
            critical_count=critical,
            failed_entity_types=report.failed_entity_types,
            generated_at=report.generated_at
        )

    def check_entity_deadline(
        self,
        entity_type: EntityType,
        entity_id: str,
        now: Optional[datetime] = None
    ) -> DeadlineClassification:
        """Classify one entity on demand."""
        now = now or datetime.now(timezone.utc)
        row = self.fetch_entity(entity_type, entity_id)
        classification, _ = self._classify_row(entity_type, row, now)
        return classification

    # ==========================================
    # FLAGS
    # ==========================================

    def mark_escalated(
        self,
        entity_type: EntityType,
        entity_id: str,
        reason: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> dict:
        """Record that an escalation was picked up by a human."""
        now = now or datetime.now(timezone.utc)
        row = self.fetch_entity(entity_type, entity_id)
        classification, entered_at = self._classify_row(entity_type, row, now)

        flag = self._insert_flag(
            entity_type, entity_id, entered_at, classification, reason,
            actor_id or "system", now
        )
        self.db.log_audit(
            entity_type="escalation",
            entity_id=entity_id,
            action="escalated",
            new_value=classification.status.value,
            changed_by=actor_id or "system",
            reason=reason,
            metadata={"entity_type": entity_type.value}
        )
        logger.info(
            f"{entity_type.value} {entity_id} escalated by {actor_id or 'system'} "
            f"({classification.status.value})"
        )
        return flag

    def _insert_flag(
        self,
        entity_type: EntityType,
        entity_id: str,
        entered_at: datetime,
        classification: DeadlineClassification,
        reason: str,
        flagged_by: str,
        now: datetime
    ) -> dict:
        data = {
            "entity_type": entity_type.value,
            "entity_id": entity_id,
            "status": classification.current_status,
            "status_entered_at": entered_at.isoformat(),
            "tier": classification.status.value,
            "hours_overdue": classification.hours_overdue,
            "reason": reason,
            "flagged_by": flagged_by,
            "created_at": now.isoformat(),
        }
        response = self.db.client.table(FLAG_TABLE).insert(data).execute()
        return response.data[0] if response.data else data

    def run_escalation_scan(self, now: Optional[datetime] = None) -> dict:
        """
        One scan: flag and notify every escalation not yet flagged at its tier.

        Stateless and idempotent; a second scan over unchanged data sends
        nothing new. The flag is written before the notification, so an
        escalation whose flag cannot be written is retried by the next scan
        instead of being notified twice. When the flags cannot be read at
        all, nothing is notified.
        """
        now = now or datetime.now(timezone.utc)
        report = self.list_escalations(now=now)

        notified = 0
        flag_failures = 0
        flags_known = FLAG_TABLE not in report.failed_lookups
        if not flags_known:
            logger.error("Escalation scan sends no notifications: flags are unreadable")

        for escalation in report.escalations:
            if escalation.already_flagged or not flags_known:
                continue
            try:
                self._insert_flag(
                    escalation.entity_type,
                    escalation.entity_id,
                    escalation.status_entered_at,
                    DeadlineClassification(
                        entity_id=escalation.entity_id,
                        entity_type=escalation.entity_type,
                        current_status=escalation.current_status,
                        status=escalation.deadline_status,
                        hours_overdue=escalation.hours_overdue,
                        computed_at=now
                    ),
                    escalation.rule_description or "Deadline check",
                    SCHEDULER_ACTOR,
                    now
                )
            except Exception as e:
                logger.error(
                    f"Could not flag {escalation.entity_type.value} {escalation.entity_id}: {e}"
                )
                flag_failures += 1
                continue

            self.notifications.emit(
                BookingEventType.ESCALATED,
                {
                    "entity_type": escalation.entity_type.value,
                    "entity_id": escalation.entity_id,
                    "current_status": escalation.current_status,
                    "deadline_status": escalation.deadline_status.value,
                    "hours_overdue": escalation.hours_overdue,
                    "is_critical": escalation.is_critical,
                    "responsible_party": escalation.responsible_party.model_dump(),
                },
                recipient_id=escalation.responsible_party.id
            )
            notified += 1

        breached = sum(1 for e in report.escalations if e.deadline_status == DeadlineStatus.BREACHED)
        logger.info(
            f"Escalation scan: {len(report.escalations)} open "
            f"({breached} breached), {notified} newly flagged"
        )
        if report.is_partial:
            logger.error(
                f"Escalation scan partial, failed types: {list(report.failed_entity_types)}, "
                f"failed lookups: {list(report.failed_lookups)}"
            )

        return {
            "escalations": len(report.escalations),
            "breached": breached,
            "notified": notified,
            "flag_failures": flag_failures,
            "failed_entity_types": report.failed_entity_types,
            "failed_lookups": report.failed_lookups,
            "generated_at": now.isoformat(),
        }


def _contact(user_id: Optional[str], users: dict[str, dict]) -> PartyContact:
    if not user_id:
        return PartyContact()
    user = users.get(user_id, {})
    return PartyContact(
        id=user_id,
        name=user.get("name"),
        phone=user.get("phone"),
        email=user.get("email"),
        role=user.get("role")
    )
