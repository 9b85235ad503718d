"""
Availability Store.

Holds each provider's recurring weekly rules. A provider replaces the full
rule set at once; replaced rules are deactivated, not deleted, so past
availability stays auditable.
"""
import logging
from typing import Iterable, Optional

from ..core.config import settings
from ..core.database import SupabaseClient, get_supabase_client
from ..core.exceptions import NotFoundError, ValidationError
from ..models.enums import DayOfWeek
from ..models.schemas import AvailabilityRule, AvailabilityRuleInput, format_hhmm
from .locks import KeyedLockRegistry, get_lock_registry


logger = logging.getLogger(__name__)


def _validate_rule_set(rules: list[AvailabilityRuleInput]) -> None:
    """One slot duration per provider and no overlapping windows on a day."""
    durations = {rule.slot_duration_minutes for rule in rules}
    if len(durations) > 1:
        raise ValidationError(
            "All availability windows must use the same slot duration",
            field="slot_duration_minutes",
            value=sorted(durations)
        )

    by_day: dict[DayOfWeek, list[AvailabilityRuleInput]] = {}
    for rule in rules:
        by_day.setdefault(rule.day_of_week, []).append(rule)

    for day, day_rules in by_day.items():
        day_rules.sort(key=lambda r: r.start_time)
        for previous, current in zip(day_rules, day_rules[1:]):
            if current.start_time < previous.end_time:
                raise ValidationError(
                    f"Overlapping windows on {day.value}: "
                    f"{format_hhmm(previous.start_time)}-{format_hhmm(previous.end_time)} and "
                    f"{format_hhmm(current.start_time)}-{format_hhmm(current.end_time)}",
                    field="rules",
                    value=day.value
                )


class AvailabilityService:
    """Reads and replaces provider availability rules."""

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        locks: Optional[KeyedLockRegistry] = None
    ):
        self.db = db or get_supabase_client()
        self.locks = locks or get_lock_registry()

    def get_availability(
        self,
        provider_id: str,
        include_inactive: bool = False
    ) -> list[AvailabilityRule]:
        """Rules of a provider ordered by day of week, then start time."""
        rows = self.db.get_availability_rules(provider_id, active_only=not include_inactive)
        rules = [AvailabilityRule.from_row(row) for row in rows]
        rules.sort(key=lambda r: (r.day_of_week.weekday, r.start_time))
        return rules

    def set_availability(
        self,
        provider_id: str,
        rules: Iterable[AvailabilityRuleInput]
    ) -> list[AvailabilityRule]:
        """
        Replace a provider's full rule set.

        Last write wins: concurrent replacements for the same provider are
        serialized, never merged. An empty list clears availability.
        """
        rules = list(rules)
        _validate_rule_set(rules)

        with self.locks.hold([("availability", provider_id)]):
            with self.db.transaction() as tx:
                for row in self.db.get_availability_rules(provider_id):
                    tx.store_original("availability_rules", row["id"], {
                        "is_active": True,
                        "deactivated_at": None,
                    })
                deactivated = self.db.deactivate_availability_rules(provider_id)

                new_rows = [
                    AvailabilityRule(provider_id=provider_id, **rule.model_dump()).to_row()
                    for rule in rules
                ]
                inserted = self.db.insert_availability_rules(new_rows)
                for row in inserted:
                    tx.add_created("availability_rules", row["id"])

                self.db.log_audit(
                    entity_type="availability_rule",
                    entity_id=provider_id,
                    action="replaced",
                    changed_by=provider_id,
                    metadata={
                        "deactivated": len(deactivated),
                        "created": len(inserted),
                    }
                )

        logger.info(
            f"Availability replaced for provider {provider_id}: "
            f"{len(deactivated)} deactivated, {len(inserted)} created"
        )
        result = [AvailabilityRule.from_row(row) for row in inserted]
        result.sort(key=lambda r: (r.day_of_week.weekday, r.start_time))
        return result

    def deactivate_rule(self, rule_id: str, provider_id: str) -> AvailabilityRule:
        """Deactivate one rule owned by `provider_id`."""
        row = self.db.get_availability_rule(rule_id)
        if not row or row.get("provider_id") != provider_id:
            raise NotFoundError(
                f"Availability rule {rule_id} not found for provider {provider_id}",
                resource_type="availability_rule",
                resource_id=rule_id
            )

        updated = self.db.update_availability_rule(rule_id, {"is_active": False})
        logger.info(f"Availability rule {rule_id} deactivated for provider {provider_id}")
        return AvailabilityRule.from_row(updated or {**row, "is_active": False})

    def get_slot_duration(
        self,
        provider_id: str,
        rules: Optional[list[AvailabilityRule]] = None
    ) -> int:
        """The provider's fixed slot duration."""
        if rules is None:
            rules = self.get_availability(provider_id)
        if rules:
            return rules[0].slot_duration_minutes
        return settings.default_slot_duration_minutes
