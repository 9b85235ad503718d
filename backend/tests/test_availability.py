"""
Tests for availability management.
"""
import pytest
from pydantic import ValidationError as PydanticValidationError

from careslot.core.exceptions import NotFoundError, ValidationError
from careslot.models.enums import DayOfWeek


class TestRuleValidation:

    @pytest.mark.unit
    @pytest.mark.parametrize("start,end", [
        ("9:00", "12:00"),
        ("09:00", "24:00"),
        ("09.00", "12:00"),
        ("09:60", "12:00"),
        ("nine", "12:00"),
    ])
    def test_time_must_be_hhmm(self, start, end):
        from careslot.models.schemas import AvailabilityRuleInput

        with pytest.raises(PydanticValidationError) as exc_info:
            AvailabilityRuleInput(day_of_week="MONDAY", start_time=start, end_time=end)

        assert "HH:MM" in str(exc_info.value)

    @pytest.mark.unit
    def test_start_must_precede_end(self):
        from careslot.models.schemas import AvailabilityRuleInput

        with pytest.raises(PydanticValidationError):
            AvailabilityRuleInput(day_of_week="MONDAY", start_time="12:00", end_time="09:00")

    @pytest.mark.unit
    def test_seconds_are_accepted_from_database_rows(self):
        from datetime import time
        from careslot.models.schemas import AvailabilityRuleInput

        rule = AvailabilityRuleInput(day_of_week="MONDAY", start_time="09:00:00", end_time="12:00:00")

        assert rule.start_time == time(9, 0)


class TestSetAvailability:

    @pytest.mark.unit
    def test_replaces_full_rule_set(self, set_rules, fresh_mock_client, mock_data):
        from careslot.services.availability import AvailabilityService

        set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))
        set_rules("doc-1", (DayOfWeek.TUESDAY, "14:00", "16:00"), (DayOfWeek.MONDAY, "08:00", "09:00"))

        service = AvailabilityService(fresh_mock_client)
        active = service.get_availability("doc-1")
        everything = service.get_availability("doc-1", include_inactive=True)

        assert [(r.day_of_week, r.start_time.hour) for r in active] == [
            (DayOfWeek.MONDAY, 8),
            (DayOfWeek.TUESDAY, 14),
        ]
        assert len(everything) == 3
        assert len(mock_data["availability_rules"]) == 3

    @pytest.mark.unit
    def test_empty_set_clears_availability(self, set_rules, fresh_mock_client):
        from careslot.services.availability import AvailabilityService

        set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))
        result = set_rules("doc-1")

        assert result == []
        assert AvailabilityService(fresh_mock_client).get_availability("doc-1") == []

    @pytest.mark.unit
    def test_other_providers_untouched(self, set_rules, fresh_mock_client):
        from careslot.services.availability import AvailabilityService

        set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))
        set_rules("doc-2", (DayOfWeek.MONDAY, "09:00", "10:00"))

        assert len(AvailabilityService(fresh_mock_client).get_availability("doc-1")) == 1

    @pytest.mark.edge
    def test_overlapping_windows_rejected(self, set_rules):
        with pytest.raises(ValidationError):
            set_rules(
                "doc-1",
                (DayOfWeek.MONDAY, "09:00", "12:00"),
                (DayOfWeek.MONDAY, "11:00", "13:00"),
            )

    @pytest.mark.edge
    def test_mixed_durations_rejected(self, fresh_mock_client):
        from careslot.models.schemas import AvailabilityRuleInput
        from careslot.services.availability import AvailabilityService

        rules = [
            AvailabilityRuleInput(day_of_week="MONDAY", start_time="09:00", end_time="10:00", slot_duration_minutes=15),
            AvailabilityRuleInput(day_of_week="TUESDAY", start_time="09:00", end_time="10:00", slot_duration_minutes=30),
        ]

        with pytest.raises(ValidationError):
            AvailabilityService(fresh_mock_client).set_availability("doc-1", rules)

    @pytest.mark.edge
    def test_failed_insert_restores_previous_rules(self, set_rules, fresh_mock_client):
        from careslot.services.availability import AvailabilityService

        set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))
        fresh_mock_client.client.fail_once("availability_rules", "insert", RuntimeError("down"))

        with pytest.raises(RuntimeError):
            set_rules("doc-1", (DayOfWeek.TUESDAY, "09:00", "12:00"))

        active = AvailabilityService(fresh_mock_client).get_availability("doc-1")
        assert [r.day_of_week for r in active] == [DayOfWeek.MONDAY]

    @pytest.mark.unit
    def test_replacement_is_audited(self, set_rules, mock_data):
        set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))

        audit = mock_data["audit_logs"][0]
        assert audit["action"] == "replaced"
        assert audit["metadata"]["created"] == 1


class TestDeactivateRule:

    @pytest.mark.unit
    def test_deactivate_own_rule(self, set_rules, fresh_mock_client):
        from careslot.services.availability import AvailabilityService

        rule = set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))[0]
        service = AvailabilityService(fresh_mock_client)

        result = service.deactivate_rule(rule.id, "doc-1")

        assert result.is_active is False
        assert service.get_availability("doc-1") == []

    @pytest.mark.unit
    def test_cannot_deactivate_other_providers_rule(self, set_rules, fresh_mock_client):
        from careslot.services.availability import AvailabilityService

        rule = set_rules("doc-1", (DayOfWeek.MONDAY, "09:00", "12:00"))[0]

        with pytest.raises(NotFoundError):
            AvailabilityService(fresh_mock_client).deactivate_rule(rule.id, "doc-2")


class TestSlotDuration:

    @pytest.mark.unit
    def test_duration_defaults_without_rules(self, fresh_mock_client):
        from careslot.core.config import settings
        from careslot.services.availability import AvailabilityService

        assert AvailabilityService(fresh_mock_client).get_slot_duration("nobody") == settings.default_slot_duration_minutes
