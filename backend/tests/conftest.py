"""
Pytest fixtures and configuration for Careslot tests.

Provides:
- In-memory Supabase mock (fluent table API) wrapped in a real SupabaseClient
- Test client with mocked database
- Time freezing utilities
- Availability and reservation builders
"""
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generator, Optional
from unittest.mock import patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from freezegun import freeze_time
from postgrest.exceptions import APIError

from careslot.core.database import SupabaseClient
from careslot.main import app


ACTIVE_RESERVATION_STATUSES = ("BOOKED", "COMPLETED")


# ==========================================
# MOCK SUPABASE RESPONSE & TABLE
# ==========================================

class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data or []
        self.count = count if count is not None else len(self.data)

    def execute(self):
        return self


class MockNotFilter:
    """Helper class to handle negated filters like .not_.in_()."""

    def __init__(self, table: "MockSupabaseTable"):
        self._table = table

    def in_(self, column: str, values: list):
        self._table._filters.append(("not_in", column, values))
        return self._table

    def eq(self, column: str, value: Any):
        self._table._filters.append(("neq", column, value))
        return self._table


class MockSupabaseTable:
    """Mock Supabase table operations."""

    def __init__(self, table_name: str, store: "MockSupabaseClientInner"):
        self.table_name = table_name
        self.store = store
        self._filters = []
        self._order_by: list[tuple[str, bool]] = []
        self._limit = None
        self._operation = "select"
        self._payload = None

    @property
    def rows(self) -> list:
        return self.store.mock_data.setdefault(self.table_name, [])

    def select(self, fields: str = "*", count: str = None):
        return self

    def eq(self, column: str, value: Any):
        self._filters.append(("eq", column, value))
        return self

    def neq(self, column: str, value: Any):
        self._filters.append(("neq", column, value))
        return self

    def in_(self, column: str, values: list):
        self._filters.append(("in", column, list(values)))
        return self

    def gte(self, column: str, value: Any):
        self._filters.append(("gte", column, value))
        return self

    def gt(self, column: str, value: Any):
        self._filters.append(("gt", column, value))
        return self

    def lte(self, column: str, value: Any):
        self._filters.append(("lte", column, value))
        return self

    def lt(self, column: str, value: Any):
        self._filters.append(("lt", column, value))
        return self

    def is_(self, column: str, value: Any):
        self._filters.append(("is", column, value))
        return self

    @property
    def not_(self):
        return MockNotFilter(self)

    def order(self, column: str, desc: bool = False):
        self._order_by.append((column, desc))
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    def insert(self, data: Any):
        self._operation = "insert"
        self._payload = data
        return self

    def update(self, data: dict):
        self._operation = "update"
        self._payload = data
        return self

    def delete(self):
        self._operation = "delete"
        return self

    def _matches(self, row: dict) -> bool:
        for op, column, value in self._filters:
            current = row.get(column)
            if op == "eq" and current != value:
                return False
            if op == "neq" and current == value:
                return False
            if op == "in" and current not in value:
                return False
            if op == "not_in" and current in value:
                return False
            if op == "is" and value in (None, "null") and current is not None:
                return False
            if op in ("gte", "gt", "lte", "lt"):
                if current is None:
                    return False
                if op == "gte" and not current >= value:
                    return False
                if op == "gt" and not current > value:
                    return False
                if op == "lte" and not current <= value:
                    return False
                if op == "lt" and not current < value:
                    return False
        return True

    def _check_unique(self, item: dict) -> None:
        """Emulate the active-window unique index and the overlap exclusion constraint."""
        if self.table_name != "reservations":
            return
        if item.get("status", "BOOKED") not in ACTIVE_RESERVATION_STATUSES:
            return
        for row in self.rows:
            if (
                row.get("status") not in ACTIVE_RESERVATION_STATUSES
                or row.get("provider_id") != item.get("provider_id")
                or row.get("slot_date") != item.get("slot_date")
            ):
                continue
            if row.get("start_time") == item.get("start_time"):
                raise APIError({
                    "message": "duplicate key value violates unique constraint "
                               "\"reservations_active_window_key\"",
                    "code": "23505",
                    "hint": None,
                    "details": None,
                })
            # HH:MM strings order the same way as the times they name.
            starts_ends = (item.get("start_time"), item.get("end_time"), row.get("start_time"), row.get("end_time"))
            if None in starts_ends:
                continue
            if item["start_time"] < row["end_time"] and row["start_time"] < item["end_time"]:
                raise APIError({
                    "message": "conflicting key value violates exclusion constraint "
                               "\"reservations_no_active_overlap\"",
                    "code": "23P01",
                    "hint": None,
                    "details": None,
                })

    def execute(self):
        """Execute the query and return results."""
        with self.store.lock:
            self.store.maybe_fail(self.table_name, self._operation)

            if self._operation == "insert":
                items = self._payload if isinstance(self._payload, list) else [self._payload]
                created = []
                for item in items:
                    row = dict(item)
                    row.setdefault("id", str(uuid4()))
                    row.setdefault("created_at", datetime.now(timezone.utc).isoformat())
                    self._check_unique(row)
                    self.rows.append(row)
                    created.append(dict(row))
                return MockSupabaseResponse(created)

            results = [row for row in self.rows if self._matches(row)]

            if self._operation == "update":
                for row in results:
                    row.update(self._payload)
                return MockSupabaseResponse([dict(r) for r in results])

            if self._operation == "delete":
                for row in results:
                    self.rows.remove(row)
                return MockSupabaseResponse([dict(r) for r in results])

            for column, desc in reversed(self._order_by):
                results.sort(key=lambda r: r.get(column) or "", reverse=desc)

            total_count = len(results)
            if self._limit:
                results = results[:self._limit]
            return MockSupabaseResponse([dict(r) for r in results], count=total_count)


class MockSupabaseClientInner:
    """Mock inner Supabase client (the object with table())."""

    def __init__(self, mock_data: Optional[Dict[str, list]] = None):
        self.mock_data: Dict[str, list] = mock_data if mock_data is not None else {}
        self.lock = threading.RLock()
        self.failures: Dict[tuple, Callable[[], Exception]] = {}

    def table(self, table_name: str) -> MockSupabaseTable:
        return MockSupabaseTable(table_name, self)

    def fail(self, table: str, operation: str, error: Exception) -> None:
        """Make every `operation` on `table` raise `error`."""
        self.failures[(table, operation)] = lambda: error

    def fail_once(self, table: str, operation: str, error: Exception) -> None:
        """Make the next `operation` on `table` raise `error`."""
        def _raise_once():
            self.failures.pop((table, operation), None)
            return error
        self.failures[(table, operation)] = _raise_once

    def maybe_fail(self, table: str, operation: str) -> None:
        factory = self.failures.get((table, operation))
        if factory is not None:
            raise factory()


def make_mock_supabase_client(mock_data: Optional[Dict[str, list]] = None) -> SupabaseClient:
    """
    A real SupabaseClient whose PostgREST client is the in-memory mock,
    so helper methods and transaction rollback run unchanged.
    """
    db = object.__new__(SupabaseClient)
    db._client = MockSupabaseClientInner(mock_data)
    return db


# ==========================================
# FIXTURES
# ==========================================

@pytest.fixture(scope="function")
def fresh_mock_client() -> SupabaseClient:
    """Function-scoped fresh mock client (clean for each test)."""
    return make_mock_supabase_client()


@pytest.fixture(scope="function")
def mock_data(fresh_mock_client) -> Dict[str, list]:
    """Access to the mock data store for direct manipulation."""
    return fresh_mock_client.client.mock_data


@pytest.fixture(scope="function")
def client(fresh_mock_client) -> Generator[TestClient, None, None]:
    """
    Create test client with mocked Supabase.

    Each test gets a fresh mock client with clean data.
    """
    with patch("careslot.api.routes.availability_routes.get_supabase_client", return_value=fresh_mock_client):
        with patch("careslot.api.routes.booking_routes.get_supabase_client", return_value=fresh_mock_client):
            with patch("careslot.api.routes.escalation_routes.get_supabase_client", return_value=fresh_mock_client):
                with TestClient(app) as test_client:
                    yield test_client


# ==========================================
# TIME FIXTURES
# ==========================================

@pytest.fixture
def frozen_friday():
    """Freeze time at Friday 2026-02-27 06:30 UTC (12:00 in the clinic zone)."""
    with freeze_time("2026-02-27 06:30:00") as frozen:
        yield frozen


# ==========================================
# BUILDERS
# ==========================================

@pytest.fixture
def set_rules(fresh_mock_client):
    """Replace a provider's availability through the service."""
    from careslot.models.schemas import AvailabilityRuleInput
    from careslot.services.availability import AvailabilityService

    def _set(provider_id: str, *windows: tuple, duration: int = 15):
        rules = [
            AvailabilityRuleInput(
                day_of_week=day,
                start_time=start,
                end_time=end,
                slot_duration_minutes=duration
            )
            for day, start, end in windows
        ]
        return AvailabilityService(fresh_mock_client).set_availability(provider_id, rules)

    return _set


@pytest.fixture
def booking_service(fresh_mock_client):
    from careslot.services.booking import BookingService

    return BookingService(fresh_mock_client)


@pytest.fixture
def ledger(fresh_mock_client):
    from careslot.services.ledger import ReservationLedger

    return ReservationLedger(fresh_mock_client)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
    config.addinivalue_line("markers", "edge: Edge case tests")
    config.addinivalue_line("markers", "concurrency: Concurrent booking tests")
