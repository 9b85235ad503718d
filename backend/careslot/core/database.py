"""
Supabase database client management.

Features:
- Transaction management with rollback support
- Audit logging for reservation lifecycle changes
- Reservation and availability table helpers

The Supabase REST API has no multi-statement transactions, so writes that
must succeed or fail together go through `transaction()`, which undoes the
tracked operations when the block raises.
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Generator, Optional
from uuid import uuid4

from postgrest.exceptions import APIError
from supabase import create_client, Client

from .config import settings


UNIQUE_VIOLATION = "23505"
EXCLUSION_VIOLATION = "23P01"


def is_window_violation(exc: Exception) -> bool:
    """True when a PostgREST error comes from the active-window unique index or overlap constraint."""
    return (
        isinstance(exc, APIError)
        and str(getattr(exc, "code", "")) in (UNIQUE_VIOLATION, EXCLUSION_VIOLATION)
    )


@dataclass
class TransactionContext:
    """
    Tracks operations within a transaction for potential rollback.

    Since Supabase REST API doesn't support native transactions,
    we implement application-level transaction management.
    """
    batch_id: str = field(default_factory=lambda: str(uuid4()))
    is_active: bool = True
    should_rollback: bool = False

    # Track created entity IDs for rollback, per table
    created: dict[str, list[str]] = field(default_factory=dict)

    # Track updated entities for rollback (store original values), per table
    originals: dict[str, dict[str, dict]] = field(default_factory=dict)

    def add_created(self, table: str, entity_id: str) -> None:
        """Track a created row for potential rollback."""
        self.created.setdefault(table, []).append(entity_id)

    def store_original(self, table: str, entity_id: str, original: dict) -> None:
        """Store original values for rollback. The first snapshot wins."""
        self.originals.setdefault(table, {}).setdefault(entity_id, dict(original))


class SupabaseClient:
    """
    Singleton wrapper for Supabase client.
    Provides methods for common database operations.

    Features:
    - Transaction management with application-level rollback
    - Audit logging for all changes
    """

    _instance: Optional["SupabaseClient"] = None
    _client: Optional[Client] = None

    def __new__(cls) -> "SupabaseClient":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._client is None:
            self._client = create_client(
                settings.supabase_url,
                settings.supabase_service_role_key or settings.supabase_anon_key
            )

    @property
    def client(self) -> Client:
        """Get the Supabase client instance."""
        if self._client is None:
            raise RuntimeError("Supabase client not initialized")
        return self._client

    # ==========================================
    # TRANSACTION MANAGEMENT
    # ==========================================

    @contextmanager
    def transaction(self) -> Generator[TransactionContext, None, None]:
        """
        Application-level transaction context manager.

        Usage:
            with db.transaction() as tx:
                row = db.insert_reservation(data)
                tx.add_created("reservations", row["id"])

        A fresh context is created per call so concurrent request threads
        never share rollback state.
        """
        tx = TransactionContext()
        try:
            yield tx

            if tx.should_rollback:
                self._rollback_transaction(tx)
        except Exception:
            self._rollback_transaction(tx)
            raise
        finally:
            tx.is_active = False

    def _rollback_transaction(self, tx: TransactionContext) -> None:
        """
        Rollback all operations in a transaction.
        Deletes created rows and restores original values.
        """
        for table, entity_ids in tx.created.items():
            if entity_ids:
                self.client.table(table).delete().in_("id", entity_ids).execute()

        for table, originals in tx.originals.items():
            for entity_id, original in originals.items():
                self.client.table(table).update(original).eq("id", entity_id).execute()

    # ==========================================
    # AUDIT LOGGING
    # ==========================================

    def log_audit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        field_changed: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        change_source: str = "api",
        changed_by: str = "system",
        reason: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> dict:
        """
        Log an audit entry.

        Args:
            entity_type: 'reservation', 'availability_rule', 'escalation'
            entity_id: ID of the entity
            action: 'booked', 'cancelled', 'rescheduled', 'late_cancellation', ...
            field_changed: Name of field that changed (for updates)
            old_value: Previous value as string
            new_value: New value as string
            change_source: 'api', 'scheduler', 'system'
            changed_by: User identifier or 'system:...'
            reason: Reason for change
            metadata: Additional context as JSON
        """
        audit_data = {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "field_changed": field_changed,
            "old_value": old_value,
            "new_value": new_value,
            "change_source": change_source,
            "changed_by": changed_by,
            "reason": reason,
            "metadata": metadata
        }
        # Remove None values
        audit_data = {k: v for k, v in audit_data.items() if v is not None}

        response = self.client.table("audit_logs").insert(audit_data).execute()
        return response.data[0] if response.data else {}

    # ==========================================
    # RESERVATIONS
    # ==========================================

    def get_reservation(self, reservation_id: str) -> Optional[dict]:
        """Get a reservation row by ID."""
        response = (
            self.client.table("reservations")
            .select("*")
            .eq("id", reservation_id)
            .execute()
        )
        return response.data[0] if response.data else None

    def list_reservations(
        self,
        provider_id: str,
        date_from: date,
        date_to: Optional[date] = None,
        statuses: Optional[list[str]] = None
    ) -> list[dict]:
        """
        List a provider's reservations in a date range.
        Served by the (provider_id, slot_date, start_time) index.
        """
        query = (
            self.client.table("reservations")
            .select("*")
            .eq("provider_id", provider_id)
            .gte("slot_date", date_from.isoformat())
            .lte("slot_date", (date_to or date_from).isoformat())
        )
        if statuses:
            query = query.in_("status", statuses)
        response = query.order("slot_date").order("start_time").execute()
        return response.data or []

    def list_reservations_for_party(
        self,
        party_field: str,
        party_id: str,
        statuses: list[str],
        from_date: date
    ) -> list[dict]:
        """List reservations owned by a subject or provider from a date onward."""
        response = (
            self.client.table("reservations")
            .select("*")
            .eq(party_field, party_id)
            .in_("status", statuses)
            .gte("slot_date", from_date.isoformat())
            .order("slot_date")
            .order("start_time")
            .execute()
        )
        return response.data or []

    def count_reservations(self, subject_id: str, status: str) -> int:
        """Count a subject's reservations in a status."""
        response = (
            self.client.table("reservations")
            .select("id", count="exact")
            .eq("subject_id", subject_id)
            .eq("status", status)
            .execute()
        )
        if response.count is not None:
            return response.count
        return len(response.data or [])

    def insert_reservation(self, row: dict) -> dict:
        """Insert a reservation row. Unique-index violations propagate as APIError."""
        response = self.client.table("reservations").insert(row).execute()
        if not response.data:
            raise RuntimeError("Reservation insert returned no row")
        return response.data[0]

    def update_reservation(self, reservation_id: str, update_data: dict) -> dict:
        """Update a reservation row and return it."""
        response = (
            self.client.table("reservations")
            .update(update_data)
            .eq("id", reservation_id)
            .execute()
        )
        return response.data[0] if response.data else {}

    # ==========================================
    # AVAILABILITY RULES
    # ==========================================

    def get_availability_rules(
        self,
        provider_id: str,
        active_only: bool = True
    ) -> list[dict]:
        """Get a provider's availability rules ordered by start time."""
        query = self.client.table("availability_rules").select("*").eq(
            "provider_id", provider_id
        )
        if active_only:
            query = query.eq("is_active", True)
        response = query.order("start_time").execute()
        return response.data or []

    def deactivate_availability_rules(self, provider_id: str) -> list[dict]:
        """Deactivate all active rules of a provider (kept for audit)."""
        response = (
            self.client.table("availability_rules")
            .update({
                "is_active": False,
                "deactivated_at": datetime.now(timezone.utc).isoformat()
            })
            .eq("provider_id", provider_id)
            .eq("is_active", True)
            .execute()
        )
        return response.data or []

    def insert_availability_rules(self, rows: list[dict]) -> list[dict]:
        """Bulk insert availability rules."""
        if not rows:
            return []
        response = self.client.table("availability_rules").insert(rows).execute()
        return response.data or []

    def get_availability_rule(self, rule_id: str) -> Optional[dict]:
        """Get a single availability rule."""
        response = (
            self.client.table("availability_rules")
            .select("*")
            .eq("id", rule_id)
            .execute()
        )
        return response.data[0] if response.data else None

    def update_availability_rule(self, rule_id: str, update_data: dict) -> dict:
        """Update a single availability rule."""
        response = (
            self.client.table("availability_rules")
            .update(update_data)
            .eq("id", rule_id)
            .execute()
        )
        return response.data[0] if response.data else {}

    # ==========================================
    # IDENTITY LOOKUP
    # ==========================================

    def get_users(self, user_ids: list[str]) -> dict[str, dict]:
        """Look up display name, contact and role for a set of users."""
        ids = sorted({uid for uid in user_ids if uid})
        if not ids:
            return {}
        response = (
            self.client.table("users")
            .select("id, name, phone, email, role")
            .in_("id", ids)
            .execute()
        )
        return {row["id"]: row for row in (response.data or [])}


def get_supabase_client() -> SupabaseClient:
    """
    Get the Supabase client singleton.
    Use this function for dependency injection in FastAPI routes.
    """
    return SupabaseClient()


def now_utc() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new row ID."""
    return str(uuid4())


def row_value(row: dict, key: str, default: Any = None) -> Any:
    """Read a possibly missing column from a row."""
    value = row.get(key)
    return default if value is None else value
