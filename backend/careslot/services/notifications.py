"""
Notification dispatch for Careslot.

Lifecycle events (booked, cancelled, rescheduled, escalated, ...) are
fire-and-forget:
- Every event is written to the `notification_events` outbox table
- When a webhook is configured, the event is also POSTed to it (httpx)

Delivery (push/SMS/email) belongs to the notification collaborator behind
the webhook. A failed dispatch is logged and never fails the caller.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx

from ..core.config import settings
from ..core.database import SupabaseClient, get_supabase_client
from ..models.enums import BookingEventType


# Configure logging
logger = logging.getLogger(__name__)


class NotificationChannel(Enum):
    """Where an event was delivered."""
    OUTBOX = "OUTBOX"
    WEBHOOK = "WEBHOOK"


@dataclass
class NotificationResult:
    """Result of a notification attempt."""
    success: bool
    event_type: BookingEventType
    channels: tuple[NotificationChannel, ...] = ()
    event_id: Optional[str] = None
    error: Optional[str] = None


class NotificationService:
    """
    Emits lifecycle events to the notification collaborator.

    Features:
    - Outbox row per event (`notification_events`)
    - Optional webhook POST with a bounded timeout
    """

    def __init__(
        self,
        db: Optional[SupabaseClient] = None,
        http_client: Optional[httpx.Client] = None
    ):
        self.db = db or get_supabase_client()
        self.webhook_url = settings.notification_webhook_url
        self.timeout = settings.notification_timeout_seconds
        self._http_client = http_client

    def emit(
        self,
        event_type: BookingEventType,
        payload: dict[str, Any],
        recipient_id: Optional[str] = None
    ) -> NotificationResult:
        """
        Record and dispatch one event.

        Never raises: failures come back on the result and are logged.
        """
        now = datetime.now(timezone.utc)
        event = {
            "event_type": event_type.value,
            "recipient_id": recipient_id,
            "payload": payload,
            "created_at": now.isoformat(),
        }

        channels: list[NotificationChannel] = []
        errors: list[str] = []
        event_id = None

        try:
            response = self.db.client.table("notification_events").insert(event).execute()
            if response.data:
                event_id = response.data[0].get("id")
            channels.append(NotificationChannel.OUTBOX)
        except Exception as e:
            logger.error(f"Failed to record {event_type.value} event: {e}")
            errors.append(f"outbox: {e}")

        if self.webhook_url:
            try:
                self._post_webhook({**event, "id": event_id})
                channels.append(NotificationChannel.WEBHOOK)
            except httpx.HTTPError as e:
                logger.error(f"Webhook dispatch failed for {event_type.value}: {e}")
                errors.append(f"webhook: {e}")

        if not errors:
            logger.info(f"Emitted {event_type.value} event {event_id or ''}".rstrip())

        return NotificationResult(
            success=not errors,
            event_type=event_type,
            channels=tuple(channels),
            event_id=event_id,
            error="; ".join(errors) or None
        )

    def _post_webhook(self, body: dict[str, Any]) -> None:
        if self._http_client is not None:
            response = self._http_client.post(self.webhook_url, json=body, timeout=self.timeout)
            response.raise_for_status()
            return

        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.webhook_url, json=body)
            response.raise_for_status()


def reservation_payload(reservation, **extra: Any) -> dict[str, Any]:
    """Event payload describing a reservation."""
    payload = {
        "reservation_id": reservation.id,
        "provider_id": reservation.provider_id,
        "subject_id": reservation.subject_id,
        "linked_entity_id": reservation.linked_entity_id,
        "entity_type": reservation.entity_type.value,
        "slot_date": reservation.slot_date.isoformat(),
        "start_time": reservation.start_time.strftime("%H:%M"),
        "end_time": reservation.end_time.strftime("%H:%M"),
        "status": reservation.status.value,
    }
    payload.update(extra)
    return payload
