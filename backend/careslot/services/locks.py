"""
Keyed locks for serializing reservation writes.

Writes are serialized per (provider_id, slot_date) key only, so bookings for
different providers or different days never contend. A lock that cannot be
acquired within the configured timeout fails fast with LockTimeoutError.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Generator, Hashable, Iterable, Optional

from ..core.config import settings
from ..core.exceptions import LockTimeoutError


logger = logging.getLogger(__name__)


def slot_key(provider_id: str, slot_date: date) -> tuple[str, str]:
    """Serialization key of a provider's day."""
    return (provider_id, slot_date.isoformat())


class KeyedLockRegistry:
    """
    Lock per key, alive only while some caller holds or waits for it.

    Multi-key holds acquire keys in sorted order so two callers needing the
    same pair of days (a reschedule across dates) cannot deadlock.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of callers holding or waiting for it]
        self._locks: dict[Hashable, list] = {}

    def active_key_count(self) -> int:
        """Keys currently held or waited on."""
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
            return entry[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            entry = self._locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(
        self,
        keys: Iterable[tuple[str, str]],
        timeout: Optional[float] = None
    ) -> Generator[None, None, None]:
        """Hold every lock in `keys` for the duration of the block."""
        if timeout is None:
            timeout = settings.booking_lock_timeout_seconds

        acquired: list[tuple[Hashable, threading.Lock]] = []
        try:
            for key in sorted(set(keys)):
                lock = self._checkout(key)
                if not lock.acquire(timeout=timeout):
                    self._checkin(key)
                    logger.error(
                        f"Lock timeout after {timeout}s for provider {key[0]} on {key[1]}"
                    )
                    raise LockTimeoutError(
                        provider_id=key[0],
                        slot_date=key[1],
                        timeout_seconds=timeout
                    )
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


_registry: Optional[KeyedLockRegistry] = None


def get_lock_registry() -> KeyedLockRegistry:
    """Get the process-wide lock registry."""
    global _registry
    if _registry is None:
        _registry = KeyedLockRegistry()
    return _registry
