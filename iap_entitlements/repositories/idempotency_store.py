"""Idempotency store - processed-event records keyed by event ID.

Inserts are conditional on the key not existing, which rejects a second
concurrent insert of the same event.
"""

import threading
from typing import Dict, Optional

from iap_entitlements.models.idempotency import IdempotencyRecord


class DuplicateIdempotencyKeyError(Exception):
    """Raised when inserting a key that is already recorded."""

    def __init__(self, key: str):
        super().__init__(f"Idempotency key already recorded: {key}")
        self.key = key


class IdempotencyStore:
    """Thread-safe in-memory idempotency record storage."""

    def __init__(self):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = threading.RLock()

    def find(self, key: str) -> Optional[IdempotencyRecord]:
        """Find a record by key (None if not found)."""
        with self._lock:
            return self._records.get(key)

    def insert(self, record: IdempotencyRecord) -> None:
        """Insert a record if its key is new.

        Raises:
            DuplicateIdempotencyKeyError: If the key already exists
        """
        with self._lock:
            if record.id in self._records:
                raise DuplicateIdempotencyKeyError(record.id)
            self._records[record.id] = record

    def delete_older_than(self, cutoff_millis: int) -> int:
        """Delete records created before the cutoff.

        Returns:
            Number of records deleted
        """
        with self._lock:
            stale = [k for k, r in self._records.items() if r.created_at_millis < cutoff_millis]
            for key in stale:
                del self._records[key]
            return len(stale)

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __contains__(self, key: str) -> bool:
        return self.find(key) is not None
