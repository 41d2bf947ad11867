"""Entitlement store - in-memory storage for subscription records.

Enforces the one-record-per-lineage invariant and supports lookup by
owning user and by lineage (original transaction) ID.
"""

import threading
from typing import Dict, List, Optional

from iap_entitlements.models.subscription import SubscriptionRecord, SubscriptionStatus


class SubscriptionNotFoundError(Exception):
    """Raised when a subscription record is not found in the store."""

    pass


class DuplicateLineageError(Exception):
    """Raised when creating a second record for an existing lineage."""

    def __init__(self, lineage_id: str):
        super().__init__(f"Subscription for lineage '{lineage_id}' already exists")
        self.lineage_id = lineage_id


class SubscriptionStore:
    """In-memory storage for subscription records.

    Thread-safe. Records are copied on the way in and out, so a caller
    mutating a returned record never changes stored state until it calls
    ``update``. There is no multi-record transaction.
    """

    def __init__(self):
        """Initialize subscription store with empty storage."""
        self._records: Dict[str, SubscriptionRecord] = {}
        self._lineage_index: Dict[str, str] = {}
        self._lock = threading.RLock()

    def create(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert a new record.

        Args:
            record: SubscriptionRecord to store

        Returns:
            Copy of the stored record

        Raises:
            ValueError: If the record ID already exists
            DuplicateLineageError: If a record for the lineage already exists
        """
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Subscription with id '{record.id}' already exists")
            if record.lineage_id in self._lineage_index:
                raise DuplicateLineageError(record.lineage_id)
            self._records[record.id] = record.model_copy(deep=True)
            self._lineage_index[record.lineage_id] = record.id
            return record.model_copy(deep=True)

    def update(self, record_id: str, record: SubscriptionRecord) -> SubscriptionRecord:
        """Replace an existing record (full-record upsert of its fields).

        Args:
            record_id: ID of the record to replace
            record: New record contents

        Returns:
            Copy of the stored record

        Raises:
            SubscriptionNotFoundError: If record_id not found
            DuplicateLineageError: If the new lineage belongs to another record
        """
        with self._lock:
            existing = self._records.get(record_id)
            if existing is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {record_id}")

            owner_id = self._lineage_index.get(record.lineage_id)
            if owner_id is not None and owner_id != record_id:
                raise DuplicateLineageError(record.lineage_id)

            if existing.lineage_id != record.lineage_id:
                del self._lineage_index[existing.lineage_id]
            stored = record.model_copy(update={"id": record_id}, deep=True)
            self._records[record_id] = stored
            self._lineage_index[stored.lineage_id] = record_id
            return stored.model_copy(deep=True)

    def get(self, record_id: str) -> SubscriptionRecord:
        """Get a record by ID.

        Raises:
            SubscriptionNotFoundError: If record_id not found
        """
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise SubscriptionNotFoundError(f"Subscription not found: {record_id}")
            return record.model_copy(deep=True)

    def find_by_lineage_id(self, lineage_id: str) -> Optional[SubscriptionRecord]:
        """Find the record for a lineage regardless of owning user."""
        with self._lock:
            record_id = self._lineage_index.get(lineage_id)
            if record_id is None:
                return None
            return self._records[record_id].model_copy(deep=True)

    def find_all_by_user(self, user_id: str) -> List[SubscriptionRecord]:
        """Get all records currently owned by a user."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.user_id == user_id]

    def find_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Find the user's current record.

        A user normally owns one record; after a transfer onto an account
        that already had one, the record with the latest expiry wins.
        """
        records = self.find_all_by_user(user_id)
        if not records:
            return None
        return max(records, key=lambda r: r.valid_until_millis)

    def get_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        """Get all records in a status."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values() if r.status == status]

    def get_all(self) -> List[SubscriptionRecord]:
        """Get all records in the store."""
        with self._lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def count(self) -> int:
        """Get total number of records."""
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        """Clear all records.

        Warning: This removes all data. Use with caution.
        """
        with self._lock:
            self._records.clear()
            self._lineage_index.clear()

    def get_statistics(self) -> Dict[str, int]:
        """Get store statistics for the health endpoint."""
        with self._lock:
            records = list(self._records.values())
            return {
                "total_subscriptions": len(records),
                "unique_users": len(set(r.user_id for r in records)),
                "active": sum(1 for r in records if r.status == SubscriptionStatus.ACTIVE),
                "expired": sum(1 for r in records if r.status == SubscriptionStatus.EXPIRED),
                "revoked": sum(1 for r in records if r.status == SubscriptionStatus.REVOKED),
                "auto_renewing": sum(1 for r in records if r.will_auto_renew),
            }

    def __len__(self) -> int:
        return self.count()

    def __repr__(self) -> str:
        return f"SubscriptionStore(subscriptions={self.count()})"
