"""Idempotency guard - brackets every externally-triggered entitlement operation.

Records which inbound events (receipts, provider notifications) have already
produced their effect so replays are no-ops.
"""

from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.idempotency import IdempotencyRecord
from iap_entitlements.repositories.idempotency_store import (
    DuplicateIdempotencyKeyError,
    IdempotencyStore,
)
from iap_entitlements.services.clock import MILLIS_PER_DAY, Clock

logger = get_logger(__name__)


class IdempotencyStorageError(Exception):
    """Raised when the processed-event storage cannot be read."""

    pass


class IdempotencyGuard:
    """At-most-once bookkeeping for inbound events.

    ``is_processed`` fails the request when storage is unreadable rather than
    risk a duplicate billing effect. ``mark_processed`` never raises: the
    guarded effect has already committed, so a failed commit only widens the
    window in which an identical event is reprocessed.
    """

    def __init__(self, store: IdempotencyStore, clock: Clock, retention_days: int = 30):
        self._store = store
        self._clock = clock
        self.retention_days = retention_days

    def is_processed(self, key: str) -> bool:
        """Check whether the event identified by ``key`` was already applied.

        Raises:
            IdempotencyStorageError: If the store cannot be queried
        """
        try:
            record = self._store.find(key)
        except Exception as e:
            logger.error(
                "idempotency_check_failed",
                token=key,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise IdempotencyStorageError(f"Failed to check idempotency status for event: {e}") from e

        if record is not None:
            logger.info("idempotency_key_found", token=key)
            return True
        return False

    def mark_processed(self, key: str) -> bool:
        """Record the event as applied.

        Returns:
            True if a new record was written, False if the key already existed
            or the write failed
        """
        record = IdempotencyRecord(id=key, created_at_millis=self._clock.now_millis())
        try:
            self._store.insert(record)
        except DuplicateIdempotencyKeyError:
            logger.info("idempotency_key_already_recorded", token=key)
            return False
        except Exception as e:
            logger.error(
                "idempotency_commit_failed",
                token=key,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return False

        logger.info("idempotency_key_recorded", token=key)
        return True

    def prune_expired(self) -> int:
        """Delete records older than the retention window.

        A pruned key only permits reprocessing, which the full-record
        upserts downstream make safe.

        Returns:
            Number of records pruned
        """
        cutoff = self._clock.now_millis() - self.retention_days * MILLIS_PER_DAY
        pruned = self._store.delete_older_than(cutoff)
        logger.info(
            "idempotency_records_pruned",
            pruned=pruned,
            retention_days=self.retention_days,
        )
        return pruned
