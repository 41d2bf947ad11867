"""Entitlement state machine.

Reconciles a user's access tier with the subscription state held by the
external payment providers.

Responsibilities:
- Verify client-submitted purchases against the provider (never trust the client)
- Upsert exactly one SubscriptionRecord per lineage
- Transfer a lineage between accounts (restore purchase on a new install)
- Apply provider notifications through a closed transition table
- Keep User.tier in line with the net entitlement outcome
"""

import uuid
from typing import Callable, Dict, Optional

from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.notifications import (
    CanonicalNotification,
    EventKind,
    NotificationOutcome,
    PurchaseTransaction,
    VerificationResult,
)
from iap_entitlements.models.subscription import (
    AccessTier,
    SubscriptionRecord,
    SubscriptionStatus,
)
from iap_entitlements.models.user import User
from iap_entitlements.providers.base import VerifierRegistry
from iap_entitlements.repositories.subscription_store import (
    DuplicateLineageError,
    SubscriptionStore,
)
from iap_entitlements.repositories.user_store import UserStore
from iap_entitlements.services.clock import Clock
from iap_entitlements.services.idempotency_guard import IdempotencyGuard

logger = get_logger(__name__)


class EntitlementError(Exception):
    """Base exception for entitlement processing errors."""

    pass


class ExpiryUndeterminedError(EntitlementError):
    """The provider verified a purchase but reported no expiry."""

    pass


# A transition mutates the record in place and returns the tier the owning
# user should hold afterwards, or None when the tier is unaffected.
Transition = Callable[[SubscriptionRecord, CanonicalNotification], Optional[AccessTier]]


def _activate(record: SubscriptionRecord, notification: CanonicalNotification) -> Optional[AccessTier]:
    reason = f"notification:{notification.event_kind.value}"
    record.set_status(SubscriptionStatus.ACTIVE, reason=reason)
    if notification.expires_at_millis is not None:
        record.set_valid_until(notification.expires_at_millis, reason=reason)
    if notification.will_auto_renew is not None:
        record.set_auto_renew(notification.will_auto_renew, reason=reason)
    return AccessTier.PREMIUM


def _expire(record: SubscriptionRecord, notification: CanonicalNotification) -> Optional[AccessTier]:
    reason = f"notification:{notification.event_kind.value}"
    record.set_status(SubscriptionStatus.EXPIRED, reason=reason)
    record.set_auto_renew(False, reason=reason)
    return AccessTier.STANDARD


def _renewal_on(record: SubscriptionRecord, notification: CanonicalNotification) -> Optional[AccessTier]:
    record.set_auto_renew(True, reason=f"notification:{notification.event_kind.value}")
    return None


def _renewal_off(record: SubscriptionRecord, notification: CanonicalNotification) -> Optional[AccessTier]:
    record.set_auto_renew(False, reason=f"notification:{notification.event_kind.value}")
    return None


def _ignore(record: SubscriptionRecord, notification: CanonicalNotification) -> Optional[AccessTier]:
    logger.info(
        "notification_type_ignored",
        provider=notification.provider.value,
        raw_type=notification.raw_type,
        notification_id=notification.notification_id,
    )
    return None


TRANSITIONS: Dict[EventKind, Transition] = {
    EventKind.RENEWED: _activate,
    EventKind.NEWLY_SUBSCRIBED: _activate,
    EventKind.EXPIRED: _expire,
    EventKind.RENEWAL_FAILED: _expire,
    EventKind.GRACE_PERIOD_EXPIRED: _expire,
    EventKind.REVOKED: _expire,
    EventKind.RENEWAL_TOGGLED_ON: _renewal_on,
    EventKind.RENEWAL_TOGGLED_OFF: _renewal_off,
    EventKind.UNRECOGNIZED: _ignore,
}

_missing_transitions = set(EventKind) - set(TRANSITIONS)
if _missing_transitions:
    raise RuntimeError(
        "No transition defined for event kinds: "
        + ", ".join(sorted(kind.value for kind in _missing_transitions))
    )


class EntitlementStateMachine:
    """Purchase verification, lineage transfer and notification handling.

    All collaborators are passed in; nothing is looked up globally.
    """

    def __init__(
        self,
        subscription_store: SubscriptionStore,
        user_store: UserStore,
        idempotency_guard: IdempotencyGuard,
        verifiers: VerifierRegistry,
        clock: Clock,
    ):
        self.subscriptions = subscription_store
        self.users = user_store
        self.guard = idempotency_guard
        self.verifiers = verifiers
        self.clock = clock

        logger.info("entitlement_state_machine_initialized", providers=verifiers.status())

    # Operation A

    def verify_and_process_purchase(
        self, user: User, transaction: PurchaseTransaction
    ) -> SubscriptionRecord:
        """Verify a client-submitted purchase and bring the user's entitlement up to date.

        Args:
            user: Authenticated account submitting the purchase
            transaction: Provider, opaque receipt and plan ID

        Returns:
            The persisted SubscriptionRecord

        Raises:
            IdempotencyStorageError: If the processed-event store is unreadable
            UnsupportedProviderError: If no verifier exists for the provider
            ProviderUnavailableError: On transient provider failure
            InvalidPurchaseError: If the provider rejects the receipt
            ProviderNotConfiguredError: If provider credentials are missing
            ExpiryUndeterminedError: If the provider reports no expiry
        """
        receipt = transaction.provider_receipt

        if self.guard.is_processed(receipt):
            existing = self.subscriptions.find_by_user(user.id)
            if existing is not None:
                logger.info(
                    "purchase_already_processed",
                    user_id=user.id,
                    record_id=existing.id,
                    provider=transaction.provider.value,
                )
                return existing
            logger.warning(
                "idempotency_inconsistent_state",
                user_id=user.id,
                provider=transaction.provider.value,
                token=receipt,
            )

        verifier = self.verifiers.get(transaction.provider)
        result = verifier.verify_purchase(receipt, transaction.plan_id)
        if result.expires_at_millis is None:
            logger.error(
                "purchase_expiry_undetermined",
                user_id=user.id,
                provider=transaction.provider.value,
                token=result.lineage_id,
            )
            raise ExpiryUndeterminedError(
                f"{transaction.provider.value} did not report an expiry for the purchase"
            )

        logger.info(
            "purchase_verified",
            user_id=user.id,
            provider=transaction.provider.value,
            plan_id=transaction.plan_id,
            token=result.lineage_id,
            expires_at_millis=result.expires_at_millis,
            will_auto_renew=result.will_auto_renew,
        )

        try:
            record = self._upsert_verified(user, transaction, result)
        except DuplicateLineageError:
            # A concurrent request created the lineage first; its record now wins
            logger.warning(
                "lineage_create_conflict",
                user_id=user.id,
                token=result.lineage_id,
            )
            record = self._upsert_verified(user, transaction, result)

        if record.status == SubscriptionStatus.ACTIVE and user.tier != AccessTier.PREMIUM:
            user.set_tier(AccessTier.PREMIUM, reason="purchase_verified")
            self.users.update(user)

        self.guard.mark_processed(receipt)
        return record

    def _upsert_verified(
        self, user: User, transaction: PurchaseTransaction, result: VerificationResult
    ) -> SubscriptionRecord:
        now = self.clock.now_millis()
        status = (
            SubscriptionStatus.ACTIVE
            if result.expires_at_millis > now
            else SubscriptionStatus.EXPIRED
        )

        record = self.subscriptions.find_by_lineage_id(result.lineage_id)
        if record is not None and record.user_id != user.id:
            record = self.transfer_subscription(record, user)

        if record is None:
            record = SubscriptionRecord(
                id=uuid.uuid4().hex,
                user_id=user.id,
                tier=AccessTier.PREMIUM,
                status=status,
                provider=transaction.provider,
                valid_until_millis=result.expires_at_millis,
                will_auto_renew=result.will_auto_renew,
                lineage_id=result.lineage_id,
            )
            created = self.subscriptions.create(record)
            logger.info(
                "subscription_created",
                record_id=created.id,
                user_id=user.id,
                provider=transaction.provider.value,
                status=status.value,
                token=result.lineage_id,
            )
            return created

        record.set_status(status, reason="purchase_verified")
        record.set_valid_until(result.expires_at_millis, reason="purchase_verified")
        record.set_auto_renew(result.will_auto_renew, reason="purchase_verified")
        record.tier = AccessTier.PREMIUM
        return self.subscriptions.update(record.id, record)

    # Operation B

    def transfer_subscription(self, old_record: SubscriptionRecord, new_user: User) -> SubscriptionRecord:
        """Move a lineage to another account, downgrading the previous owner first.

        The previous owner keeps premium only if another active record still
        entitles them. A failed downgrade aborts the transfer so that two
        accounts never share one paid subscription.

        Returns:
            The reassigned record

        Raises:
            Exception: Whatever the user store raised while downgrading
        """
        previous_owner_id = old_record.user_id
        previous_owner = self.users.find(previous_owner_id)

        if previous_owner is None:
            logger.warning(
                "previous_owner_missing",
                record_id=old_record.id,
                previous_user_id=previous_owner_id,
                new_user_id=new_user.id,
            )
        elif previous_owner.tier != AccessTier.STANDARD and not self._holds_other_entitlement(
            previous_owner_id, exclude_record_id=old_record.id
        ):
            try:
                previous_owner.set_tier(AccessTier.STANDARD, reason="subscription_transferred_out")
                self.users.update(previous_owner)
            except Exception as e:
                logger.error(
                    "transfer_aborted",
                    record_id=old_record.id,
                    previous_user_id=previous_owner_id,
                    new_user_id=new_user.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        old_record.reassign(new_user.id, reason="restore_purchase")
        old_record.tier = AccessTier.PREMIUM
        record = self.subscriptions.update(old_record.id, old_record)

        logger.info(
            "subscription_transferred",
            record_id=record.id,
            previous_user_id=previous_owner_id,
            new_user_id=new_user.id,
        )
        return record

    def _holds_other_entitlement(self, user_id: str, exclude_record_id: str) -> bool:
        now = self.clock.now_millis()
        return any(
            r.is_entitled(now)
            for r in self.subscriptions.find_all_by_user(user_id)
            if r.id != exclude_record_id
        )

    # Operation C

    def handle_provider_notification(self, notification: CanonicalNotification) -> NotificationOutcome:
        """Apply a decoded provider notification.

        Returns:
            NotificationOutcome describing what happened

        Raises:
            IdempotencyStorageError: If the processed-event store is unreadable
            ProviderError: If the authoritative re-fetch fails
            ProviderNotConfiguredError: If provider credentials are missing
        """
        key = notification.notification_id

        if self.guard.is_processed(key):
            logger.info(
                "notification_already_processed",
                provider=notification.provider.value,
                notification_id=key,
            )
            return NotificationOutcome.DUPLICATE

        verifier = self.verifiers.get(notification.provider)
        if verifier.refresh_on_notification:
            refreshed = verifier.verify_purchase(notification.lineage_id, notification.plan_id or "")
            notification = notification.model_copy(
                update={
                    "expires_at_millis": refreshed.expires_at_millis,
                    "will_auto_renew": refreshed.will_auto_renew,
                }
            )

        record = self.subscriptions.find_by_lineage_id(notification.lineage_id)
        if record is None:
            logger.warning(
                "lineage_not_found",
                provider=notification.provider.value,
                notification_id=key,
                event_kind=notification.event_kind.value,
                token=notification.lineage_id,
            )
            return NotificationOutcome.UNMATCHED

        user = self.users.find(record.user_id)
        if user is None:
            logger.warning(
                "notification_user_missing",
                record_id=record.id,
                user_id=record.user_id,
                notification_id=key,
            )

        before = record.model_copy(deep=True)
        target_tier = TRANSITIONS[notification.event_kind](record, notification)

        if record != before:
            self.subscriptions.update(record.id, record)

        if user is not None and target_tier is not None:
            if target_tier == AccessTier.STANDARD and self._holds_other_entitlement(
                user.id, exclude_record_id=record.id
            ):
                logger.info(
                    "downgrade_skipped_other_entitlement",
                    user_id=user.id,
                    record_id=record.id,
                )
            elif user.tier != target_tier:
                user.set_tier(target_tier, reason=f"notification:{notification.event_kind.value}")
                self.users.update(user)

        self.guard.mark_processed(key)

        if notification.event_kind == EventKind.UNRECOGNIZED:
            return NotificationOutcome.IGNORED

        logger.info(
            "notification_applied",
            provider=notification.provider.value,
            notification_id=key,
            event_kind=notification.event_kind.value,
            record_id=record.id,
        )
        return NotificationOutcome.APPLIED
