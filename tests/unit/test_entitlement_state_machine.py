"""Unit tests for EntitlementStateMachine."""

from unittest.mock import MagicMock

import pytest

from iap_entitlements.models import (
    AccessTier,
    CanonicalNotification,
    EventKind,
    NotificationOutcome,
    PurchaseTransaction,
    StoreProvider,
    SubscriptionRecord,
    SubscriptionStatus,
    User,
    VerificationResult,
)
from iap_entitlements.providers.base import (
    InvalidPurchaseError,
    ProviderUnavailableError,
    ProviderVerifier,
    UnconfiguredVerifier,
    UnsupportedProviderError,
    VerifierRegistry,
)
from iap_entitlements.config import ConfigurationError
from iap_entitlements.repositories.idempotency_store import IdempotencyStore
from iap_entitlements.repositories.subscription_store import DuplicateLineageError, SubscriptionStore
from iap_entitlements.repositories.user_store import UserStore
from iap_entitlements.services.clock import MILLIS_PER_DAY, VirtualClock
from iap_entitlements.services.entitlement_state_machine import (
    TRANSITIONS,
    EntitlementStateMachine,
    ExpiryUndeterminedError,
)
from iap_entitlements.services.idempotency_guard import IdempotencyGuard, IdempotencyStorageError

NOW = 1_700_000_000_000


def make_verifier(provider: StoreProvider, refresh_on_notification: bool = False) -> MagicMock:
    verifier = MagicMock(spec=ProviderVerifier)
    verifier.provider = provider
    verifier.refresh_on_notification = refresh_on_notification
    verifier.is_configured = True
    return verifier


@pytest.fixture
def clock():
    return VirtualClock(start_millis=NOW)


@pytest.fixture
def subscription_store():
    store = SubscriptionStore()
    yield store
    store.clear()


@pytest.fixture
def user_store():
    store = UserStore()
    store.add(User(id="user-a"))
    store.add(User(id="user-b"))
    yield store
    store.clear()


@pytest.fixture
def idempotency_store():
    return IdempotencyStore()


@pytest.fixture
def apple_verifier():
    verifier = make_verifier(StoreProvider.APPLE)
    verifier.verify_purchase.return_value = VerificationResult(
        lineage_id="lineage-1",
        expires_at_millis=NOW + 30 * MILLIS_PER_DAY,
        will_auto_renew=True,
    )
    return verifier


@pytest.fixture
def google_verifier():
    return make_verifier(StoreProvider.GOOGLE, refresh_on_notification=True)


@pytest.fixture
def engine(subscription_store, user_store, idempotency_store, clock, apple_verifier, google_verifier):
    guard = IdempotencyGuard(idempotency_store, clock)
    registry = VerifierRegistry([apple_verifier, google_verifier])
    return EntitlementStateMachine(
        subscription_store=subscription_store,
        user_store=user_store,
        idempotency_guard=guard,
        verifiers=registry,
        clock=clock,
    )


def apple_purchase(receipt: str = "receipt-1") -> PurchaseTransaction:
    return PurchaseTransaction(provider=StoreProvider.APPLE, provider_receipt=receipt, plan_id="premium.monthly")


def seed_record(store: SubscriptionStore, user_id: str, lineage_id: str = "lineage-1", **overrides) -> SubscriptionRecord:
    fields = dict(
        id=f"rec-{lineage_id}",
        user_id=user_id,
        tier=AccessTier.PREMIUM,
        status=SubscriptionStatus.ACTIVE,
        provider=StoreProvider.APPLE,
        valid_until_millis=NOW + 10 * MILLIS_PER_DAY,
        will_auto_renew=True,
        lineage_id=lineage_id,
    )
    fields.update(overrides)
    return store.create(SubscriptionRecord(**fields))


def notification(kind: EventKind, notification_id: str = "n-1", **fields) -> CanonicalNotification:
    values = dict(
        provider=StoreProvider.APPLE,
        notification_id=notification_id,
        event_kind=kind,
        lineage_id="lineage-1",
    )
    values.update(fields)
    return CanonicalNotification(**values)


class TestVerifyAndProcessPurchase:
    """Tests for purchase verification (client-submitted receipts)."""

    def test_new_purchase_creates_active_record_and_upgrades(self, engine, user_store, subscription_store):
        """Test first verification creates a record and upgrades the user."""
        user = user_store.get("user-a")

        record = engine.verify_and_process_purchase(user, apple_purchase())

        assert record.user_id == "user-a"
        assert record.lineage_id == "lineage-1"
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.tier == AccessTier.PREMIUM
        assert record.valid_until_millis == NOW + 30 * MILLIS_PER_DAY
        assert subscription_store.count() == 1
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_replay_is_idempotent(self, engine, user_store, subscription_store, apple_verifier):
        """Test same receipt twice makes at most one provider call."""
        user = user_store.get("user-a")

        first = engine.verify_and_process_purchase(user, apple_purchase())
        second = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert apple_verifier.verify_purchase.call_count == 1
        assert first == second
        assert subscription_store.count() == 1
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_expired_receipt_does_not_upgrade(self, engine, user_store, apple_verifier):
        """Test receipt with past expiry creates an expired record and leaves the tier."""
        apple_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="lineage-1",
            expires_at_millis=NOW - MILLIS_PER_DAY,
            will_auto_renew=False,
        )

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert record.status == SubscriptionStatus.EXPIRED
        assert user_store.get("user-a").tier == AccessTier.STANDARD

    def test_expiry_equal_to_now_is_expired(self, engine, user_store, apple_verifier):
        """Test the expiry boundary is exclusive."""
        apple_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="lineage-1", expires_at_millis=NOW
        )

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert record.status == SubscriptionStatus.EXPIRED

    def test_expired_receipt_does_not_downgrade_premium_user(self, engine, user_store, apple_verifier):
        """Test there is no symmetric downgrade on the verification path."""
        user = user_store.get("user-a")
        user.tier = AccessTier.PREMIUM
        user_store.update(user)
        apple_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="lineage-1", expires_at_millis=NOW - 1
        )

        engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_missing_expiry_raises_and_writes_nothing(
        self, engine, user_store, subscription_store, idempotency_store, apple_verifier
    ):
        """Test provider answer without expiry fails without side effects."""
        apple_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="lineage-1", expires_at_millis=None
        )

        with pytest.raises(ExpiryUndeterminedError):
            engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert subscription_store.count() == 0
        assert idempotency_store.count() == 0
        assert user_store.get("user-a").tier == AccessTier.STANDARD

    def test_renewal_updates_same_record(self, engine, user_store, subscription_store, apple_verifier):
        """Test a new receipt for the same lineage updates, never re-creates."""
        first = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase("receipt-1"))

        apple_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="lineage-1",
            expires_at_millis=NOW + 60 * MILLIS_PER_DAY,
            will_auto_renew=False,
        )
        second = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase("receipt-2"))

        assert second.id == first.id
        assert second.valid_until_millis == NOW + 60 * MILLIS_PER_DAY
        assert second.will_auto_renew is False
        assert subscription_store.count() == 1

    def test_new_lineage_gets_its_own_record(self, engine, user_store, subscription_store, apple_verifier):
        """Test a second lineage for the same user is created alongside the first."""
        existing = seed_record(subscription_store, "user-a", lineage_id="old-lineage", valid_until_millis=NOW + 60 * MILLIS_PER_DAY)

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert record.id != existing.id
        assert record.lineage_id == "lineage-1"
        assert subscription_store.find_by_lineage_id("old-lineage").id == existing.id
        assert subscription_store.count() == 2

    def test_expiry_of_new_lineage_keeps_older_paid_lineage(self, engine, user_store, subscription_store):
        """Test both lineages keep receiving notifications after a second purchase."""
        seed_record(subscription_store, "user-a", lineage_id="old-lineage", valid_until_millis=NOW + 60 * MILLIS_PER_DAY)
        engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        engine.handle_provider_notification(notification(EventKind.EXPIRED, notification_id="n-expire"))
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

        outcome = engine.handle_provider_notification(
            notification(EventKind.RENEWED, notification_id="n-renew", lineage_id="old-lineage")
        )
        assert outcome == NotificationOutcome.APPLIED
        assert subscription_store.find_by_lineage_id("lineage-1").status == SubscriptionStatus.EXPIRED

    def test_transfer_between_users(self, engine, user_store, subscription_store):
        """Test restoring a purchase on another account moves the entitlement."""
        seed_record(subscription_store, "user-a")
        user_a = user_store.get("user-a")
        user_a.tier = AccessTier.PREMIUM
        user_store.update(user_a)

        record = engine.verify_and_process_purchase(user_store.get("user-b"), apple_purchase())

        assert record.user_id == "user-b"
        assert user_store.get("user-a").tier == AccessTier.STANDARD
        assert user_store.get("user-b").tier == AccessTier.PREMIUM
        assert subscription_store.count() == 1
        assert subscription_store.find_by_lineage_id("lineage-1").user_id == "user-b"

    def test_idempotent_hit_without_record_reverifies(
        self, engine, user_store, idempotency_store, apple_verifier
    ):
        """Test an inconsistent idempotency hit falls through to verification."""
        engine.guard.mark_processed("receipt-1")

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert apple_verifier.verify_purchase.call_count == 1
        assert record.user_id == "user-a"

    def test_provider_unavailable_leaves_no_trace(
        self, engine, user_store, subscription_store, idempotency_store, apple_verifier
    ):
        """Test transient provider failure propagates with no writes."""
        apple_verifier.verify_purchase.side_effect = ProviderUnavailableError("timeout")

        with pytest.raises(ProviderUnavailableError):
            engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert subscription_store.count() == 0
        assert idempotency_store.count() == 0

    def test_invalid_purchase_propagates(self, engine, user_store, apple_verifier):
        """Test provider rejection surfaces as InvalidPurchaseError."""
        apple_verifier.verify_purchase.side_effect = InvalidPurchaseError("unknown receipt")

        with pytest.raises(InvalidPurchaseError):
            engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

    def test_unsupported_provider(self, engine, user_store):
        """Test a provider without a registered verifier is rejected."""
        transaction = PurchaseTransaction(
            provider=StoreProvider.STRIPE, provider_receipt="sub_123", plan_id="price_1"
        )

        with pytest.raises(UnsupportedProviderError):
            engine.verify_and_process_purchase(user_store.get("user-a"), transaction)

    def test_unconfigured_provider_raises_configuration_error(self, engine, user_store):
        """Test an unconfigured provider fails loudly."""
        engine.verifiers.register(UnconfiguredVerifier(StoreProvider.STRIPE, "missing secret_key"))
        transaction = PurchaseTransaction(
            provider=StoreProvider.STRIPE, provider_receipt="sub_123", plan_id="price_1"
        )

        with pytest.raises(ConfigurationError, match="missing secret_key"):
            engine.verify_and_process_purchase(user_store.get("user-a"), transaction)

    def test_idempotency_storage_failure_fails_request(self, engine, user_store, idempotency_store, apple_verifier):
        """Test unreadable idempotency storage blocks processing."""
        idempotency_store.find = MagicMock(side_effect=RuntimeError("db down"))

        with pytest.raises(IdempotencyStorageError):
            engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        apple_verifier.verify_purchase.assert_not_called()

    def test_idempotency_commit_failure_is_swallowed(self, engine, user_store, idempotency_store):
        """Test a failed idempotency commit does not fail the request."""
        idempotency_store.insert = MagicMock(side_effect=RuntimeError("db down"))

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert record.status == SubscriptionStatus.ACTIVE
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_concurrent_create_conflict_retries_as_update(self, engine, user_store, subscription_store):
        """Test losing the unique-lineage race re-reads and updates the winner's record."""
        original_create = subscription_store.create

        def racing_create(record):
            # Another request for the same user commits the lineage first
            original_create(record.model_copy(update={"id": "winner"}))
            raise DuplicateLineageError(record.lineage_id)

        subscription_store.create = racing_create

        record = engine.verify_and_process_purchase(user_store.get("user-a"), apple_purchase())

        assert record.id == "winner"
        assert subscription_store.count() == 1


class TestTransferSubscription:
    """Tests for moving a lineage between accounts."""

    def test_missing_previous_owner_still_transfers(self, engine, user_store, subscription_store):
        """Test a deleted previous owner does not block the transfer."""
        record = seed_record(subscription_store, "deleted-user")

        moved = engine.transfer_subscription(record, user_store.get("user-b"))

        assert moved.user_id == "user-b"
        assert moved.tier == AccessTier.PREMIUM

    def test_downgrade_failure_aborts_transfer(self, engine, user_store, subscription_store):
        """Test the transfer fails closed when the previous owner cannot be downgraded."""
        record = seed_record(subscription_store, "user-a")
        user_a = user_store.get("user-a")
        user_a.tier = AccessTier.PREMIUM
        user_store.update(user_a)
        user_store.update = MagicMock(side_effect=RuntimeError("write failed"))

        with pytest.raises(RuntimeError, match="write failed"):
            engine.transfer_subscription(record, user_store.get("user-b"))

        assert subscription_store.find_by_lineage_id("lineage-1").user_id == "user-a"

    def test_does_not_upgrade_new_owner(self, engine, user_store, subscription_store):
        """Test transfer leaves the new owner's tier to the caller."""
        record = seed_record(subscription_store, "user-a")

        engine.transfer_subscription(record, user_store.get("user-b"))

        assert user_store.get("user-b").tier == AccessTier.STANDARD

    def test_previous_owner_with_other_entitlement_keeps_premium(self, engine, user_store, subscription_store):
        """Test the downgrade only happens when the net outcome loses access."""
        record = seed_record(subscription_store, "user-a")
        seed_record(subscription_store, "user-a", lineage_id="lineage-2")
        user_a = user_store.get("user-a")
        user_a.tier = AccessTier.PREMIUM
        user_store.update(user_a)

        engine.transfer_subscription(record, user_store.get("user-b"))

        assert user_store.get("user-a").tier == AccessTier.PREMIUM


class TestHandleProviderNotification:
    """Tests for webhook-driven transitions."""

    @pytest.fixture
    def premium_owner(self, user_store, subscription_store):
        seed_record(subscription_store, "user-a")
        user = user_store.get("user-a")
        user.tier = AccessTier.PREMIUM
        user_store.update(user)
        return user

    def test_transition_table_covers_every_event_kind(self):
        """Test every event kind has a transition."""
        assert set(TRANSITIONS) == set(EventKind)

    def test_renewal_extends_validity(self, engine, subscription_store, premium_owner):
        """Test renewed moves valid_until and keeps premium."""
        new_expiry = NOW + 40 * MILLIS_PER_DAY

        outcome = engine.handle_provider_notification(
            notification(EventKind.RENEWED, expires_at_millis=new_expiry)
        )

        record = subscription_store.find_by_lineage_id("lineage-1")
        assert outcome == NotificationOutcome.APPLIED
        assert record.valid_until_millis == new_expiry
        assert record.status == SubscriptionStatus.ACTIVE

    def test_newly_subscribed_reactivates_and_upgrades(self, engine, user_store, subscription_store):
        """Test newly_subscribed on an expired record upgrades the owner."""
        seed_record(subscription_store, "user-a", status=SubscriptionStatus.EXPIRED, will_auto_renew=False)

        engine.handle_provider_notification(
            notification(EventKind.NEWLY_SUBSCRIBED, expires_at_millis=NOW + MILLIS_PER_DAY, will_auto_renew=True)
        )

        record = subscription_store.find_by_lineage_id("lineage-1")
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.will_auto_renew is True
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    @pytest.mark.parametrize(
        "kind",
        [EventKind.EXPIRED, EventKind.RENEWAL_FAILED, EventKind.GRACE_PERIOD_EXPIRED, EventKind.REVOKED],
    )
    def test_loss_of_access_downgrades(self, engine, user_store, subscription_store, premium_owner, kind):
        """Test expiry-like events expire the record and downgrade the owner."""
        engine.handle_provider_notification(notification(kind))

        record = subscription_store.find_by_lineage_id("lineage-1")
        assert record.status == SubscriptionStatus.EXPIRED
        assert record.will_auto_renew is False
        assert user_store.get("user-a").tier == AccessTier.STANDARD

    def test_revocation_collapses_to_expired(self, engine, user_store, subscription_store, premium_owner):
        """Test a revoked purchase is stored as expired, not as a separate status."""
        outcome = engine.handle_provider_notification(notification(EventKind.REVOKED))

        record = subscription_store.find_by_lineage_id("lineage-1")
        assert outcome == NotificationOutcome.APPLIED
        assert record.status == SubscriptionStatus.EXPIRED
        assert record.status != SubscriptionStatus.REVOKED

    def test_expiry_keeps_premium_with_other_active_record(self, engine, user_store, subscription_store, premium_owner):
        """Test a user with another active lineage is not downgraded."""
        seed_record(subscription_store, "user-a", lineage_id="lineage-2")

        engine.handle_provider_notification(notification(EventKind.EXPIRED))

        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_toggle_off_only_changes_auto_renew(self, engine, user_store, subscription_store, premium_owner):
        """Test renewal_toggled_off touches nothing but will_auto_renew."""
        before = subscription_store.find_by_lineage_id("lineage-1")

        engine.handle_provider_notification(notification(EventKind.RENEWAL_TOGGLED_OFF))

        after = subscription_store.find_by_lineage_id("lineage-1")
        assert after.will_auto_renew is False
        assert after.status == before.status
        assert after.valid_until_millis == before.valid_until_millis
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_toggle_on(self, engine, subscription_store):
        """Test renewal_toggled_on re-enables auto renew."""
        seed_record(subscription_store, "user-a", will_auto_renew=False)

        engine.handle_provider_notification(notification(EventKind.RENEWAL_TOGGLED_ON))

        assert subscription_store.find_by_lineage_id("lineage-1").will_auto_renew is True

    def test_duplicate_notification_is_noop(self, engine, user_store, subscription_store, premium_owner):
        """Test a replayed notification has no further effect."""
        first = engine.handle_provider_notification(notification(EventKind.EXPIRED))
        user_a = user_store.get("user-a")
        user_a.tier = AccessTier.PREMIUM
        user_store.update(user_a)

        second = engine.handle_provider_notification(notification(EventKind.EXPIRED))

        assert first == NotificationOutcome.APPLIED
        assert second == NotificationOutcome.DUPLICATE
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_unknown_lineage_writes_nothing(self, engine, idempotency_store, subscription_store):
        """Test an unmatched lineage is reported without recording the key."""
        outcome = engine.handle_provider_notification(
            notification(EventKind.RENEWED, lineage_id="unknown-lineage")
        )

        assert outcome == NotificationOutcome.UNMATCHED
        assert idempotency_store.count() == 0
        assert subscription_store.count() == 0

    def test_unrecognized_is_ignored_but_recorded(self, engine, idempotency_store, subscription_store, premium_owner):
        """Test unrecognized kinds change nothing but are not reprocessed."""
        before = subscription_store.find_by_lineage_id("lineage-1")

        outcome = engine.handle_provider_notification(
            notification(EventKind.UNRECOGNIZED, raw_type="PRICE_INCREASE")
        )

        assert outcome == NotificationOutcome.IGNORED
        assert subscription_store.find_by_lineage_id("lineage-1") == before
        assert "n-1" in idempotency_store

    def test_missing_owner_updates_record_only(self, engine, subscription_store):
        """Test a record whose owner no longer exists is still updated."""
        seed_record(subscription_store, "deleted-user")

        outcome = engine.handle_provider_notification(notification(EventKind.EXPIRED))

        assert outcome == NotificationOutcome.APPLIED
        assert subscription_store.find_by_lineage_id("lineage-1").status == SubscriptionStatus.EXPIRED

    def test_unchanged_entities_are_not_written(self, engine, subscription_store, user_store, premium_owner):
        """Test only changed entities are persisted."""
        subscription_store.update = MagicMock(wraps=subscription_store.update)
        user_store.update = MagicMock(wraps=user_store.update)

        engine.handle_provider_notification(notification(EventKind.RENEWAL_TOGGLED_ON))

        subscription_store.update.assert_not_called()
        user_store.update.assert_not_called()

    def test_refresh_uses_authoritative_provider_state(self, engine, subscription_store, google_verifier):
        """Test providers flagged for refresh are re-verified before applying."""
        seed_record(
            subscription_store,
            "user-a",
            lineage_id="token-1",
            provider=StoreProvider.GOOGLE,
            status=SubscriptionStatus.EXPIRED,
        )
        google_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="token-1",
            expires_at_millis=NOW + 31 * MILLIS_PER_DAY,
            will_auto_renew=True,
        )

        engine.handle_provider_notification(
            CanonicalNotification(
                provider=StoreProvider.GOOGLE,
                notification_id="1700000000000_token-1",
                event_kind=EventKind.RENEWED,
                lineage_id="token-1",
                plan_id="premium.monthly",
            )
        )

        google_verifier.verify_purchase.assert_called_once_with("token-1", "premium.monthly")
        record = subscription_store.find_by_lineage_id("token-1")
        assert record.valid_until_millis == NOW + 31 * MILLIS_PER_DAY
        assert record.status == SubscriptionStatus.ACTIVE

    def test_redelivered_renewal_skips_provider_call(self, engine, user_store, subscription_store, google_verifier):
        """Test a replayed Google renewal neither re-fetches nor changes anything."""
        seed_record(
            subscription_store,
            "user-a",
            lineage_id="token-1",
            provider=StoreProvider.GOOGLE,
            status=SubscriptionStatus.EXPIRED,
            valid_until_millis=NOW - MILLIS_PER_DAY,
        )
        google_verifier.verify_purchase.return_value = VerificationResult(
            lineage_id="token-1",
            expires_at_millis=NOW + 30 * MILLIS_PER_DAY,
            will_auto_renew=True,
        )
        renewal = CanonicalNotification(
            provider=StoreProvider.GOOGLE,
            notification_id="1700000000000_token-1",
            event_kind=EventKind.RENEWED,
            lineage_id="token-1",
        )

        assert engine.handle_provider_notification(renewal) == NotificationOutcome.APPLIED
        after_first = subscription_store.find_by_lineage_id("token-1")
        assert after_first.status == SubscriptionStatus.ACTIVE
        assert after_first.valid_until_millis == NOW + 30 * MILLIS_PER_DAY
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

        assert engine.handle_provider_notification(renewal) == NotificationOutcome.DUPLICATE
        assert google_verifier.verify_purchase.call_count == 1
        assert subscription_store.find_by_lineage_id("token-1") == after_first
        assert user_store.get("user-a").tier == AccessTier.PREMIUM

    def test_refresh_failure_propagates_without_recording(self, engine, idempotency_store, google_verifier):
        """Test a failed re-fetch leaves the notification retryable."""
        google_verifier.verify_purchase.side_effect = ProviderUnavailableError("503")

        with pytest.raises(ProviderUnavailableError):
            engine.handle_provider_notification(
                CanonicalNotification(
                    provider=StoreProvider.GOOGLE,
                    notification_id="n-google",
                    event_kind=EventKind.RENEWED,
                    lineage_id="token-1",
                )
            )

        assert idempotency_store.count() == 0
