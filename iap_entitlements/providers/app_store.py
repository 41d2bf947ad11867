"""App Store verifier.

Talks to the App Store Server API and decodes App Store Server
Notifications v2. Signed payloads are read as unverified JWS claims; chain
verification of Apple's signing certificates is left to the edge.
"""

from typing import Any, Dict, List, Optional

import httpx
from jose import JWTError, jwt
from pydantic import ValidationError

from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.events import AppleNotificationPayload
from iap_entitlements.models.notifications import (
    CanonicalNotification,
    EventKind,
    VerificationResult,
)
from iap_entitlements.models.subscription import StoreProvider
from iap_entitlements.providers.base import (
    InvalidNotificationError,
    InvalidPurchaseError,
    ProviderNotConfiguredError,
    ProviderVerifier,
    parse_millis,
    send_provider_request,
)
from iap_entitlements.services.clock import Clock

logger = get_logger(__name__)

TOKEN_AUDIENCE = "appstoreconnect-v1"
TOKEN_LIFETIME_SECONDS = 20 * 60

NOTIFICATION_KINDS: Dict[str, EventKind] = {
    "DID_RENEW": EventKind.RENEWED,
    "SUBSCRIBED": EventKind.NEWLY_SUBSCRIBED,
    "EXPIRED": EventKind.EXPIRED,
    "DID_FAIL_TO_RENEW": EventKind.RENEWAL_FAILED,
    "GRACE_PERIOD_EXPIRED": EventKind.GRACE_PERIOD_EXPIRED,
    "REVOKE": EventKind.REVOKED,
    "REFUND": EventKind.REVOKED,
}

RENEWAL_STATUS_SUBTYPES: Dict[str, EventKind] = {
    "AUTO_RENEW_ENABLED": EventKind.RENEWAL_TOGGLED_ON,
    "AUTO_RENEW_DISABLED": EventKind.RENEWAL_TOGGLED_OFF,
}


def normalize_private_key(key: str) -> str:
    """Undo escaped newlines from single-line environment variables."""
    return key.replace("\\n", "\n").strip()


def decode_signed_claims(signed: str, what: str) -> Dict[str, Any]:
    """Read the payload of an Apple JWS without verifying its signature.

    Raises:
        InvalidNotificationError: If the value is not a decodable JWS
    """
    try:
        return jwt.get_unverified_claims(signed)
    except JWTError as e:
        raise InvalidNotificationError(f"Malformed {what}: {e}") from e


class AppStoreVerifier(ProviderVerifier):
    """App Store Server API verifier.

    Args:
        issuer_id: App Store Connect issuer ID
        key_id: In-App Purchase key ID
        bundle_id: App bundle identifier
        private_key: PEM encoded ES256 private key
        http_client: httpx client (its timeout bounds every call)
        clock: time source for token issuance
        base_url: App Store Server API base URL
    """

    provider = StoreProvider.APPLE

    def __init__(
        self,
        issuer_id: str,
        key_id: str,
        bundle_id: str,
        private_key: str,
        http_client: httpx.Client,
        clock: Clock,
        base_url: str = "https://api.storekit.itunes.apple.com/inApps/v1",
    ):
        self.issuer_id = issuer_id
        self.key_id = key_id
        self.bundle_id = bundle_id
        self._private_key = normalize_private_key(private_key)
        self._http = http_client
        self._clock = clock
        self._base_url = base_url.rstrip("/")

    def _bearer_token(self) -> str:
        now = self._clock.now_millis() // 1000
        claims = {
            "iss": self.issuer_id,
            "iat": now,
            "exp": now + TOKEN_LIFETIME_SECONDS,
            "aud": TOKEN_AUDIENCE,
            "bid": self.bundle_id,
        }
        try:
            return jwt.encode(
                claims,
                self._private_key,
                algorithm="ES256",
                headers={"kid": self.key_id, "typ": "JWT"},
            )
        except JWTError as e:
            raise ProviderNotConfiguredError(self.provider, f"cannot sign API token: {e}") from e

    def get_subscription_statuses(self, original_transaction_id: str) -> Dict[str, Any]:
        """Fetch all subscription statuses for a transaction lineage."""
        return send_provider_request(
            self._http,
            self.provider,
            "GET",
            f"{self._base_url}/subscriptions/{original_transaction_id}",
            headers={"Authorization": f"Bearer {self._bearer_token()}"},
        )

    def verify_purchase(self, receipt: str, plan_id: str) -> VerificationResult:
        """Verify by original transaction ID.

        The latest transaction for ``plan_id`` wins; when no transaction
        matches the product, the latest transaction in the lineage is used.
        """
        response = self.get_subscription_statuses(receipt)

        candidates: List[Dict[str, Any]] = []
        for group in response.get("data") or []:
            for item in group.get("lastTransactions") or []:
                try:
                    transaction = decode_signed_claims(item.get("signedTransactionInfo") or "", "signedTransactionInfo")
                    renewal = (
                        decode_signed_claims(item["signedRenewalInfo"], "signedRenewalInfo")
                        if item.get("signedRenewalInfo")
                        else {}
                    )
                except InvalidNotificationError as e:
                    raise InvalidPurchaseError(str(e)) from e
                candidates.append({"transaction": transaction, "renewal": renewal})

        if not candidates:
            logger.warning("apple_no_transactions", token=receipt, plan_id=plan_id)
            raise InvalidPurchaseError("App Store returned no transactions for the purchase")

        matching = [c for c in candidates if c["transaction"].get("productId") == plan_id] or candidates
        latest = max(matching, key=lambda c: parse_millis(c["transaction"].get("expiresDate")) or 0)
        transaction = latest["transaction"]

        lineage_id = str(transaction.get("originalTransactionId") or receipt)
        expires_at = parse_millis(transaction.get("expiresDate"))
        if expires_at is None:
            logger.warning("apple_expiry_missing", token=lineage_id, plan_id=plan_id)

        return VerificationResult(
            lineage_id=lineage_id,
            expires_at_millis=expires_at,
            will_auto_renew=latest["renewal"].get("autoRenewStatus") == 1,
        )

    def decode_notification(self, payload: Any) -> Optional[CanonicalNotification]:
        """Decode a ``{"signedPayload": ...}`` body or an already decoded payload."""
        if not isinstance(payload, dict):
            raise InvalidNotificationError("App Store notification body must be a JSON object")

        if "signedPayload" in payload:
            signed = payload["signedPayload"]
            if not isinstance(signed, str) or not signed:
                raise InvalidNotificationError("signedPayload must be a non-empty string")
            body = decode_signed_claims(signed, "signedPayload")
        else:
            body = payload

        try:
            notification = AppleNotificationPayload(**body)
        except ValidationError as e:
            raise InvalidNotificationError(f"Malformed App Store notification: {e}") from e

        signed_transaction = notification.data.signed_transaction_info
        if not signed_transaction:
            logger.info(
                "apple_notification_without_transaction",
                notification_type=notification.notification_type,
                notification_id=notification.notification_uuid,
            )
            return None

        transaction = decode_signed_claims(signed_transaction, "signedTransactionInfo")
        lineage_id = transaction.get("originalTransactionId")
        if not lineage_id:
            raise InvalidNotificationError("signedTransactionInfo has no originalTransactionId")

        will_auto_renew: Optional[bool] = None
        if notification.data.signed_renewal_info:
            renewal = decode_signed_claims(notification.data.signed_renewal_info, "signedRenewalInfo")
            if "autoRenewStatus" in renewal:
                will_auto_renew = renewal["autoRenewStatus"] == 1

        if notification.notification_type == "DID_CHANGE_RENEWAL_STATUS":
            event_kind = RENEWAL_STATUS_SUBTYPES.get(notification.subtype or "", EventKind.UNRECOGNIZED)
        else:
            event_kind = NOTIFICATION_KINDS.get(notification.notification_type, EventKind.UNRECOGNIZED)

        raw_type = notification.notification_type
        if notification.subtype:
            raw_type = f"{raw_type}:{notification.subtype}"

        return CanonicalNotification(
            provider=self.provider,
            notification_id=notification.notification_uuid,
            event_kind=event_kind,
            lineage_id=str(lineage_id),
            plan_id=transaction.get("productId"),
            expires_at_millis=parse_millis(transaction.get("expiresDate")),
            will_auto_renew=will_auto_renew,
            raw_type=raw_type,
        )
