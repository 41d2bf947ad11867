"""Google Play verifier.

Verifies subscription purchase tokens with the Android Publisher API v3 and
decodes Real-time Developer Notifications (RTDN). RTDN messages are only a
signal: the state machine re-fetches authoritative state through
``verify_purchase`` before applying them.
"""

import base64
import binascii
import json
from typing import Any, Callable, Dict, Optional

import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account
from pydantic import ValidationError

from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.events import (
    GoogleDeveloperNotification,
    GoogleNotificationType,
    PubSubPushEnvelope,
)
from iap_entitlements.models.notifications import (
    CanonicalNotification,
    EventKind,
    VerificationResult,
)
from iap_entitlements.models.subscription import StoreProvider
from iap_entitlements.providers.base import (
    InvalidNotificationError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
    ProviderVerifier,
    parse_millis,
    send_provider_request,
)

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

NOTIFICATION_KINDS: Dict[GoogleNotificationType, EventKind] = {
    GoogleNotificationType.SUBSCRIPTION_RECOVERED: EventKind.RENEWED,
    GoogleNotificationType.SUBSCRIPTION_RENEWED: EventKind.RENEWED,
    GoogleNotificationType.SUBSCRIPTION_DEFERRED: EventKind.RENEWED,
    GoogleNotificationType.SUBSCRIPTION_PURCHASED: EventKind.NEWLY_SUBSCRIBED,
    GoogleNotificationType.SUBSCRIPTION_CANCELED: EventKind.RENEWAL_TOGGLED_OFF,
    GoogleNotificationType.SUBSCRIPTION_RESTARTED: EventKind.RENEWAL_TOGGLED_ON,
    GoogleNotificationType.SUBSCRIPTION_ON_HOLD: EventKind.RENEWAL_FAILED,
    GoogleNotificationType.SUBSCRIPTION_REVOKED: EventKind.REVOKED,
    GoogleNotificationType.SUBSCRIPTION_EXPIRED: EventKind.EXPIRED,
}


def service_account_token_provider(service_account_file: str) -> Callable[[], str]:
    """Build an access-token provider from a service account JSON file.

    The returned callable refreshes the OAuth token when it has expired.
    """
    credentials = service_account.Credentials.from_service_account_file(
        service_account_file, scopes=[ANDROID_PUBLISHER_SCOPE]
    )

    def provide() -> str:
        if not credentials.valid:
            credentials.refresh(GoogleAuthRequest())
        return credentials.token

    return provide


def _decode_rtdn_bytes(data: bytes) -> Dict[str, Any]:
    try:
        decoded = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidNotificationError(f"RTDN message is not valid JSON: {e}") from e
    if not isinstance(decoded, dict):
        raise InvalidNotificationError("RTDN message must be a JSON object")
    return decoded


class GooglePlayVerifier(ProviderVerifier):
    """Android Publisher API v3 verifier.

    Args:
        package_name: Android package name the purchases belong to
        token_provider: callable returning a valid OAuth access token
        http_client: httpx client (its timeout bounds every call)
        base_url: Android Publisher API base URL
    """

    provider = StoreProvider.GOOGLE
    refresh_on_notification = True

    def __init__(
        self,
        package_name: str,
        token_provider: Callable[[], str],
        http_client: httpx.Client,
        base_url: str = "https://androidpublisher.googleapis.com/androidpublisher/v3",
    ):
        self.package_name = package_name
        self._token_provider = token_provider
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    def _access_token(self) -> str:
        try:
            return self._token_provider()
        except google_auth_exceptions.TransportError as e:
            raise ProviderUnavailableError("Google OAuth endpoint is unreachable") from e
        except google_auth_exceptions.RefreshError as e:
            raise ProviderNotConfiguredError(self.provider, f"service account token refresh failed: {e}") from e

    def get_subscription(self, subscription_id: str, purchase_token: str) -> Dict[str, Any]:
        """Fetch the SubscriptionPurchase resource for a token."""
        url = (
            f"{self._base_url}/applications/{self.package_name}"
            f"/purchases/subscriptions/{subscription_id}/tokens/{purchase_token}"
        )
        return send_provider_request(
            self._http,
            self.provider,
            "GET",
            url,
            headers={"Authorization": f"Bearer {self._access_token()}"},
        )

    def verify_purchase(self, receipt: str, plan_id: str) -> VerificationResult:
        """Verify a purchase token. The token itself is the lineage ID."""
        response = self.get_subscription(subscription_id=plan_id, purchase_token=receipt)

        expires_at = parse_millis(response.get("expiryTimeMillis"))
        if expires_at is None:
            logger.warning(
                "google_expiry_missing",
                token=receipt,
                subscription_id=plan_id,
            )

        return VerificationResult(
            lineage_id=receipt,
            expires_at_millis=expires_at,
            will_auto_renew=bool(response.get("autoRenewing", False)),
        )

    def decode_notification(self, payload: Any) -> Optional[CanonicalNotification]:
        """Decode an RTDN delivered by Pub/Sub push, pull, or as raw JSON.

        Accepts a push envelope dict (``{"message": {"data": ...}}``), the
        raw bytes of a pulled message, or an already-decoded
        DeveloperNotification dict.
        """
        if isinstance(payload, (bytes, bytearray)):
            body = _decode_rtdn_bytes(bytes(payload))
        elif isinstance(payload, dict) and "message" in payload:
            try:
                envelope = PubSubPushEnvelope(**payload)
                raw = base64.b64decode(envelope.message.data, validate=True)
            except (ValidationError, binascii.Error) as e:
                raise InvalidNotificationError(f"Malformed Pub/Sub push envelope: {e}") from e
            body = _decode_rtdn_bytes(raw)
        elif isinstance(payload, dict):
            body = payload
        else:
            raise InvalidNotificationError(f"Unsupported RTDN payload type: {type(payload).__name__}")

        try:
            notification = GoogleDeveloperNotification(**body)
        except ValidationError as e:
            raise InvalidNotificationError(f"Malformed DeveloperNotification: {e}") from e

        details = notification.subscription_notification
        if details is None:
            logger.info(
                "google_notification_without_subscription",
                package_name=notification.package_name,
                is_test=notification.test_notification is not None,
            )
            return None

        try:
            notification_type = GoogleNotificationType(details.notification_type)
            raw_type = notification_type.name
            event_kind = NOTIFICATION_KINDS.get(notification_type, EventKind.UNRECOGNIZED)
        except ValueError:
            raw_type = str(details.notification_type)
            event_kind = EventKind.UNRECOGNIZED

        # RTDN carries no event ID, so the key is synthesized
        notification_id = f"{notification.event_time_millis}_{details.purchase_token}"

        return CanonicalNotification(
            provider=self.provider,
            notification_id=notification_id,
            event_kind=event_kind,
            lineage_id=details.purchase_token,
            plan_id=details.subscription_id,
            raw_type=raw_type,
        )
