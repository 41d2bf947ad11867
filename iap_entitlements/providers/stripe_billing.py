"""Stripe verifier.

Subscriptions are read from the Stripe REST API with the secret key; webhook
events are mapped by type. Stripe reports times in seconds.
"""

from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.events import StripeEvent
from iap_entitlements.models.notifications import (
    CanonicalNotification,
    EventKind,
    VerificationResult,
)
from iap_entitlements.models.subscription import StoreProvider
from iap_entitlements.providers.base import (
    InvalidNotificationError,
    ProviderVerifier,
    parse_millis,
    send_provider_request,
)

logger = get_logger(__name__)

EVENT_KINDS: Dict[str, EventKind] = {
    "customer.subscription.created": EventKind.NEWLY_SUBSCRIBED,
    "invoice.paid": EventKind.RENEWED,
    "invoice.payment_succeeded": EventKind.RENEWED,
    "invoice.payment_failed": EventKind.RENEWAL_FAILED,
    "customer.subscription.deleted": EventKind.EXPIRED,
}

# customer.subscription.updated statuses that end access; others fall back to the renewal toggle
LAPSED_STATUS_KINDS: Dict[str, EventKind] = {
    "past_due": EventKind.RENEWAL_FAILED,
    "unpaid": EventKind.RENEWAL_FAILED,
    "canceled": EventKind.EXPIRED,
    "incomplete_expired": EventKind.EXPIRED,
}


def seconds_to_millis(value: Any) -> Optional[int]:
    seconds = parse_millis(value)
    return seconds * 1000 if seconds is not None else None


def _subscription_id(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    if event_type.startswith("invoice."):
        subscription = obj.get("subscription")
        # Expanded invoices embed the subscription object
        if isinstance(subscription, dict):
            return subscription.get("id")
        return subscription
    if obj.get("object") == "subscription" or event_type.startswith("customer.subscription."):
        return obj.get("id")
    return None


class StripeVerifier(ProviderVerifier):
    """Stripe Billing verifier.

    Args:
        secret_key: Stripe secret API key
        http_client: httpx client (its timeout bounds every call)
        base_url: Stripe API base URL
    """

    provider = StoreProvider.STRIPE

    def __init__(
        self,
        secret_key: str,
        http_client: httpx.Client,
        base_url: str = "https://api.stripe.com/v1",
    ):
        self._secret_key = secret_key
        self._http = http_client
        self._base_url = base_url.rstrip("/")

    def verify_purchase(self, receipt: str, plan_id: str) -> VerificationResult:
        """Verify a subscription ID. The subscription ID is the lineage ID."""
        subscription = send_provider_request(
            self._http,
            self.provider,
            "GET",
            f"{self._base_url}/subscriptions/{receipt}",
            headers={"Authorization": f"Bearer {self._secret_key}"},
        )

        expires_at = seconds_to_millis(subscription.get("current_period_end"))
        if expires_at is None:
            logger.warning("stripe_expiry_missing", token=receipt, plan_id=plan_id)

        return VerificationResult(
            lineage_id=str(subscription.get("id") or receipt),
            expires_at_millis=expires_at,
            will_auto_renew=not subscription.get("cancel_at_period_end", False),
        )

    def decode_notification(self, payload: Any) -> Optional[CanonicalNotification]:
        if not isinstance(payload, dict):
            raise InvalidNotificationError("Stripe event body must be a JSON object")
        try:
            event = StripeEvent(**payload)
        except ValidationError as e:
            raise InvalidNotificationError(f"Malformed Stripe event: {e}") from e

        obj = event.data.get("object")
        if not isinstance(obj, dict):
            raise InvalidNotificationError("Stripe event has no data.object")

        lineage_id = _subscription_id(event.type, obj)
        if not lineage_id:
            logger.info("stripe_event_without_subscription", event_id=event.id, event_type=event.type)
            return None

        expires_at: Optional[int] = None
        will_auto_renew: Optional[bool] = None

        lapsed_kind = LAPSED_STATUS_KINDS.get(obj.get("status"))
        if event.type == "customer.subscription.updated" and lapsed_kind is not None:
            event_kind = lapsed_kind
            will_auto_renew = False
        elif event.type == "customer.subscription.updated":
            cancel = bool(obj.get("cancel_at_period_end", False))
            event_kind = EventKind.RENEWAL_TOGGLED_OFF if cancel else EventKind.RENEWAL_TOGGLED_ON
            will_auto_renew = not cancel
        else:
            event_kind = EVENT_KINDS.get(event.type, EventKind.UNRECOGNIZED)

        if obj.get("object") == "subscription":
            expires_at = seconds_to_millis(obj.get("current_period_end"))
        elif event.type.startswith("invoice."):
            lines = (obj.get("lines") or {}).get("data") or []
            period_ends = [seconds_to_millis((line.get("period") or {}).get("end")) for line in lines]
            period_ends = [end for end in period_ends if end is not None]
            if period_ends:
                expires_at = max(period_ends)

        plan = obj.get("plan") if isinstance(obj.get("plan"), dict) else {}

        return CanonicalNotification(
            provider=self.provider,
            notification_id=event.id,
            event_kind=event_kind,
            lineage_id=str(lineage_id),
            plan_id=plan.get("id"),
            expires_at_millis=expires_at,
            will_auto_renew=will_auto_renew,
            raw_type=event.type,
        )
