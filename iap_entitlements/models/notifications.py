"""Canonical, provider-agnostic request and notification shapes.

Every provider verifier translates its own wire format into these models
before the entitlement state machine sees them.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .subscription import StoreProvider


class EventKind(str, Enum):
    """Closed set of provider notification kinds with local meaning."""

    RENEWED = "renewed"
    NEWLY_SUBSCRIBED = "newly_subscribed"
    EXPIRED = "expired"
    RENEWAL_FAILED = "renewal_failed"
    REVOKED = "revoked"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    RENEWAL_TOGGLED_ON = "renewal_toggled_on"
    RENEWAL_TOGGLED_OFF = "renewal_toggled_off"
    UNRECOGNIZED = "unrecognized"  # provider type with no local effect


class NotificationOutcome(str, Enum):
    """Result of handling a provider notification."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


class PurchaseTransaction(BaseModel):
    """Client-submitted purchase verification request."""

    provider: StoreProvider = Field(..., description="Store that issued the purchase")
    provider_receipt: str = Field(
        ..., alias="providerReceipt", min_length=1, description="Opaque receipt or purchase token"
    )
    plan_id: str = Field(..., alias="planId", min_length=1, description="Store product/plan ID")

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "provider": "google",
                "providerReceipt": "opaque-purchase-token...",
                "planId": "premium.monthly",
            }
        }


class VerificationResult(BaseModel):
    """Canonical answer of a live provider verification."""

    lineage_id: str = Field(..., description="Renewal-invariant original transaction ID")
    expires_at_millis: Optional[int] = Field(None, description="Expiry reported by the provider")
    will_auto_renew: bool = Field(default=True, description="Whether the provider will renew")


class CanonicalNotification(BaseModel):
    """Normalized webhook payload produced by a provider verifier."""

    provider: StoreProvider = Field(..., description="Provider that sent the notification")
    notification_id: str = Field(..., description="Idempotency key of the notification")
    event_kind: EventKind = Field(..., description="Canonical event kind")
    lineage_id: str = Field(..., description="Lineage the notification refers to")
    plan_id: Optional[str] = Field(None, description="Store product ID, when the provider sends one")
    expires_at_millis: Optional[int] = Field(None, description="New expiry, if known")
    will_auto_renew: Optional[bool] = Field(None, description="New auto-renew flag, if known")
    raw_type: Optional[str] = Field(None, description="Provider-specific notification type")
