"""Provider webhook payload models.

Only the fields the entitlement engine reads are modelled; everything else
in the provider bodies is ignored.
"""

from enum import IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class GoogleNotificationType(IntEnum):
    """RTDN subscription notification types matching Google Play values."""

    SUBSCRIPTION_RECOVERED = 1  # Recovered from account hold
    SUBSCRIPTION_RENEWED = 2
    SUBSCRIPTION_CANCELED = 3  # Voluntarily canceled, valid until expiry
    SUBSCRIPTION_PURCHASED = 4
    SUBSCRIPTION_ON_HOLD = 5  # Payment failed, access suspended
    SUBSCRIPTION_IN_GRACE_PERIOD = 6
    SUBSCRIPTION_RESTARTED = 7  # Canceled subscription restored by the user
    SUBSCRIPTION_PRICE_CHANGE_CONFIRMED = 8
    SUBSCRIPTION_DEFERRED = 9
    SUBSCRIPTION_PAUSED = 10
    SUBSCRIPTION_PAUSE_SCHEDULE_CHANGED = 11
    SUBSCRIPTION_REVOKED = 12  # Revoked before expiry
    SUBSCRIPTION_EXPIRED = 13


class GoogleSubscriptionNotification(BaseModel):
    """Subscription payload within a DeveloperNotification."""

    version: str = Field(default="1.0", description="Notification version")
    notification_type: int = Field(..., alias="notificationType", description="Type of notification (1-13)")
    purchase_token: str = Field(..., alias="purchaseToken", description="Purchase token for the subscription")
    subscription_id: str = Field(..., alias="subscriptionId", description="Subscription product ID")

    class Config:
        populate_by_name = True


class GoogleDeveloperNotification(BaseModel):
    """Root RTDN message delivered through Pub/Sub.

    Only one of the notification fields is populated per message.
    """

    version: str = Field(default="1.0", description="Notification version")
    package_name: str = Field(..., alias="packageName", description="Android package name")
    event_time_millis: str = Field(..., alias="eventTimeMillis", description="Event timestamp (Unix millis)")
    subscription_notification: Optional[GoogleSubscriptionNotification] = Field(
        None, alias="subscriptionNotification", description="Subscription event data"
    )
    one_time_product_notification: Optional[dict[str, Any]] = Field(
        None, alias="oneTimeProductNotification", description="One-time product event data"
    )
    test_notification: Optional[dict[str, Any]] = Field(
        None, alias="testNotification", description="Test notification data"
    )

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "version": "1.0",
                "packageName": "com.example.app",
                "eventTimeMillis": "1700000000000",
                "subscriptionNotification": {
                    "version": "1.0",
                    "notificationType": 2,
                    "purchaseToken": "opaque-purchase-token...",
                    "subscriptionId": "premium.monthly",
                },
            }
        }


class PubSubMessage(BaseModel):
    """Message part of a Pub/Sub push request."""

    data: str = Field(..., description="Base64-encoded message body")
    message_id: Optional[str] = Field(None, alias="messageId")
    attributes: dict[str, str] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class PubSubPushEnvelope(BaseModel):
    """Body Pub/Sub POSTs to a push endpoint."""

    message: PubSubMessage
    subscription: Optional[str] = None


class AppleNotificationData(BaseModel):
    """Signed data block of an App Store Server Notification v2."""

    signed_transaction_info: Optional[str] = Field(None, alias="signedTransactionInfo")
    signed_renewal_info: Optional[str] = Field(None, alias="signedRenewalInfo")
    bundle_id: Optional[str] = Field(None, alias="bundleId")
    environment: Optional[str] = None

    class Config:
        populate_by_name = True


class AppleNotificationPayload(BaseModel):
    """Decoded ``signedPayload`` of an App Store Server Notification v2."""

    notification_type: str = Field(..., alias="notificationType")
    subtype: Optional[str] = None
    notification_uuid: str = Field(..., alias="notificationUUID")
    data: AppleNotificationData
    version: Optional[str] = None
    signed_date: Optional[int] = Field(None, alias="signedDate")

    class Config:
        populate_by_name = True


class StripeEvent(BaseModel):
    """Stripe webhook event (signature already validated upstream)."""

    id: str = Field(..., description="Event ID, unique per delivery lineage")
    type: str = Field(..., description="Event type, e.g. invoice.paid")
    created: Optional[int] = None
    data: dict[str, Any] = Field(..., description="Event data holding the affected object")
