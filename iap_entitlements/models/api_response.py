"""HTTP response models for the entitlement API."""

from typing import Optional

from pydantic import BaseModel, Field

from .notifications import NotificationOutcome
from .subscription import AccessTier, SubscriptionRecord, SubscriptionStatus, StoreProvider


class SubscriptionResponse(BaseModel):
    """Public view of a subscription record."""

    id: str
    userId: str
    tier: AccessTier
    status: SubscriptionStatus
    provider: StoreProvider
    validUntilMillis: int
    willAutoRenew: bool
    originalTransactionId: str

    @classmethod
    def from_record(cls, record: SubscriptionRecord) -> "SubscriptionResponse":
        return cls(
            id=record.id,
            userId=record.user_id,
            tier=record.tier,
            status=record.status,
            provider=record.provider,
            validUntilMillis=record.valid_until_millis,
            willAutoRenew=record.will_auto_renew,
            originalTransactionId=record.lineage_id,
        )


class VerifyPurchaseResponse(BaseModel):
    """Response after verifying a purchase."""

    subscription: SubscriptionResponse
    userTier: AccessTier = Field(..., description="Caller's tier after processing")

    class Config:
        json_schema_extra = {
            "example": {
                "subscription": {
                    "id": "5f2b6c1e9a8d4e3f",
                    "userId": "user-123",
                    "tier": "premium",
                    "status": "active",
                    "provider": "apple",
                    "validUntilMillis": 1731536000000,
                    "willAutoRenew": True,
                    "originalTransactionId": "2000000123456789",
                },
                "userTier": "premium",
            }
        }


class WebhookResponse(BaseModel):
    """Acknowledgement returned to a provider webhook."""

    outcome: NotificationOutcome
    notificationId: Optional[str] = None
    message: Optional[str] = None


class PruneResponse(BaseModel):
    """Result of pruning idempotency records."""

    pruned: int = Field(..., description="Number of records removed")
    retentionDays: int


class ErrorResponse(BaseModel):
    """Error response."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "provider_unavailable",
                "message": "Google Play API did not respond in time",
            }
        }
