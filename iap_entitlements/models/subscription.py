"""Subscription entitlement models.

Includes access tiers, store providers, record status and the persisted
SubscriptionRecord with its logged mutators.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from iap_entitlements.state_logger import (
    log_auto_renew_change,
    log_expiry_change,
    log_subscription_owner_change,
    log_subscription_status_change,
)


class AccessTier(str, Enum):
    """Access tier held by a user or granted by a subscription."""

    STANDARD = "standard"
    PREMIUM = "premium"


class SubscriptionStatus(str, Enum):
    """Local state of a subscription lineage."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class StoreProvider(str, Enum):
    """External payment system that issued a purchase."""

    APPLE = "apple"
    GOOGLE = "google"
    STRIPE = "stripe"


class SubscriptionRecord(BaseModel):
    """One row per currently-or-formerly active entitlement lineage.

    Exactly one record exists per ``lineage_id``; ``user_id`` is the only
    ownership field and changes when a lineage is transferred.
    """

    id: str = Field(..., description="Opaque record identifier")
    user_id: str = Field(..., description="Account currently holding this entitlement")
    tier: AccessTier = Field(default=AccessTier.PREMIUM, description="Tier granted by this record")
    status: SubscriptionStatus = Field(..., description="Current local status")
    provider: StoreProvider = Field(..., description="Issuing payment provider")
    valid_until_millis: int = Field(..., description="Entitlement lapses after this time (Unix millis)")
    will_auto_renew: bool = Field(default=True, description="Whether the provider expects to renew")
    lineage_id: str = Field(..., description="Provider's renewal-invariant original transaction ID")

    def is_entitled(self, now_millis: int) -> bool:
        """Whether this record currently grants premium access."""
        return (
            self.status == SubscriptionStatus.ACTIVE
            and self.tier == AccessTier.PREMIUM
            and self.valid_until_millis > now_millis
        )

    def set_status(self, new_status: SubscriptionStatus, reason: Optional[str] = None) -> None:
        """Change status and log the transition.

        Args:
            new_status: New status to transition to
            reason: Reason for the change
        """
        old_status = self.status
        if old_status != new_status:
            self.status = new_status
            log_subscription_status_change(
                record_id=self.id,
                lineage_id=self.lineage_id,
                old_status=old_status.value,
                new_status=new_status.value,
                reason=reason,
                user_id=self.user_id,
                provider=self.provider.value,
            )

    def set_auto_renew(self, will_auto_renew: bool, reason: Optional[str] = None) -> None:
        """Change the auto-renew flag and log the change."""
        old_value = self.will_auto_renew
        if old_value != will_auto_renew:
            self.will_auto_renew = will_auto_renew
            log_auto_renew_change(
                record_id=self.id,
                lineage_id=self.lineage_id,
                old_value=old_value,
                new_value=will_auto_renew,
                reason=reason,
                user_id=self.user_id,
            )

    def set_valid_until(self, new_valid_until_millis: int, reason: str) -> None:
        """Move the expiry and log the change."""
        old_value = self.valid_until_millis
        if old_value != new_valid_until_millis:
            self.valid_until_millis = new_valid_until_millis
            log_expiry_change(
                record_id=self.id,
                lineage_id=self.lineage_id,
                old_expiry_millis=old_value,
                new_expiry_millis=new_valid_until_millis,
                reason=reason,
                user_id=self.user_id,
            )

    def reassign(self, new_user_id: str, reason: Optional[str] = None) -> None:
        """Move ownership of this lineage to another account."""
        old_user_id = self.user_id
        if old_user_id != new_user_id:
            self.user_id = new_user_id
            log_subscription_owner_change(
                record_id=self.id,
                lineage_id=self.lineage_id,
                old_user_id=old_user_id,
                new_user_id=new_user_id,
                reason=reason,
            )

    class Config:
        json_schema_extra = {
            "example": {
                "id": "5f2b6c1e9a8d4e3f",
                "user_id": "user-123",
                "tier": "premium",
                "status": "active",
                "provider": "google",
                "valid_until_millis": 1731536000000,
                "will_auto_renew": True,
                "lineage_id": "opaque-purchase-token...",
            }
        }
