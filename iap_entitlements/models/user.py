"""User model (partial view relevant to entitlements)."""

from typing import Optional

from pydantic import BaseModel, Field

from iap_entitlements.models.subscription import AccessTier
from iap_entitlements.state_logger import log_user_tier_change


class User(BaseModel):
    """Local account whose tier is driven by its subscription records."""

    id: str = Field(..., description="User identifier")
    tier: AccessTier = Field(default=AccessTier.STANDARD, description="Current access tier")

    def set_tier(self, new_tier: AccessTier, reason: Optional[str] = None) -> None:
        """Change the access tier and log the transition."""
        old_tier = self.tier
        if old_tier != new_tier:
            self.tier = new_tier
            log_user_tier_change(
                user_id=self.id,
                old_tier=old_tier.value,
                new_tier=new_tier.value,
                reason=reason,
            )
