"""Service configuration models.

Models from entitlements.yaml configuration.
"""

from typing import Optional

from pydantic import BaseModel, Field


class AppleProviderConfig(BaseModel):
    """App Store Server API credentials."""

    issuer_id: Optional[str] = Field(None, description="App Store Connect issuer ID")
    key_id: Optional[str] = Field(None, description="In-App Purchase key ID")
    bundle_id: Optional[str] = Field(None, description="App bundle identifier")
    private_key: Optional[str] = Field(None, description="PEM private key (or APPLE_PRIVATE_KEY env var)")
    private_key_path: Optional[str] = Field(None, description="Path to the PEM private key file")
    base_url: str = Field(
        default="https://api.storekit.itunes.apple.com/inApps/v1",
        description="Production or sandbox App Store Server API base URL",
    )

    class Config:
        json_schema_extra = {
            "example": {
                "issuer_id": "57246542-96fe-1a63-e053-0824d011072a",
                "key_id": "2X9R4HXF34",
                "bundle_id": "com.example.app",
                "private_key_path": "/secrets/apple_iap_key.p8",
            }
        }


class GoogleProviderConfig(BaseModel):
    """Google Play Developer API settings."""

    package_name: Optional[str] = Field(None, description="Android package name")
    service_account_file: Optional[str] = Field(
        None, description="Service account JSON (or GOOGLE_APPLICATION_CREDENTIALS env var)"
    )
    base_url: str = Field(
        default="https://androidpublisher.googleapis.com/androidpublisher/v3",
        description="Android Publisher API base URL",
    )


class StripeProviderConfig(BaseModel):
    """Stripe API settings."""

    secret_key: Optional[str] = Field(None, description="Secret API key (or STRIPE_SECRET_KEY env var)")
    base_url: str = Field(default="https://api.stripe.com/v1", description="Stripe API base URL")


class ProvidersConfig(BaseModel):
    """Per-provider settings; an absent section leaves that provider unconfigured."""

    apple: Optional[AppleProviderConfig] = None
    google: Optional[GoogleProviderConfig] = None
    stripe: Optional[StripeProviderConfig] = None


class IdempotencyConfig(BaseModel):
    """Retention of processed-event records."""

    retention_days: int = Field(default=30, ge=1, description="Days to keep idempotency records")


class RtdnConfig(BaseModel):
    """Pull subscription for Google Real-time Developer Notifications."""

    enabled: bool = Field(default=False, description="Consume RTDN from Pub/Sub by pull")
    project_id: Optional[str] = Field(None, description="GCP project ID")
    subscription: Optional[str] = Field(None, description="Pub/Sub subscription name")
    max_messages: int = Field(default=10, ge=1, description="Flow control: outstanding messages")


class EntitlementsConfig(BaseModel):
    """Complete entitlements.yaml configuration."""

    provider_timeout_seconds: float = Field(default=10.0, gt=0, description="Timeout for provider calls")
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    rtdn: RtdnConfig = Field(default_factory=RtdnConfig)
