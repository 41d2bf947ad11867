"""Pydantic models for entitlement records, provider payloads and configuration."""

# Entitlement records
from .subscription import (
    AccessTier,
    SubscriptionStatus,
    StoreProvider,
    SubscriptionRecord,
)
from .user import User
from .idempotency import IdempotencyRecord

# Canonical request/notification shapes
from .notifications import (
    EventKind,
    NotificationOutcome,
    PurchaseTransaction,
    VerificationResult,
    CanonicalNotification,
)

# Provider webhook payloads
from .events import (
    GoogleNotificationType,
    GoogleSubscriptionNotification,
    GoogleDeveloperNotification,
    PubSubMessage,
    PubSubPushEnvelope,
    AppleNotificationData,
    AppleNotificationPayload,
    StripeEvent,
)

# API models
from .api_response import (
    VerifyPurchaseResponse,
    SubscriptionResponse,
    WebhookResponse,
    PruneResponse,
    ErrorResponse,
)

# Configuration
from .settings import (
    AppleProviderConfig,
    GoogleProviderConfig,
    StripeProviderConfig,
    ProvidersConfig,
    IdempotencyConfig,
    RtdnConfig,
    EntitlementsConfig,
)

__all__ = [
    # Entitlement records
    "AccessTier",
    "SubscriptionStatus",
    "StoreProvider",
    "SubscriptionRecord",
    "User",
    "IdempotencyRecord",
    # Canonical shapes
    "EventKind",
    "NotificationOutcome",
    "PurchaseTransaction",
    "VerificationResult",
    "CanonicalNotification",
    # Provider payloads
    "GoogleNotificationType",
    "GoogleSubscriptionNotification",
    "GoogleDeveloperNotification",
    "PubSubMessage",
    "PubSubPushEnvelope",
    "AppleNotificationData",
    "AppleNotificationPayload",
    "StripeEvent",
    # API
    "VerifyPurchaseResponse",
    "SubscriptionResponse",
    "WebhookResponse",
    "PruneResponse",
    "ErrorResponse",
    # Configuration
    "AppleProviderConfig",
    "GoogleProviderConfig",
    "StripeProviderConfig",
    "ProvidersConfig",
    "IdempotencyConfig",
    "RtdnConfig",
    "EntitlementsConfig",
]
