"""Explicit construction of the entitlement engine from configuration."""

from pathlib import Path
from typing import Optional

import httpx

from iap_entitlements.config import Config
from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.settings import ProvidersConfig
from iap_entitlements.models.subscription import StoreProvider
from iap_entitlements.providers.app_store import AppStoreVerifier
from iap_entitlements.providers.base import UnconfiguredVerifier, VerifierRegistry
from iap_entitlements.providers.google_play import GooglePlayVerifier, service_account_token_provider
from iap_entitlements.providers.stripe_billing import StripeVerifier
from iap_entitlements.repositories.idempotency_store import IdempotencyStore
from iap_entitlements.repositories.subscription_store import SubscriptionStore
from iap_entitlements.repositories.user_store import UserStore
from iap_entitlements.services.clock import Clock
from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine
from iap_entitlements.services.idempotency_guard import IdempotencyGuard
from iap_entitlements.services.rtdn_listener import RtdnListener

logger = get_logger(__name__)


def _apple_verifier(providers: ProvidersConfig, http_client: httpx.Client, clock: Clock):
    settings = providers.apple
    if settings is None:
        return UnconfiguredVerifier(StoreProvider.APPLE, "no apple section in configuration")

    private_key = settings.private_key
    if not private_key and settings.private_key_path:
        try:
            private_key = Path(settings.private_key_path).read_text(encoding="utf-8")
        except OSError as e:
            return UnconfiguredVerifier(StoreProvider.APPLE, f"cannot read private key: {e}")

    missing = [
        name
        for name, value in (
            ("issuer_id", settings.issuer_id),
            ("key_id", settings.key_id),
            ("bundle_id", settings.bundle_id),
            ("private_key", private_key),
        )
        if not value
    ]
    if missing:
        return UnconfiguredVerifier(StoreProvider.APPLE, "missing " + ", ".join(missing))

    return AppStoreVerifier(
        issuer_id=settings.issuer_id,
        key_id=settings.key_id,
        bundle_id=settings.bundle_id,
        private_key=private_key,
        http_client=http_client,
        clock=clock,
        base_url=settings.base_url,
    )


def _google_verifier(providers: ProvidersConfig, http_client: httpx.Client):
    settings = providers.google
    if settings is None:
        return UnconfiguredVerifier(StoreProvider.GOOGLE, "no google section in configuration")
    if not settings.package_name:
        return UnconfiguredVerifier(StoreProvider.GOOGLE, "missing package_name")
    if not settings.service_account_file:
        return UnconfiguredVerifier(StoreProvider.GOOGLE, "missing service_account_file")

    try:
        token_provider = service_account_token_provider(settings.service_account_file)
    except (OSError, ValueError) as e:
        return UnconfiguredVerifier(StoreProvider.GOOGLE, f"cannot load service account: {e}")

    return GooglePlayVerifier(
        package_name=settings.package_name,
        token_provider=token_provider,
        http_client=http_client,
        base_url=settings.base_url,
    )


def _stripe_verifier(providers: ProvidersConfig, http_client: httpx.Client):
    settings = providers.stripe
    if settings is None:
        return UnconfiguredVerifier(StoreProvider.STRIPE, "no stripe section in configuration")
    if not settings.secret_key:
        return UnconfiguredVerifier(StoreProvider.STRIPE, "missing secret_key")
    return StripeVerifier(
        secret_key=settings.secret_key,
        http_client=http_client,
        base_url=settings.base_url,
    )


def build_verifier_registry(config: Config, http_client: httpx.Client, clock: Clock) -> VerifierRegistry:
    """Create one verifier per provider.

    A provider without usable credentials gets an UnconfiguredVerifier, so a
    misconfiguration surfaces as a loud error on first use instead of a
    silently missing provider.
    """
    registry = VerifierRegistry(
        [
            _apple_verifier(config.providers, http_client, clock),
            _google_verifier(config.providers, http_client),
            _stripe_verifier(config.providers, http_client),
        ]
    )
    for provider, state in registry.status().items():
        log = logger.info if state == "configured" else logger.warning
        log("provider_registered", provider=provider, state=state)
    return registry


def build_http_client(config: Config) -> httpx.Client:
    """HTTP client shared by all verifiers; its timeout bounds every provider call."""
    return httpx.Client(timeout=config.provider_timeout_seconds)


def build_engine(
    config: Config,
    clock: Optional[Clock] = None,
    http_client: Optional[httpx.Client] = None,
    subscription_store: Optional[SubscriptionStore] = None,
    user_store: Optional[UserStore] = None,
    idempotency_store: Optional[IdempotencyStore] = None,
    verifiers: Optional[VerifierRegistry] = None,
) -> EntitlementStateMachine:
    """Assemble the state machine and its collaborators.

    Every collaborator may be supplied explicitly (tests pass fakes and a
    VirtualClock); anything omitted is built from ``config``.
    """
    clock = clock or Clock()
    if verifiers is None:
        verifiers = build_verifier_registry(config, http_client or build_http_client(config), clock)

    guard = IdempotencyGuard(
        store=idempotency_store or IdempotencyStore(),
        clock=clock,
        retention_days=config.idempotency_retention_days,
    )
    return EntitlementStateMachine(
        subscription_store=subscription_store or SubscriptionStore(),
        user_store=user_store or UserStore(),
        idempotency_guard=guard,
        verifiers=verifiers,
        clock=clock,
    )


def build_rtdn_listener(config: Config, engine: EntitlementStateMachine) -> Optional[RtdnListener]:
    """Create the RTDN listener when enabled in configuration."""
    rtdn = config.rtdn
    if not rtdn.enabled:
        logger.info("rtdn_listener_disabled")
        return None
    if not rtdn.project_id or not rtdn.subscription:
        logger.warning("rtdn_listener_misconfigured", project_id=rtdn.project_id, subscription=rtdn.subscription)
        return None
    return RtdnListener(
        engine=engine,
        project_id=rtdn.project_id,
        subscription=rtdn.subscription,
        max_messages=rtdn.max_messages,
    )
