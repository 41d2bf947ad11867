"""Provider verifier abstraction.

A verifier is the only component that talks to an external payment
provider. It turns a live verification call or a webhook body into the
canonical shapes the entitlement state machine understands.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import httpx

from iap_entitlements.config import ConfigurationError
from iap_entitlements.logging_config import get_logger
from iap_entitlements.models.notifications import CanonicalNotification, VerificationResult
from iap_entitlements.models.subscription import StoreProvider

logger = get_logger(__name__)


class ProviderError(Exception):
    """Base exception for provider verification errors."""

    pass


class ProviderUnavailableError(ProviderError):
    """Transient provider or network failure. Safe to retry."""

    pass


class InvalidPurchaseError(ProviderError):
    """The provider rejected the receipt or it could not be interpreted."""

    pass


class InvalidNotificationError(ProviderError):
    """A webhook body could not be decoded into a canonical notification."""

    pass


class ProviderNotConfiguredError(ConfigurationError):
    """The provider client has no usable credentials."""

    def __init__(self, provider: StoreProvider, reason: str):
        super().__init__(f"{provider.value} provider is not configured: {reason}")
        self.provider = provider
        self.reason = reason


class UnsupportedProviderError(Exception):
    """No verifier is registered for the requested provider."""

    def __init__(self, provider: StoreProvider):
        super().__init__(f"Unsupported store provider: {provider.value}")
        self.provider = provider


class ProviderVerifier(ABC):
    """Capability contract for one payment provider."""

    provider: StoreProvider

    # Whether webhook fields must be re-fetched from the provider API
    refresh_on_notification: bool = False

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    def verify_purchase(self, receipt: str, plan_id: str) -> VerificationResult:
        """Verify a purchase with a live provider call.

        Raises:
            ProviderUnavailableError: network error, timeout or provider 5xx
            InvalidPurchaseError: unknown or malformed receipt
            ProviderNotConfiguredError: missing or rejected credentials
        """

    @abstractmethod
    def decode_notification(self, payload: Any) -> Optional[CanonicalNotification]:
        """Decode a provider webhook body.

        Returns:
            CanonicalNotification, or None for messages with no subscription
            content (e.g. test notifications)

        Raises:
            InvalidNotificationError: If the body is malformed
        """


class UnconfiguredVerifier(ProviderVerifier):
    """Explicit stand-in for a provider whose client was never configured."""

    def __init__(self, provider: StoreProvider, reason: str):
        self.provider = provider
        self.reason = reason

    @property
    def is_configured(self) -> bool:
        return False

    def _fail(self) -> ProviderNotConfiguredError:
        logger.error(
            "provider_not_configured",
            provider=self.provider.value,
            reason=self.reason,
        )
        return ProviderNotConfiguredError(self.provider, self.reason)

    def verify_purchase(self, receipt: str, plan_id: str) -> VerificationResult:
        raise self._fail()

    def decode_notification(self, payload: Any) -> Optional[CanonicalNotification]:
        raise self._fail()


class VerifierRegistry:
    """Maps each store provider to its verifier."""

    def __init__(self, verifiers: Optional[Iterable[ProviderVerifier]] = None):
        self._verifiers: Dict[StoreProvider, ProviderVerifier] = {}
        for verifier in verifiers or ():
            self.register(verifier)

    def register(self, verifier: ProviderVerifier) -> None:
        self._verifiers[verifier.provider] = verifier

    def get(self, provider: StoreProvider) -> ProviderVerifier:
        """Get the verifier for a provider.

        Raises:
            UnsupportedProviderError: If no verifier is registered
        """
        verifier = self._verifiers.get(provider)
        if verifier is None:
            raise UnsupportedProviderError(provider)
        return verifier

    def status(self) -> Dict[str, str]:
        """Configuration state per registered provider."""
        return {
            provider.value: "configured" if verifier.is_configured else "unconfigured"
            for provider, verifier in self._verifiers.items()
        }


def send_provider_request(
    http_client: httpx.Client,
    provider: StoreProvider,
    method: str,
    url: str,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Call a provider API and map failures onto the provider error taxonomy.

    Returns:
        Decoded JSON body

    Raises:
        ProviderUnavailableError: timeout, transport error, 429 or 5xx
        InvalidPurchaseError: 400/404/410 or a non-JSON body
        ProviderNotConfiguredError: 401/403
    """
    try:
        response = http_client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning("provider_timeout", provider=provider.value, error=str(e))
        raise ProviderUnavailableError(f"{provider.value} API timed out") from e
    except httpx.TransportError as e:
        logger.warning(
            "provider_unreachable",
            provider=provider.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        raise ProviderUnavailableError(f"{provider.value} API is unreachable") from e

    status = response.status_code
    if status in (401, 403):
        logger.error("provider_auth_rejected", provider=provider.value, status_code=status)
        raise ProviderNotConfiguredError(provider, f"credentials rejected (HTTP {status})")
    if status == 429 or status >= 500:
        logger.warning("provider_unavailable", provider=provider.value, status_code=status)
        raise ProviderUnavailableError(f"{provider.value} API returned HTTP {status}")
    if status >= 400:
        logger.warning("provider_rejected_purchase", provider=provider.value, status_code=status)
        raise InvalidPurchaseError(f"{provider.value} API rejected the purchase (HTTP {status})")

    try:
        body = response.json()
    except ValueError as e:
        raise InvalidPurchaseError(f"{provider.value} API returned a non-JSON body") from e
    if not isinstance(body, dict):
        raise InvalidPurchaseError(f"{provider.value} API returned an unexpected body")
    return body


def parse_millis(value: Any) -> Optional[int]:
    """Parse a provider timestamp given as int or numeric string."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
