"""Tests for building the engine and its collaborators from configuration."""

from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from iap_entitlements.config import Config
from iap_entitlements.models import StoreProvider
from iap_entitlements.providers.base import ProviderNotConfiguredError, UnconfiguredVerifier, VerifierRegistry
from iap_entitlements.providers.stripe_billing import StripeVerifier
from iap_entitlements.repositories.subscription_store import SubscriptionStore
from iap_entitlements.services.clock import VirtualClock
from iap_entitlements.services.rtdn_listener import RtdnListener
from iap_entitlements.wiring import build_engine, build_http_client, build_rtdn_listener, build_verifier_registry

SAMPLE_CONFIG = Path(__file__).resolve().parents[2] / "config" / "entitlements.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("APPLE_PRIVATE_KEY", "GOOGLE_APPLICATION_CREDENTIALS", "STRIPE_SECRET_KEY", "CONFIG_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sample_config():
    return Config(str(SAMPLE_CONFIG))


class TestVerifierRegistry:
    """Test provider registration from configuration."""

    def test_sample_config_leaves_providers_unconfigured(self, sample_config):
        registry = build_verifier_registry(sample_config, MagicMock(), VirtualClock())

        assert registry.status() == {
            "apple": "unconfigured",
            "google": "unconfigured",
            "stripe": "unconfigured",
        }

    def test_unconfigured_provider_fails_loudly(self, sample_config):
        registry = build_verifier_registry(sample_config, MagicMock(), VirtualClock())
        verifier = registry.get(StoreProvider.APPLE)

        assert isinstance(verifier, UnconfiguredVerifier)
        assert "issuer_id" in verifier.reason
        with pytest.raises(ProviderNotConfiguredError):
            verifier.verify_purchase("2000000000000001", "premium.monthly")

    def test_missing_google_credentials_reason(self, sample_config):
        registry = build_verifier_registry(sample_config, MagicMock(), VirtualClock())
        assert registry.get(StoreProvider.GOOGLE).reason == "missing service_account_file"

    def test_stripe_secret_from_environment(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_env")

        registry = build_verifier_registry(Config(str(SAMPLE_CONFIG)), MagicMock(), VirtualClock())

        assert isinstance(registry.get(StoreProvider.STRIPE), StripeVerifier)
        assert registry.status()["stripe"] == "configured"

    def test_unreadable_apple_key_file(self, tmp_path):
        path = tmp_path / "entitlements.yaml"
        path.write_text(
            "providers:\n"
            "  apple:\n"
            "    issuer_id: issuer-1\n"
            "    key_id: KEY123\n"
            "    bundle_id: com.example.app\n"
            f"    private_key_path: {tmp_path / 'missing.p8'}\n",
            encoding="utf-8",
        )

        registry = build_verifier_registry(Config(str(path)), MagicMock(), VirtualClock())

        assert registry.get(StoreProvider.APPLE).reason.startswith("cannot read private key")

    def test_absent_section(self, tmp_path):
        path = tmp_path / "entitlements.yaml"
        path.write_text("provider_timeout_seconds: 3\n", encoding="utf-8")

        registry = build_verifier_registry(Config(str(path)), MagicMock(), VirtualClock())

        assert registry.get(StoreProvider.STRIPE).reason == "no stripe section in configuration"


class TestBuildEngine:
    """Test engine assembly."""

    def test_supplied_collaborators_are_used(self, sample_config):
        clock = VirtualClock(start_millis=1_700_000_000_000)
        subscriptions = SubscriptionStore()
        verifiers = VerifierRegistry()

        engine = build_engine(sample_config, clock=clock, subscription_store=subscriptions, verifiers=verifiers)

        assert engine.clock is clock
        assert engine.subscriptions is subscriptions
        assert engine.verifiers is verifiers

    def test_retention_from_config(self, sample_config):
        engine = build_engine(sample_config, clock=VirtualClock(), http_client=MagicMock())
        assert engine.guard.retention_days == 30

    def test_http_client_timeout(self, sample_config):
        client = build_http_client(sample_config)
        try:
            assert isinstance(client, httpx.Client)
            assert client.timeout.read == 10.0
        finally:
            client.close()


class TestBuildRtdnListener:
    """Test RTDN listener construction."""

    def test_disabled(self, sample_config):
        assert build_rtdn_listener(sample_config, MagicMock()) is None

    def test_enabled(self, tmp_path):
        path = tmp_path / "entitlements.yaml"
        path.write_text(
            "rtdn:\n  enabled: true\n  project_id: example-project\n  subscription: play-rtdn\n",
            encoding="utf-8",
        )

        listener = build_rtdn_listener(Config(str(path)), MagicMock())

        assert isinstance(listener, RtdnListener)
        assert listener.is_running is False

    def test_enabled_without_subscription(self, tmp_path):
        path = tmp_path / "entitlements.yaml"
        path.write_text("rtdn:\n  enabled: true\n  project_id: example-project\n", encoding="utf-8")

        assert build_rtdn_listener(Config(str(path)), MagicMock()) is None
