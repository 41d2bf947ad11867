"""Configuration management - loads entitlements.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from iap_entitlements.models import EntitlementsConfig


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Service configuration loader.

    Loads entitlements.yaml and provides validated access to:
    - Provider credentials (secrets may come from the environment)
    - Provider call timeout
    - Idempotency retention
    - Google RTDN pull subscription
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to entitlements.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/entitlements.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[EntitlementsConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path("config/entitlements.yaml")

    def _load_config(self) -> None:
        """Load and validate entitlements.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/entitlements.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            settings = EntitlementsConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        self._settings = self._apply_environment(settings)

    @staticmethod
    def _apply_environment(settings: EntitlementsConfig) -> EntitlementsConfig:
        """Fill empty provider secrets from environment variables."""
        providers = settings.providers

        apple_key = os.getenv("APPLE_PRIVATE_KEY")
        if providers.apple is not None and apple_key and not providers.apple.private_key:
            providers.apple.private_key = apple_key

        google_credentials = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
        if (
            providers.google is not None
            and google_credentials
            and not providers.google.service_account_file
        ):
            providers.google.service_account_file = google_credentials

        stripe_key = os.getenv("STRIPE_SECRET_KEY")
        if providers.stripe is not None and stripe_key and not providers.stripe.secret_key:
            providers.stripe.secret_key = stripe_key

        return settings

    @property
    def settings(self) -> EntitlementsConfig:
        """Get validated configuration."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def providers(self):
        """Get per-provider settings."""
        return self.settings.providers

    @property
    def provider_timeout_seconds(self) -> float:
        """Timeout applied to every provider HTTP call."""
        return self.settings.provider_timeout_seconds

    @property
    def idempotency_retention_days(self) -> int:
        """Days processed-event records are kept."""
        return self.settings.idempotency.retention_days

    @property
    def rtdn(self):
        """Google RTDN pull subscription settings."""
        return self.settings.rtdn

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()
