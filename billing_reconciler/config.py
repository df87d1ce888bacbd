"""Configuration management - loads billing.yaml and environment variables."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from billing_reconciler.models import BillingConfig

DEFAULT_CONFIG_PATH = "config/billing.yaml"

# Top-level keys that can be supplied through the environment
ENV_OVERRIDES = {
    "monthlyPriceId": "STRIPE_MONTHLY_PRICE_ID",
    "semiannualPriceId": "STRIPE_SEMIANNUAL_PRICE_ID",
    "annualPriceId": "STRIPE_ANNUAL_PRICE_ID",
    "webhookSecret": "STRIPE_WEBHOOK_SECRET",
    "processorApiKey": "STRIPE_SECRET_KEY",
    "enforceEventOrdering": "ENFORCE_EVENT_ORDERING",
    "refetchSubscriptionEvents": "REFETCH_SUBSCRIPTION_EVENTS",
}

PUBSUB_ENV_OVERRIDES = {
    "enabled": "PUBSUB_ENABLED",
    "project_id": "PUBSUB_PROJECT_ID",
    "topic": "PUBSUB_TOPIC",
}


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader.

    Reads an optional billing.yaml, overlays environment variables and
    validates the result into a BillingConfig. Settings are resolved once;
    call reload() to pick up changes.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml (which may be absent)
            environ: Environment mapping (defaults to os.environ)
        """
        self._environ = os.environ if environ is None else environ
        self._explicit_path = bool(config_path or self._environ.get("CONFIG_PATH"))
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[BillingConfig] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        if config_path:
            return Path(config_path)

        env_path = self._environ.get("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path(DEFAULT_CONFIG_PATH)

    def _read_file(self) -> dict[str, Any]:
        if not self._config_path.exists():
            if self._explicit_path:
                raise ConfigurationError(f"Configuration file not found: {self._config_path}")
            return {}

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")

        if raw_config is None:
            return {}
        if not isinstance(raw_config, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {self._config_path}"
            )
        return raw_config

    def _apply_environment(self, raw_config: dict[str, Any]) -> dict[str, Any]:
        merged = dict(raw_config)
        for key, env_var in ENV_OVERRIDES.items():
            value = self._environ.get(env_var)
            if value:
                merged[key] = value

        pubsub = dict(merged.get("pubsub") or {})
        for key, env_var in PUBSUB_ENV_OVERRIDES.items():
            value = self._environ.get(env_var)
            if value:
                pubsub[key] = value
        if pubsub:
            merged["pubsub"] = pubsub
        return merged

    def _load_config(self) -> None:
        """Load and validate the billing configuration."""
        raw_config = self._apply_environment(self._read_file())
        try:
            self._settings = BillingConfig.model_validate(raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

    @property
    def settings(self) -> BillingConfig:
        """Get validated billing configuration."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        return self._config_path

    def validate_required(self) -> BillingConfig:
        """Fail fast unless every required key resolved.

        Returns:
            The validated BillingConfig

        Raises:
            ConfigurationError: Naming every key that is missing
        """
        missing = self.settings.missing_required_keys()
        if missing:
            raise ConfigurationError(
                "Missing required billing configuration: "
                + ", ".join(missing)
                + f" (set them in {self._config_path} or the environment)"
            )
        return self.settings

    def reload(self) -> None:
        """Reload configuration from disk and environment."""
        self._load_config()


# Global configuration instance
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()


def reset_config() -> None:
    """Drop the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
