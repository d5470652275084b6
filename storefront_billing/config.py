"""Configuration management - loads billing.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from storefront_billing.models import BillingSettings, PlanCapabilities, PlanType
from storefront_billing.models.settings import (
    BillingGatewayConfig,
    CacheConfig,
    DataStoreConfig,
    PubSubConfig,
    SubscriptionConfig,
)
from storefront_billing.utils.billing_period import billing_period_to_timedelta

DEFAULT_CONFIG_PATH = "config/billing.yaml"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Application configuration loader.

    Loads billing.yaml and provides validated access to:
    - Data store connection
    - Cache sizing
    - Billing gateway settings
    - Pub/Sub publishing
    - Trial behaviour and plan capabilities

    ``DATA_STORE_URL``, ``DATA_STORE_KEY`` and ``STRIPE_API_KEY`` override the file.
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to billing.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/billing.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[BillingSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        return Path(DEFAULT_CONFIG_PATH)

    def _load_config(self) -> None:
        """Load, override from environment and validate billing.yaml."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/billing.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)

            if not raw_config:
                raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

            self._apply_env_overrides(raw_config)
            settings = BillingSettings(**raw_config)

            # Fail early on malformed durations
            billing_period_to_timedelta(settings.subscription.trial_period)
            billing_period_to_timedelta(settings.subscription.grace_period)

            self._settings = settings

        except ConfigurationError:
            raise
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")
        except ValueError as e:
            raise ConfigurationError(f"Invalid duration in configuration: {e}")

    @staticmethod
    def _apply_env_overrides(raw_config: dict) -> None:
        overrides = {
            ("data_store", "url"): os.getenv("DATA_STORE_URL"),
            ("data_store", "api_key"): os.getenv("DATA_STORE_KEY"),
            ("billing_gateway", "api_key"): os.getenv("STRIPE_API_KEY"),
        }
        for (section, key), value in overrides.items():
            if value:
                raw_config.setdefault(section, {})[key] = value

    @property
    def settings(self) -> BillingSettings:
        """Get validated settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def data_store(self) -> DataStoreConfig:
        return self.settings.data_store

    @property
    def cache(self) -> CacheConfig:
        return self.settings.cache

    @property
    def billing_gateway(self) -> BillingGatewayConfig:
        return self.settings.billing_gateway

    @property
    def pubsub(self) -> PubSubConfig:
        return self.settings.pubsub

    @property
    def subscription(self) -> SubscriptionConfig:
        return self.settings.subscription

    def get_plan(self, plan_type: PlanType) -> Optional[PlanCapabilities]:
        """Get the configured capabilities for a plan, if overridden in billing.yaml."""
        return self.settings.plan_for(plan_type)

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Process-wide instance for entry points (CLI, ASGI app factory)
_config_instance: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get global configuration instance (singleton).

    Args:
        config_path: Optional path to configuration file (only used on first call)

    Returns:
        Config instance
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path)
    return _config_instance


def reload_config() -> None:
    """Reload global configuration from disk."""
    global _config_instance
    if _config_instance:
        _config_instance.reload()
    else:
        _config_instance = Config()
