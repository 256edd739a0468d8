"""Configuration management - loads service.yaml and environment variables."""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from membership_subscriptions.models.settings import (
    AuthSettings,
    OutboxSettings,
    PubSubSettings,
    ServiceInfo,
    ServiceSettings,
    StorageSettings,
)

DEFAULT_CONFIG_PATH = Path("config/service.yaml")
_PACKAGED_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "service.yaml"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


class Config:
    """Service configuration loader and manager.

    Loads service.yaml and provides validated access to:
    - Service identity (event metadata)
    - Pub/Sub settings
    - Token verification settings
    - Outbox dispatcher settings
    - Record store backend
    """

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to service.yaml. If not provided, uses CONFIG_PATH env var
                        or defaults to ./config/service.yaml
        """
        self._config_path = self._resolve_config_path(config_path)
        self._settings: Optional[ServiceSettings] = None
        self._load_config()

    def _resolve_config_path(self, config_path: Optional[str]) -> Path:
        """Resolve configuration file path from argument, env var, or default."""
        if config_path:
            return Path(config_path)

        env_path = os.getenv("CONFIG_PATH")
        if env_path:
            return Path(env_path)

        if DEFAULT_CONFIG_PATH.exists():
            return DEFAULT_CONFIG_PATH
        return _PACKAGED_CONFIG_PATH

    def _load_config(self) -> None:
        """Load and validate service.yaml configuration."""
        if not self._config_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {self._config_path}\n"
                f"Please create config/service.yaml or set CONFIG_PATH environment variable"
            )

        try:
            with open(self._config_path, encoding="utf-8") as f:
                raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}")

        if not raw_config:
            raise ConfigurationError(f"Configuration file is empty: {self._config_path}")

        try:
            self._settings = ServiceSettings(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}")

    @property
    def settings(self) -> ServiceSettings:
        """Get validated service settings."""
        if self._settings is None:
            raise ConfigurationError("Configuration not loaded")
        return self._settings

    @property
    def config_path(self) -> Path:
        """Get path to configuration file."""
        return self._config_path

    @property
    def service(self) -> ServiceInfo:
        return self.settings.service

    @property
    def pubsub(self) -> PubSubSettings:
        return self.settings.pubsub

    @property
    def outbox(self) -> OutboxSettings:
        return self.settings.outbox

    @property
    def pubsub_project_id(self) -> str:
        """Get Pub/Sub project ID, honouring PUBSUB_PROJECT_ID."""
        return os.getenv("PUBSUB_PROJECT_ID") or self.settings.pubsub.project_id

    @property
    def events_enabled(self) -> bool:
        """Whether the event bus should connect, honouring EVENTS_ENABLED."""
        env_value = os.getenv("EVENTS_ENABLED")
        if env_value is not None:
            return env_value.lower() == "true"
        return self.settings.events.enabled

    @property
    def auth(self) -> AuthSettings:
        """Get token settings with ACCESS_TOKEN_SECRET applied."""
        auth = self.settings.auth
        secret = os.getenv("ACCESS_TOKEN_SECRET")
        if secret:
            return auth.model_copy(update={"token_secret": secret})
        return auth

    @property
    def storage(self) -> StorageSettings:
        """Get storage settings, honouring STORAGE_BACKEND and MONGODB_URI."""
        storage = self.settings.storage
        overrides = {}
        backend = os.getenv("STORAGE_BACKEND")
        if backend:
            if backend not in ("memory", "mongo"):
                raise ConfigurationError(f"Unknown STORAGE_BACKEND: {backend}")
            overrides["backend"] = backend
        uri = os.getenv("MONGODB_URI")
        if uri:
            overrides["mongo_uri"] = uri
        return storage.model_copy(update=overrides) if overrides else storage

    def reload(self) -> None:
        """Reload configuration from disk."""
        self._load_config()


# Global configuration instance
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
