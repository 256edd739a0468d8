"""Tests for configuration loading and management."""

import pytest

from membership_subscriptions.config import Config, ConfigurationError, get_config


@pytest.fixture
def config():
    """Create a Config instance for testing."""
    return Config()


class TestConfigurationLoading:
    """Test basic configuration loading."""

    def test_config_loads_successfully(self, config):
        assert config is not None
        assert config.config_path.exists()

    def test_config_path_is_set(self, config):
        assert str(config.config_path).endswith("service.yaml")

    def test_service_identity(self, config):
        assert config.service.name == "subscription-service"
        assert config.service.version == "1.0"

    def test_outbox_settings(self, config):
        assert config.outbox.max_attempts >= 1
        assert config.outbox.poll_interval_seconds > 0

    def test_singleton(self):
        assert get_config() is get_config()


class TestPubSubConfiguration:
    """Test Pub/Sub configuration access."""

    def test_pubsub_settings(self, config):
        pubsub = config.pubsub
        assert pubsub.project_id
        assert pubsub.exchange == "membership.events"
        assert pubsub.consumer_prefix == "subscription-service"
        assert pubsub.prefetch == 10

    def test_project_id_env_override(self, config, monkeypatch):
        monkeypatch.setenv("PUBSUB_PROJECT_ID", "override-project")
        assert config.pubsub_project_id == "override-project"

    @pytest.mark.parametrize("value, expected", [("true", True), ("false", False), ("FALSE", False)])
    def test_events_enabled_env_override(self, config, monkeypatch, value, expected):
        monkeypatch.setenv("EVENTS_ENABLED", value)
        assert config.events_enabled is expected


class TestAuthConfiguration:
    def test_secret_env_override(self, config, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_SECRET", "from-env")

        assert config.auth.token_secret == "from-env"
        assert config.settings.auth.token_secret != "from-env"

    def test_algorithm(self, config):
        assert config.auth.algorithm == "HS256"

    def test_no_secret_ships_in_config(self, config, monkeypatch):
        monkeypatch.delenv("ACCESS_TOKEN_SECRET", raising=False)

        assert config.settings.auth.token_secret is None
        assert config.auth.token_secret is None


class TestStorageConfiguration:
    def test_durable_backend_by_default(self, config, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        monkeypatch.delenv("MONGODB_URI", raising=False)

        assert config.storage.backend == "mongo"
        assert config.storage.database == "membership"

    def test_env_overrides(self, config, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("MONGODB_URI", "mongodb://db.internal:27017")

        assert config.storage.backend == "memory"
        assert config.storage.mongo_uri == "mongodb://db.internal:27017"
        assert config.settings.storage.backend == "mongo"

    def test_unknown_backend(self, config, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "sqlite")

        with pytest.raises(ConfigurationError, match="STORAGE_BACKEND"):
            config.storage


class TestConfigurationErrors:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            Config(str(tmp_path / "absent.yaml"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "service.yaml"
        path.write_text("")

        with pytest.raises(ConfigurationError, match="empty"):
            Config(str(path))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "service.yaml"
        path.write_text("pubsub: [unclosed")

        with pytest.raises(ConfigurationError, match="parse"):
            Config(str(path))

    def test_missing_required_section(self, tmp_path):
        path = tmp_path / "service.yaml"
        path.write_text("service:\n  name: x\n")

        with pytest.raises(ConfigurationError, match="validation failed"):
            Config(str(path))

    def test_minimal_file_uses_defaults(self, tmp_path):
        path = tmp_path / "service.yaml"
        path.write_text("pubsub:\n  project_id: p\n")

        config = Config(str(path))

        assert config.outbox.max_attempts == 10
        assert config.settings.events.enabled is True

    def test_config_path_env(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("pubsub:\n  project_id: from-env-path\n")
        monkeypatch.setenv("CONFIG_PATH", str(path))
        monkeypatch.delenv("PUBSUB_PROJECT_ID", raising=False)

        assert Config().pubsub_project_id == "from-env-path"
