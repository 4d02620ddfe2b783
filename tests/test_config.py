"""
Tests for client and server configuration.
"""

from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from farmsync.client.config import SyncClientConfiguration
from farmsync.client.retry_policy import RetryPolicy
from farmsync.client.storage_monitor import StorageThresholds
from farmsync.client.sync_coordinator import MutationQueueCoordinator
from farmsync.server.config import ServerConfig, get_config, load_config, reload_config
from farmsync.shared.exceptions import ConfigurationError, ErrorCode
from farmsync.shared.logging_config import LogFormat, LogLevel


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "client.conf"


class TestSyncClientConfiguration:
    """Test layered client configuration."""

    def test_defaults(self, config_path):
        config = SyncClientConfiguration(str(config_path), environ={})

        assert config.get_server_url() == "http://localhost:8080"
        assert config.get_server_timeout() == 30.0
        assert config.get_retry_policy() == RetryPolicy()
        assert config.get_storage_thresholds() == StorageThresholds()
        assert config.is_offline_first() is True
        assert config.get_temp_id_max_age() == timedelta(days=7)
        assert config.get_temp_id_file() is None
        assert config.get_log_level() == LogLevel.INFO
        assert config.get_log_format() == LogFormat.STANDARD
        assert config.get_queue_file() == Path.home() / ".farmsync" / "mutation-queue.json"
        assert not config_path.exists()

    def test_file_values(self, config_path):
        config_path.write_text(
            "[server]\n"
            "url = http://farm.example:9000/\n"
            "[retry]\n"
            "max_retries = 5\n"
            "[queue]\n"
            "offline_first = false\n"
        )

        config = SyncClientConfiguration(str(config_path), environ={})

        assert config.get_server_url() == "http://farm.example:9000"
        assert config.get_retry_policy().max_retries == 5
        assert config.is_offline_first() is False

    def test_environment_overrides_file(self, config_path):
        config_path.write_text("[retry]\nmax_retries = 5\n")

        config = SyncClientConfiguration(str(config_path), environ={
            'FARMSYNC_MAX_RETRIES': '7',
            'FARMSYNC_LOG_LEVEL': 'debug',
            'FARMSYNC_OFFLINE_FIRST': 'false',
        })

        assert config.get_retry_policy().max_retries == 7
        assert config.get_log_level() == LogLevel.DEBUG
        assert config.is_offline_first() is False

    def test_override_has_highest_priority(self, config_path):
        config = SyncClientConfiguration(str(config_path), environ={'FARMSYNC_SERVER_URL': 'http://env'})
        config.set_override('server.url', 'http://override')

        assert config.get_server_url() == "http://override"

    @pytest.mark.parametrize("env,getter", [
        ({'FARMSYNC_SERVER_TIMEOUT': 'soon'}, 'get_server_timeout'),
        ({'FARMSYNC_SERVER_TIMEOUT': '-1'}, 'get_server_timeout'),
        ({'FARMSYNC_MAX_RETRIES': '0'}, 'get_retry_policy'),
        ({'FARMSYNC_STORAGE_WARNING': '99'}, 'get_storage_thresholds'),
        ({'FARMSYNC_LOG_LEVEL': 'chatty'}, 'get_log_level'),
        ({'FARMSYNC_LOG_FORMAT': 'xml'}, 'get_log_format'),
    ])
    def test_invalid_values(self, config_path, env, getter):
        config = SyncClientConfiguration(str(config_path), environ=env)

        with pytest.raises(ConfigurationError) as exc_info:
            getattr(config, getter)()
        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_VALUE

    def test_save_and_reload(self, config_path):
        config = SyncClientConfiguration(str(config_path), environ={})
        config._config_data['retry']['max_retries'] = 4
        config.save_configuration()

        reloaded = SyncClientConfiguration(str(config_path), environ={})
        assert reloaded.get_retry_policy().max_retries == 4
        assert reloaded.is_offline_first() is True

        config_path.write_text("[retry]\nmax_retries = 6\n")
        reloaded.reload_configuration()
        assert reloaded.get_retry_policy().max_retries == 6

    def test_configure_logging_passes_settings(self, config_path, tmp_path):
        log_file = str(tmp_path / "logs" / "client.log")
        config = SyncClientConfiguration(str(config_path), environ={
            'FARMSYNC_LOG_FORMAT': 'json',
            'FARMSYNC_LOG_FILE': log_file,
        })

        with patch('farmsync.client.config.setup_logging') as setup:
            config.configure_logging(enable_console=False)

        setup.assert_called_once_with(
            log_level=LogLevel.INFO,
            log_format=LogFormat.JSON,
            log_file=log_file,
            enable_console=False,
            audit_file=None
        )

    def test_coordinator_from_configuration(self, tmp_path, config_path, clock):
        config = SyncClientConfiguration(str(config_path), environ={
            'FARMSYNC_QUEUE_FILE': str(tmp_path / "queue" / "mutations.json"),
            'FARMSYNC_MAX_RETRIES': '2',
            'FARMSYNC_OFFLINE_FIRST': 'false',
        })
        config.set_override('temp_ids.persistence_file', str(tmp_path / "temp-ids.json"))

        coordinator = MutationQueueCoordinator.from_configuration(config, transport=MagicMock(), clock=clock)

        assert coordinator.retry_policy.max_retries == 2
        assert coordinator.offline_first is False
        assert (tmp_path / "queue").is_dir()
        assert coordinator.restore() == 0


class TestServerConfig:
    """Test environment-driven server configuration."""

    def test_defaults(self, monkeypatch):
        for key in ('FARMSYNC_HTTP_HOST', 'FARMSYNC_HTTP_PORT', 'FARMSYNC_ENVIRONMENT',
                    'FARMSYNC_LOG_LEVEL', 'FARMSYNC_STRUCTURED_LOGGING', 'FARMSYNC_CORS_ORIGINS'):
            monkeypatch.delenv(key, raising=False)

        assert load_config() == ServerConfig()

    def test_environment(self, monkeypatch):
        monkeypatch.setenv('FARMSYNC_HTTP_PORT', '9090')
        monkeypatch.setenv('FARMSYNC_LOG_LEVEL', 'debug')
        monkeypatch.setenv('FARMSYNC_STRUCTURED_LOGGING', 'yes')
        monkeypatch.setenv('FARMSYNC_CORS_ORIGINS', 'https://a.example, https://b.example')

        config = load_config()

        assert config.port == 9090
        assert config.log_level == "DEBUG"
        assert config.structured_logging is True
        assert config.cors_origins == ["https://a.example", "https://b.example"]

    def test_bad_port_falls_back(self, monkeypatch):
        monkeypatch.setenv('FARMSYNC_HTTP_PORT', 'eighty')
        assert load_config().port == 8080

    def test_reload_replaces_global(self, monkeypatch):
        monkeypatch.delenv('FARMSYNC_HTTP_PORT', raising=False)
        config = reload_config()
        assert get_config() is config
        assert config.port == 8080
