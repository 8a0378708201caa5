"""
設定管理・セキュリティ・エラー分類 テスト
"""

import asyncio

import aiohttp
import pytest
import yaml
from cryptography.fernet import Fernet

from dualtab_sync.config.sync_config import ConfigManager, SecurityManager, SyncEngineConfig
from dualtab_sync.layers.sync_layer.error_handler import (
    ConfigInvalidError, ErrorHandler, SyncErrorType, SyncInProgressError, classify_error, error_response,
)
from dualtab_sync.utils.enhanced_logger import LogLevel, setup_logging


class TestConfigManager:
    """設定読み込みのテスト"""

    def test_defaults_without_file(self, tmp_path):
        config = ConfigManager(tmp_path / "missing").load_config()

        assert config == SyncEngineConfig()
        assert config.lock.ttl_seconds == 300
        assert config.scheduler.max_interval_minutes == 1440

    def test_yaml_file_is_loaded(self, tmp_path):
        (tmp_path / "main.yaml").write_text(yaml.dump({
            'environment': "production",
            'storage': {'database_path': "/var/lib/dualtab/sync.db", 'history_limit': 20},
            'auto_sync': {'upload_delay_ms': 5000},
        }), encoding='utf-8')

        config = ConfigManager(tmp_path).load_config()

        assert config.environment == "production"
        assert config.storage.database_path == "/var/lib/dualtab/sync.db"
        assert config.storage.history_limit == 20
        assert config.auto_sync.upload_delay_ms == 5000
        assert config.auto_sync.enable_auto_upload is True

    def test_unknown_keys_are_ignored(self, tmp_path):
        (tmp_path / "main.yaml").write_text(yaml.dump({
            'lock': {'ttl_seconds': 60, 'retries': 3},
            'plugins': ["x"],
        }), encoding='utf-8')

        config = ConfigManager(tmp_path).load_config()

        assert config.lock.ttl_seconds == 60

    def test_env_overrides(self, tmp_path, monkeypatch):
        """環境変数は設定ファイルより優先"""
        (tmp_path / "main.yaml").write_text(yaml.dump({'lock': {'ttl_seconds': 60}}), encoding='utf-8')
        monkeypatch.setenv("DUALTAB_LOCK_TTL", "120")
        monkeypatch.setenv("DUALTAB_DEBUG", "true")
        monkeypatch.setenv("DUALTAB_LOG_LEVEL", "debug")
        monkeypatch.setenv("DUALTAB_DB_PATH", str(tmp_path / "env.db"))

        config = ConfigManager(tmp_path).load_config()

        assert config.lock.ttl_seconds == 120
        assert config.debug is True
        assert config.logging.level == "DEBUG"
        assert config.storage.database_path == str(tmp_path / "env.db")

    def test_invalid_env_value_is_skipped(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DUALTAB_LOCK_TTL", "forever")

        config = ConfigManager(tmp_path).load_config()

        assert config.lock.ttl_seconds == 300

    def test_broken_yaml_falls_back_to_defaults(self, tmp_path):
        (tmp_path / "main.yaml").write_text("storage: [unclosed", encoding='utf-8')

        assert ConfigManager(tmp_path).load_config() == SyncEngineConfig()

    def test_config_is_cached(self, tmp_path):
        manager = ConfigManager(tmp_path)

        assert manager.load_config() is manager.load_config()
        assert manager.load_config(reload=True) is not None

    def test_save_template(self, tmp_path):
        """テンプレートは暗号化キーを含まない"""
        manager = ConfigManager(tmp_path / "config")

        path = manager.save_config_template()

        template = yaml.safe_load(path.read_text(encoding='utf-8'))
        assert 'security' not in template
        assert template['lock']['ttl_seconds'] == 300
        assert manager.load_config() == SyncEngineConfig()


class TestSecurityManager:
    """パスワード暗号化のテスト"""

    def test_seal_and_unseal(self):
        security = SecurityManager(Fernet.generate_key().decode())

        sealed = security.seal("secret")

        assert sealed.startswith("encrypted:")
        assert security.unseal(sealed) == "secret"

    def test_disabled_without_key(self):
        security = SecurityManager()

        assert not security.is_enabled
        assert security.seal("secret") == "secret"
        assert security.unseal("secret") == "secret"

    def test_wrong_key_returns_stored_value(self):
        sealed = SecurityManager(Fernet.generate_key().decode()).seal("secret")

        other = SecurityManager(Fernet.generate_key().decode())
        assert other.unseal(sealed) != "secret"


class TestErrorClassification:
    """エラー分類のテスト"""

    @pytest.mark.parametrize("error, expected", [
        (ConfigInvalidError(), SyncErrorType.CONFIG_INVALID),
        (SyncInProgressError(), SyncErrorType.SYNC_IN_PROGRESS),
        (aiohttp.ClientConnectionError("refused"), SyncErrorType.NETWORK_ERROR),
        (asyncio.TimeoutError(), SyncErrorType.NETWORK_ERROR),
        (RuntimeError("Network unreachable"), SyncErrorType.NETWORK_ERROR),
        (KeyError("bookmarks"), SyncErrorType.UNKNOWN),
    ])
    def test_classify_error(self, error, expected):
        assert classify_error(error) == expected

    def test_error_response_uses_default_message(self):
        response = error_response(SyncInProgressError())

        assert response == {
            'success': False,
            'error': "SyncInProgress",
            'message': "A sync operation is already in progress",
        }

    def test_error_handler_counts(self):
        handler = ErrorHandler()

        handler.handle_error(SyncInProgressError(), "upload")
        handler.handle_error(SyncInProgressError(), "sync")
        handler.handle_error(ValueError("boom"), "sync")

        assert handler.get_error_counts() == {"SyncInProgress": 2, "Unknown": 1}


class TestLogging:
    """ログ設定のテスト"""

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "sync.log"

        logger = setup_logging({'level': "debug", 'file_path': str(log_file)})
        logger.info("Sync engine started", device_id="device_test")

        assert logger.log_level == LogLevel.DEBUG
        assert "Sync engine started" in log_file.read_text(encoding='utf-8')

    def test_operation_metrics(self):
        logger = setup_logging({'level': "INFO"})

        context = logger.log_operation_start("upload", task_id="upload_1")
        logger.log_operation_end(context, success=True)
        context = logger.log_operation_start("upload", task_id="upload_2")
        logger.log_operation_end(context, success=False, error_type="NetworkError")

        health = logger.get_health_status()
        assert health['total_operations'] == 2
        assert health['errors_by_type'] == {"upload:NetworkError": 1}
