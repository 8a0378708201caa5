"""
同期エンジン設定管理 - YAML設定ファイルと環境変数オーバーライド
"""

import os
import base64
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional, Union

import yaml
from cryptography.fernet import Fernet

from ..utils.enhanced_logger import get_logger

logger = get_logger()

ENCRYPTED_PREFIX = "encrypted:"


@dataclass
class StorageConfig:
    """ストレージ設定"""
    database_path: str = "data/dualtab_sync.db"
    history_limit: int = 100


@dataclass
class SchedulerConfig:
    """定期同期スケジューラー設定"""
    min_interval_minutes: int = 1
    max_interval_minutes: int = 1440
    default_interval_minutes: int = 30
    unit_seconds: float = 60.0


@dataclass
class AutoSyncDefaults:
    """自動同期のデフォルト値"""
    enable_auto_upload: bool = True
    enable_auto_download: bool = True
    upload_delay_ms: int = 2000
    download_on_page_open: bool = True
    check_remote_freshness: bool = True


@dataclass
class LockConfig:
    """同期ロック設定"""
    ttl_seconds: int = 300


@dataclass
class RemoteConfig:
    """リモートサービス設定"""
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class SecurityConfig:
    """セキュリティ設定"""
    encryption_key: Optional[str] = None


@dataclass
class SyncEngineConfig:
    """同期エンジン設定メインクラス"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    auto_sync: AutoSyncDefaults = field(default_factory=AutoSyncDefaults)
    lock: LockConfig = field(default_factory=LockConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    debug: bool = False
    version: str = "2.0.0"
    environment: str = "development"


SECTION_TYPES = {f.name: f.default_factory for f in fields(SyncEngineConfig) if f.default_factory is not None}


class SecurityManager:
    """セキュリティ管理クラス"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key
        self.cipher = Fernet(encryption_key.encode()) if encryption_key else None

    @property
    def is_enabled(self) -> bool:
        return self.cipher is not None

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        if not self.cipher:
            return value

        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化"""
        if not self.cipher:
            return encrypted_value

        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except Exception as e:
            logger.error("Decryption failed", error=e, operation="decrypt")
            return encrypted_value

    def seal(self, value: str) -> str:
        """保存用に暗号化し接頭辞を付与"""
        if not self.cipher or not value:
            return value
        return ENCRYPTED_PREFIX + self.encrypt_value(value)

    def unseal(self, value: str) -> str:
        if isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
            return self.decrypt_value(value[len(ENCRYPTED_PREFIX):])
        return value


class ConfigManager:
    """設定管理メインクラス"""

    ENV_OVERRIDES = {
        'DUALTAB_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
        'DUALTAB_ENVIRONMENT': ('environment', str),
        'DUALTAB_LOG_LEVEL': ('logging.level', str.upper),
        'DUALTAB_DB_PATH': ('storage.database_path', str),
        'DUALTAB_ENCRYPTION_KEY': ('security.encryption_key', str),
        'DUALTAB_LOCK_TTL': ('lock.ttl_seconds', int),
    }

    def __init__(self, config_dir: Union[str, Path] = "config"):
        self.config_dir = Path(config_dir)
        self._config_cache: Optional[SyncEngineConfig] = None

    def load_config(self, reload: bool = False) -> SyncEngineConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        merged_config = self._apply_env_overrides(main_config)
        self._config_cache = self._create_config_object(merged_config)

        logger.info(
            "Configuration loaded successfully",
            environment=self._config_cache.environment,
            version=self._config_cache.version,
            operation="config_load"
        )
        return self._config_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e)
            return {}

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        for env_key, (config_path, converter) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error=str(e))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> SyncEngineConfig:
        """設定辞書から設定オブジェクトを作成"""
        kwargs = {}
        for name, value in config_dict.items():
            if name in SECTION_TYPES and isinstance(value, dict):
                section_cls = SECTION_TYPES[name]
                known = {f.name for f in fields(section_cls)}
                unknown = set(value) - known
                if unknown:
                    logger.warning(f"Ignoring unknown keys in section '{name}'", keys=sorted(unknown))
                kwargs[name] = section_cls(**{k: v for k, v in value.items() if k in known})
            elif name in ('debug', 'version', 'environment'):
                kwargs[name] = value
            else:
                logger.warning(f"Ignoring unknown config entry: {name}")

        return SyncEngineConfig(**kwargs)

    def save_config_template(self) -> Path:
        """設定ファイルテンプレートの作成"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.config_dir / "main.yaml"
        if file_path.exists():
            logger.info(f"Config file already exists: {file_path}")
            return file_path

        template = asdict(SyncEngineConfig())
        # 暗号化キーはテンプレートに書き出さない
        template.pop('security', None)

        with open(file_path, 'w', encoding='utf-8') as f:
            yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
        logger.info(f"Created config template: {file_path}")
        return file_path


if __name__ == "__main__":
    import sys

    # 使い方: python -m dualtab_sync.config.sync_config [config_dir]
    manager = ConfigManager(sys.argv[1] if len(sys.argv) > 1 else "config")
    template_path = manager.save_config_template()
    engine_config = manager.load_config()

    print(f"Template: {template_path}")
    print(f"Database: {engine_config.storage.database_path}")
    print(f"Lock TTL: {engine_config.lock.ttl_seconds}s")
    print(f"Scheduler: {engine_config.scheduler.min_interval_minutes}-"
          f"{engine_config.scheduler.max_interval_minutes} min")
    print(f"Password encryption: {SecurityManager(engine_config.security.encryption_key).is_enabled}")
