"""
設定管理システム - YAML設定ファイルと環境変数オーバーライド
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from ..core.models import DEFAULT_DAYS
from ..utils.enhanced_logger import get_logger

logger = get_logger()


@dataclass
class StorageConfig:
    """ストレージ設定"""
    database_path: str = "data/todos.db"
    days: List[str] = field(default_factory=lambda: list(DEFAULT_DAYS))


@dataclass
class SyncConfig:
    """同期設定"""
    api_url: str = "http://localhost:8080"
    sync_path: str = "/sync"
    timeout_seconds: Optional[float] = 30


@dataclass
class LoggingConfig:
    """ログ設定"""
    name: str = "todo_sync"
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True
    structured: bool = True


@dataclass
class TodoSyncConfig:
    """設定メインクラス"""
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    environment: str = "development"  # development, staging, production

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SECTION_TYPES = {
    'storage': StorageConfig,
    'sync': SyncConfig,
    'logging': LoggingConfig,
}


def _parse_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


class ConfigManager:
    """設定管理メインクラス"""

    # 環境変数 -> (設定パス, 変換関数)
    ENV_OVERRIDES = {
        'TODO_SYNC_DB_PATH': ('storage.database_path', str),
        'TODO_SYNC_LOG_LEVEL': ('logging.level', str),
        'TODO_SYNC_DEBUG': ('debug', _parse_bool),
        'TODO_SYNC_ENVIRONMENT': ('environment', str),
    }
    # 先に見つかったものを採用（VITE_API_URL はWeb/デスクトップ版との互換）
    API_URL_ENV_KEYS = ('TODO_SYNC_API_URL', 'VITE_API_URL')

    def __init__(self, config_dir: Union[str, Path] = "config"):
        self.config_dir = Path(config_dir)
        self._config_cache: Optional[TodoSyncConfig] = None

    def load_config(self, reload: bool = False) -> TodoSyncConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        section_configs = {
            name: self._load_yaml_file(self.config_dir / f"{name}.yaml")
            for name in SECTION_TYPES
        }

        merged_config = self._merge_configs(main_config, section_configs)
        merged_config = self._apply_env_overrides(merged_config)
        self._config_cache = self._create_config_object(merged_config)

        logger.info(
            "Configuration loaded",
            config_dir=str(self.config_dir),
            environment=self._config_cache.environment,
            api_url=self._config_cache.sync.api_url,
            operation="config_load"
        )
        return self._config_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み（存在しない・壊れている場合は空）"""
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Config file is not a mapping: {file_path}", operation="config_load")
            return {}
        return data

    def _merge_configs(self, main_config: Dict, section_configs: Dict) -> Dict:
        """セクション別ファイルは main.yaml の同名セクションに重ねる"""
        merged = dict(main_config)
        for name, section in section_configs.items():
            if section:
                base = merged.get(name) if isinstance(merged.get(name), dict) else {}
                merged[name] = {**base, **section}
        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        for env_key in self.API_URL_ENV_KEYS:
            env_value = os.getenv(env_key)
            if env_value:
                self._set_nested_value(config, 'sync.api_url', env_value)
                break

        for env_key, (config_path, converter) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value:
                self._set_nested_value(config, config_path, converter(env_value))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> TodoSyncConfig:
        """設定辞書からdataclassを生成（未知のキーは無視）"""
        try:
            sections = {}
            for name, section_type in SECTION_TYPES.items():
                values = config_dict.get(name) or {}
                if not isinstance(values, dict):
                    raise TypeError(f"Section '{name}' must be a mapping")
                known = {f.name for f in fields(section_type)}
                sections[name] = section_type(**{k: v for k, v in values.items() if k in known})

            config = TodoSyncConfig(
                debug=bool(config_dict.get('debug', False)),
                environment=str(config_dict.get('environment', 'development')),
                **sections
            )
        except (TypeError, ValueError) as e:
            logger.error("Invalid configuration, using defaults", error=e, operation="config_load")
            return TodoSyncConfig()

        if not config.storage.days:
            logger.warning("No day partitions configured, using defaults", operation="config_load")
            config.storage.days = list(DEFAULT_DAYS)
        return config

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.config_dir / "main.yaml"
        if file_path.exists():
            return

        with open(file_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(TodoSyncConfig().to_dict(), f, default_flow_style=False,
                           allow_unicode=True, sort_keys=False)
        logger.info(f"Created config template: {file_path}")


# グローバルインスタンス
_global_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_dir: Union[str, Path] = "config") -> ConfigManager:
    """グローバル設定マネージャーの取得"""
    global _global_config_manager

    if _global_config_manager is None:
        _global_config_manager = ConfigManager(config_dir)

    return _global_config_manager


def get_config(reload: bool = False) -> TodoSyncConfig:
    """設定の取得"""
    return get_config_manager().load_config(reload)
