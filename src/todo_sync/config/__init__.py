"""設定管理"""

from .sync_config import ConfigManager, TodoSyncConfig, get_config

__all__ = ['ConfigManager', 'TodoSyncConfig', 'get_config']
