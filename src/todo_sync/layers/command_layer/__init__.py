"""
コマンド層 - UI/CLI向けの操作窓口
"""

from .commands import CommandResult, TodoSyncApp
from .error_handler import ErrorType, classify_error

__all__ = ['CommandResult', 'TodoSyncApp', 'ErrorType', 'classify_error']
