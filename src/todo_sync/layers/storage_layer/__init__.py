"""
ストレージ層 - Todoとピア接続の永続化
"""

from .database import TodoDatabase
from .todo_store import TodoStore

__all__ = ['TodoDatabase', 'TodoStore']
