"""
統合テスト共通フィクスチャ
"""

import pytest
import tempfile
from pathlib import Path
import sys
import os

sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from todo_sync.layers.storage_layer.database import TodoDatabase
from todo_sync.layers.storage_layer.todo_store import TodoStore


@pytest.fixture
async def database():
    """テンポラリデータベース"""
    with tempfile.TemporaryDirectory() as temp_dir:
        db = TodoDatabase(Path(temp_dir) / "todos.db")
        await db.initialize()
        yield db
        await db.close()


@pytest.fixture
async def store(database):
    """テンポラリTodoストア"""
    return TodoStore(database)
