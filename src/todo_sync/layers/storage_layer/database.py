"""
データベース接続管理 - 単一の永続接続と書き込みロック
スキーマの冪等作成と追加カラムマイグレーション
"""

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

import aiosqlite

from ...core.exceptions import StorageError
from ...core.models import EPOCH, format_timestamp

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

TODOS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS todos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    day TEXT NOT NULL,
    content TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    last_modified TEXT NOT NULL
)
"""

PEER_CONNECTIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS peer_connections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    peer_id TEXT NOT NULL UNIQUE,
    last_sync TEXT,
    device_name TEXT,
    device_type TEXT,
    sync_status TEXT NOT NULL DEFAULT 'disconnected'
)
"""

INDEXES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_todos_day_position ON todos(day, position)",
]

# テーブル -> [(カラム名, 追加DDL, 追加直後のバックフィルSQL)]
COLUMN_MIGRATIONS: Dict[str, List[Tuple[str, str, Optional[str]]]] = {
    "todos": [
        ("position", "INTEGER NOT NULL DEFAULT 0", "UPDATE todos SET position = id"),
        ("last_modified", f"TEXT NOT NULL DEFAULT '{format_timestamp(EPOCH)}'", None),
    ],
    "peer_connections": [
        ("last_sync", "TEXT", None),
        ("device_name", "TEXT", None),
        ("device_type", "TEXT", None),
        ("sync_status", "TEXT NOT NULL DEFAULT 'disconnected'", None),
    ],
}


class TodoDatabase:
    """永続接続とストアロックの所有者"""

    def __init__(self, database_path: Union[str, Path] = "data/todos.db"):
        if str(database_path) == MEMORY_DATABASE:
            self.database_path: Union[str, Path] = MEMORY_DATABASE
        else:
            self.database_path = Path(database_path)
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.lock = asyncio.Lock()
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    async def initialize(self) -> "TodoDatabase":
        """接続を開き、スキーマ作成とマイグレーションを行う"""
        if self._connection is not None:
            return self

        try:
            self._connection = await aiosqlite.connect(self.database_path)
            self._connection.row_factory = aiosqlite.Row
            async with self.lock:
                await self._create_tables()
                await self._migrate_columns()
                await self._create_indexes()
                await self._connection.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to initialize todo database {self.database_path}: {e}")
            await self.close()
            raise StorageError(f"Failed to initialize database: {e}") from e

        logger.info(f"Todo database initialized: {self.database_path}")
        return self

    async def close(self):
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await connection.close()
        logger.debug(f"Todo database closed: {self.database_path}")

    async def _create_tables(self):
        await self._connection.execute(TODOS_TABLE_SQL)
        await self._connection.execute(PEER_CONNECTIONS_TABLE_SQL)

    async def _create_indexes(self):
        for index_sql in INDEXES_SQL:
            await self._connection.execute(index_sql)

    async def _migrate_columns(self):
        """既存テーブルへの不足カラム追加（追加のみ・冪等）"""
        for table, columns in COLUMN_MIGRATIONS.items():
            existing = await self._column_names(table)
            for column, ddl, backfill_sql in columns:
                if column in existing:
                    continue
                await self._connection.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
                if backfill_sql:
                    await self._connection.execute(backfill_sql)
                logger.info(f"Migrated column {table}.{column}")

    async def _column_names(self, table: str) -> List[str]:
        cursor = await self._connection.execute(f"PRAGMA table_info({table})")
        rows = await cursor.fetchall()
        return [row['name'] for row in rows]

    def _require_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Database is not initialized")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """ストアロック下のトランザクション（全件コミットか全件ロールバック）"""
        async with self.lock:
            db = self._require_connection()
            try:
                yield db
                await db.commit()
            except sqlite3.Error as e:
                await db.rollback()
                logger.error(f"Transaction rolled back: {e}")
                raise StorageError(f"Database write failed: {e}") from e
            except BaseException:
                await db.rollback()
                raise

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[aiosqlite.Connection]:
        """ストアロック下の読み取り"""
        async with self.lock:
            db = self._require_connection()
            try:
                yield db
            except sqlite3.Error as e:
                logger.error(f"Database read failed: {e}")
                raise StorageError(f"Database read failed: {e}") from e
