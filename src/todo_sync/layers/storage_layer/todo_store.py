"""
Todoストア - Todoレコードの唯一の書き手
日パーティションごとの並び順管理とLWWマージの適用
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from ...core.exceptions import NotFoundError, ValidationError
from ...core.models import DEFAULT_DAYS, Todo, format_timestamp, parse_timestamp, utc_now
from ..sync_layer.merge_engine import MergeEngine, MergeResult
from .database import TodoDatabase

logger = logging.getLogger(__name__)

TODO_COLUMNS = "id, day, content, position, last_modified"


class TodoStore:
    """Todo永続化ストア

    すべての操作は TodoDatabase のロック下で1つずつ実行される。
    """

    def __init__(self,
                 database: TodoDatabase,
                 days: Sequence[str] = DEFAULT_DAYS,
                 merge_engine: Optional[MergeEngine] = None):
        self.database = database
        self.days = tuple(days)
        self.merge_engine = merge_engine or MergeEngine()
        self._last_stamp: Optional[datetime] = None

    # -- 検証・採番 ------------------------------------------------------

    def _validate_day(self, day: str):
        if day not in self.days:
            raise ValidationError(f"Unknown day partition: {day!r}")

    @staticmethod
    def _validate_content(content: Any) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Todo content must be a non-empty string")
        return content

    def _next_timestamp(self, floor: Optional[datetime] = None) -> datetime:
        """単調増加のタイムスタンプ（floorより必ず新しい）"""
        stamp = utc_now()
        for bound in (self._last_stamp, floor):
            if bound is not None and stamp <= bound:
                stamp = bound + timedelta(microseconds=1)
        self._last_stamp = stamp
        return stamp

    @staticmethod
    def _row_to_todo(row: aiosqlite.Row) -> Todo:
        return Todo(
            id=row['id'],
            day=row['day'],
            content=row['content'],
            position=row['position'],
            last_modified=parse_timestamp(row['last_modified']),
        )

    async def _fetch_one(self, db: aiosqlite.Connection, todo_id: int) -> Optional[Todo]:
        cursor = await db.execute(f"SELECT {TODO_COLUMNS} FROM todos WHERE id = ?", (todo_id,))
        row = await cursor.fetchone()
        return self._row_to_todo(row) if row else None

    async def _fetch_all(self, db: aiosqlite.Connection) -> List[Todo]:
        cursor = await db.execute(f"SELECT {TODO_COLUMNS} FROM todos ORDER BY id ASC")
        rows = await cursor.fetchall()
        return [self._row_to_todo(row) for row in rows]

    @staticmethod
    async def _next_position(db: aiosqlite.Connection, day: str) -> int:
        cursor = await db.execute(
            "SELECT COALESCE(MAX(position) + 1, 0) FROM todos WHERE day = ?", (day,)
        )
        row = await cursor.fetchone()
        return row[0]

    # -- 読み取り --------------------------------------------------------

    async def list(self, day: str) -> List[Todo]:
        """日パーティションのTodoを並び順で取得"""
        self._validate_day(day)
        async with self.database.reader() as db:
            cursor = await db.execute(
                f"SELECT {TODO_COLUMNS} FROM todos WHERE day = ? ORDER BY position ASC, id ASC",
                (day,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_todo(row) for row in rows]

    async def get(self, todo_id: int) -> Todo:
        async with self.database.reader() as db:
            todo = await self._fetch_one(db, todo_id)
        if todo is None:
            raise NotFoundError(f"Todo {todo_id} not found", record_id=todo_id)
        return todo

    async def export_all(self) -> List[Todo]:
        """全件スナップショット（ID順）"""
        async with self.database.reader() as db:
            return await self._fetch_all(db)

    async def list_days(self) -> Dict[str, int]:
        """日パーティションごとの件数"""
        counts = {day: 0 for day in self.days}
        async with self.database.reader() as db:
            cursor = await db.execute("SELECT day, COUNT(*) AS total FROM todos GROUP BY day")
            rows = await cursor.fetchall()
        for row in rows:
            counts[row['day']] = row['total']
        return counts

    # -- 書き込み --------------------------------------------------------

    async def create(self, day: str, content: str) -> int:
        """新しいTodoを日パーティションの末尾に追加"""
        self._validate_day(day)
        self._validate_content(content)

        async with self.database.transaction() as db:
            position = await self._next_position(db, day)
            stamp = self._next_timestamp()
            cursor = await db.execute(
                "INSERT INTO todos (day, content, position, last_modified) VALUES (?, ?, ?, ?)",
                (day, content, position, format_timestamp(stamp)),
            )
            todo_id = cursor.lastrowid

        logger.debug(f"Todo created: {todo_id} ({day}, position {position})")
        return todo_id

    async def delete(self, todo_id: int) -> bool:
        """Todoを削除（存在しなければ何もしない）"""
        async with self.database.transaction() as db:
            cursor = await db.execute("DELETE FROM todos WHERE id = ?", (todo_id,))
            removed = cursor.rowcount > 0

        if removed:
            logger.debug(f"Todo deleted: {todo_id}")
        return removed

    async def update_content(self, todo_id: int, content: str) -> Todo:
        """本文の編集"""
        self._validate_content(content)

        async with self.database.transaction() as db:
            todo = await self._fetch_one(db, todo_id)
            if todo is None:
                raise NotFoundError(f"Todo {todo_id} not found", record_id=todo_id)

            todo.content = content
            todo.last_modified = self._next_timestamp(floor=todo.last_modified)
            await db.execute(
                "UPDATE todos SET content = ?, last_modified = ? WHERE id = ?",
                (todo.content, format_timestamp(todo.last_modified), todo_id),
            )

        logger.debug(f"Todo content updated: {todo_id}")
        return todo

    async def move_to_day(self, todo_id: int, new_day: str) -> Todo:
        """Todoを別の日パーティションへ移動（末尾に追加）"""
        self._validate_day(new_day)

        async with self.database.transaction() as db:
            todo = await self._fetch_one(db, todo_id)
            if todo is None:
                raise NotFoundError(f"Todo {todo_id} not found", record_id=todo_id)

            if todo.day != new_day:
                todo.position = await self._next_position(db, new_day)
                todo.day = new_day
            todo.last_modified = self._next_timestamp(floor=todo.last_modified)
            await db.execute(
                "UPDATE todos SET day = ?, position = ?, last_modified = ? WHERE id = ?",
                (todo.day, todo.position, format_timestamp(todo.last_modified), todo_id),
            )

        logger.debug(f"Todo moved: {todo_id} -> {new_day}")
        return todo

    async def replace_order(self, day: str, ordered_content: Iterable[Any]) -> List[Todo]:
        """日パーティションを丸ごと置き換える（差分ではない）

        day に現在あるTodoはすべて削除され、渡された内容が新しいID・連番position・
        新しいタイムスタンプで再挿入される。渡さなかったTodoは失われる。
        """
        self._validate_day(day)
        contents = [self._validate_content(self._content_of(item)) for item in ordered_content]

        created: List[Todo] = []
        async with self.database.transaction() as db:
            await db.execute("DELETE FROM todos WHERE day = ?", (day,))
            for position, content in enumerate(contents):
                stamp = self._next_timestamp()
                cursor = await db.execute(
                    "INSERT INTO todos (day, content, position, last_modified) VALUES (?, ?, ?, ?)",
                    (day, content, position, format_timestamp(stamp)),
                )
                created.append(Todo(
                    id=cursor.lastrowid,
                    day=day,
                    content=content,
                    position=position,
                    last_modified=stamp,
                ))

        logger.debug(f"Day {day} replaced with {len(created)} todos")
        return created

    @staticmethod
    def _content_of(item: Any) -> Any:
        if isinstance(item, Todo):
            return item.content
        if isinstance(item, dict):
            return item.get('content')
        return item

    async def import_merge(self,
                           remote_snapshot: Iterable[Todo],
                           record_hook: Optional[Callable[[aiosqlite.Connection], Awaitable[None]]] = None
                           ) -> MergeResult:
        """外部スナップショットをLWWでマージし、結果を1トランザクションで適用

        record_hook は同じトランザクション内でマージ適用後に呼ばれる。
        フックが失敗するとマージもロールバックされる。
        """
        remote = list(remote_snapshot)
        for todo in remote:
            self._validate_day(todo.day)

        async with self.database.transaction() as db:
            local = await self._fetch_all(db)
            result = self.merge_engine.merge(local, remote)

            for todo in result.updates:
                await db.execute(
                    "UPDATE todos SET day = ?, content = ?, position = ?, last_modified = ? WHERE id = ?",
                    (todo.day, todo.content, todo.position,
                     format_timestamp(todo.last_modified), todo.id),
                )

            for todo in result.inserts:
                # ID空間の衝突は無視（同期でローカルストアを壊さない）
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO todos (id, day, content, position, last_modified) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (todo.id, todo.day, todo.content, todo.position,
                     format_timestamp(todo.last_modified)),
                )
                if cursor.rowcount > 0:
                    result.inserted_ids.append(todo.id)
                else:
                    result.skipped_ids.append(todo.id)

            if record_hook is not None:
                await record_hook(db)

        if result.skipped_ids:
            logger.warning(f"Ignored colliding remote ids: {result.skipped_ids}")
        logger.info(f"Snapshot merged: {result.summary()}")
        return result
