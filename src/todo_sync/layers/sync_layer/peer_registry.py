"""
ピアレジストリ - 既知ピアとローカルノードの接続状態を管理
接続ステータスは models.transition() の状態遷移表でのみ変化する
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, FrozenSet, List, Optional

import aiosqlite

from ...core.exceptions import NotFoundError, ValidationError
from ...core.models import (
    PeerConnection, PeerState, SyncEvent, SyncStatus,
    format_timestamp, parse_timestamp, transition, utc_now,
)

if TYPE_CHECKING:
    from ..storage_layer.database import TodoDatabase

logger = logging.getLogger(__name__)

UPSERT_CONNECTION_SQL = """
INSERT INTO peer_connections (peer_id, device_name, device_type, sync_status)
VALUES (?, ?, ?, ?)
ON CONFLICT(peer_id) DO UPDATE SET
    device_name = COALESCE(excluded.device_name, peer_connections.device_name),
    device_type = COALESCE(excluded.device_type, peer_connections.device_type),
    sync_status = excluded.sync_status
"""

UPSERT_SYNC_RECORD_SQL = """
INSERT INTO peer_connections (peer_id, last_sync, device_type, sync_status)
VALUES (?, ?, ?, ?)
ON CONFLICT(peer_id) DO UPDATE SET
    last_sync = excluded.last_sync,
    device_type = COALESCE(excluded.device_type, peer_connections.device_type),
    sync_status = excluded.sync_status
"""


class PeerRegistry:
    """ピア接続状態の管理

    メモリ上の PeerState は専用ロックで、PeerConnection 行はストアのロックで保護する。
    2つのロックを同時に保持することはない。
    """

    def __init__(self, database: "TodoDatabase"):
        self.database = database
        self._state = PeerState()
        self._lock = asyncio.Lock()
        self._pending_attempts = 0

    # -- 状態参照 --------------------------------------------------------

    @property
    def peer_id(self) -> Optional[str]:
        return self._state.peer_id

    @property
    def connected_peers(self) -> FrozenSet[str]:
        return frozenset(self._state.connected_peers)

    @property
    def last_sync(self) -> Optional[datetime]:
        return self._state.last_sync

    def status(self) -> SyncStatus:
        return self._state.sync_status

    def is_connected(self) -> bool:
        return (self._state.sync_status == SyncStatus.CONNECTED
                and self._state.peer_id is not None
                and bool(self._state.connected_peers))

    def _apply(self, event: SyncEvent):
        previous = self._state.sync_status
        self._state.sync_status = transition(previous, event)
        if previous != self._state.sync_status:
            logger.debug(f"Sync status {previous.value} -> {self._state.sync_status.value}")

    def _ensure_identity(self) -> str:
        if self._state.peer_id is None:
            self._state.peer_id = str(uuid.uuid4())
            logger.info(f"Local peer identity assigned: {self._state.peer_id}")
        return self._state.peer_id

    # -- 接続試行 --------------------------------------------------------

    @asynccontextmanager
    async def attempt(self) -> AsyncIterator[None]:
        """接続試行の区間（失敗時は試行前のステータスに戻す）"""
        async with self._lock:
            self._pending_attempts += 1
            self._apply(SyncEvent.BEGIN_CONNECT)

        try:
            yield
        except BaseException:
            async with self._lock:
                self._pending_attempts -= 1
                # 並行する試行が残っていれば connecting を維持する
                if self._pending_attempts == 0:
                    self._apply(SyncEvent.CONNECT_FAILED)
            raise

        async with self._lock:
            self._pending_attempts -= 1
            self._apply(SyncEvent.CONNECT_SUCCEEDED)

    async def connect(self,
                      peer_id: Optional[str] = None,
                      device_name: Optional[str] = None,
                      device_type: Optional[str] = None) -> str:
        """ピアへ接続（peer_id省略時はローカルIDの採番のみ）

        peer_id を省略した呼び出しは connected_peers に何も追加しないため、
        直後の is_connected() は False のままになる。
        """
        if peer_id is not None and (not isinstance(peer_id, str) or not peer_id.strip()):
            raise ValidationError(f"Invalid peer id: {peer_id!r}")

        async with self.attempt():
            async with self._lock:
                local_id = self._ensure_identity()

            if peer_id is None:
                return local_id

            if peer_id == local_id:
                raise ValidationError("Cannot connect to the local peer identity")

            async with self.database.transaction() as db:
                await db.execute(UPSERT_CONNECTION_SQL, (
                    peer_id, device_name, device_type, SyncStatus.CONNECTED.value
                ))

            async with self._lock:
                self._state.connected_peers.add(peer_id)

        logger.info(f"Peer connected: {peer_id}")
        return peer_id

    async def disconnect(self, peer_id: str):
        """ピアを切断（最後のピアならステータスを disconnected に）"""
        async with self.database.transaction() as db:
            cursor = await db.execute(
                "UPDATE peer_connections SET sync_status = ? WHERE peer_id = ?",
                (SyncStatus.DISCONNECTED.value, peer_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Unknown peer: {peer_id}", record_id=peer_id)

        async with self._lock:
            if peer_id not in self._state.connected_peers:
                return
            self._state.connected_peers.discard(peer_id)
            if not self._state.connected_peers:
                self._apply(SyncEvent.LAST_PEER_REMOVED)

        logger.info(f"Peer disconnected: {peer_id}")

    # -- 同期記録 --------------------------------------------------------

    async def record_sync(self, peer_id: str, when: Optional[datetime] = None) -> datetime:
        """同期成功時刻の記録（未知のピアは行を作成）"""
        when = when or utc_now()
        async with self._lock:
            status = (SyncStatus.CONNECTED if peer_id in self._state.connected_peers
                      else SyncStatus.DISCONNECTED)

        async with self.database.transaction() as db:
            cursor = await db.execute(
                "UPDATE peer_connections SET last_sync = ? WHERE peer_id = ?",
                (format_timestamp(when), peer_id),
            )
            if cursor.rowcount == 0:
                await db.execute(
                    "INSERT INTO peer_connections (peer_id, last_sync, sync_status) VALUES (?, ?, ?)",
                    (peer_id, format_timestamp(when), status.value),
                )

        async with self._lock:
            self._state.last_sync = when
        return when

    async def write_sync_record(self,
                                db: aiosqlite.Connection,
                                peer_id: str,
                                when: datetime,
                                device_type: Optional[str] = None):
        """同期完了の行を書き込む（呼び出し側のトランザクション内で実行）"""
        await db.execute(UPSERT_SYNC_RECORD_SQL, (
            peer_id, format_timestamp(when), device_type, SyncStatus.CONNECTED.value
        ))

    async def mark_synced(self, peer_id: str, when: datetime):
        """コミット済みの同期結果をメモリ上の状態に反映"""
        async with self._lock:
            self._state.connected_peers.add(peer_id)
            self._state.last_sync = when
        logger.info(f"Peer synced: {peer_id}")

    async def get_connection(self, peer_id: str) -> Optional[PeerConnection]:
        async with self.database.reader() as db:
            cursor = await db.execute("SELECT * FROM peer_connections WHERE peer_id = ?", (peer_id,))
            row = await cursor.fetchone()
        return self._row_to_connection(row) if row else None

    async def list_connections(self) -> List[PeerConnection]:
        """既知ピアの一覧"""
        async with self.database.reader() as db:
            cursor = await db.execute("SELECT * FROM peer_connections ORDER BY peer_id ASC")
            rows = await cursor.fetchall()
        return [self._row_to_connection(row) for row in rows]

    @staticmethod
    def _row_to_connection(row: aiosqlite.Row) -> PeerConnection:
        return PeerConnection(
            peer_id=row['peer_id'],
            last_sync=parse_timestamp(row['last_sync']) if row['last_sync'] else None,
            device_name=row['device_name'],
            device_type=row['device_type'],
            sync_status=SyncStatus(row['sync_status']),
        )
