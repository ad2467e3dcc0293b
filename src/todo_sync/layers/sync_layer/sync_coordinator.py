"""
同期コーディネーター - 1ラウンドの同期を統括
エクスポート → ID確認 → 交換 → マージ適用 → 同期記録
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from ...core.exceptions import NoIdentityError, SyncStage, TodoSyncError, ValidationError
from ...core.models import utc_now
from ...utils.enhanced_logger import get_logger
from .peer_registry import PeerRegistry
from .transport import SyncTransport

if TYPE_CHECKING:
    from ..storage_layer.todo_store import TodoStore

logger = get_logger()


@dataclass
class SyncResult:
    """同期結果"""
    peer_id: str
    local_count: int
    remote_count: int
    updated: int
    inserted: int
    discarded: int
    skipped_ids: list = field(default_factory=list)
    sync_time: datetime = field(default_factory=utc_now)

    def summary(self) -> str:
        return (f"Sync with {self.peer_id}: "
                f"{self.local_count} sent, "
                f"{self.remote_count} received, "
                f"{self.updated} updated, "
                f"{self.inserted} inserted, "
                f"{self.discarded} discarded")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "local_count": self.local_count,
            "remote_count": self.remote_count,
            "updated": self.updated,
            "inserted": self.inserted,
            "discarded": self.discarded,
            "skipped_ids": list(self.skipped_ids),
            "sync_time": self.sync_time.isoformat(),
        }


class SyncCoordinator:
    """同期ラウンドの実行

    ストアのロックはローカル読み取り（エクスポート）と書き込み（適用・記録）の間だけ
    保持され、交換中はどちらのロックも保持しない。どの段階で失敗してもローカル状態と
    接続ステータスはラウンド開始前のまま。リトライは行わない。
    """

    def __init__(self, store: "TodoStore", registry: PeerRegistry, transport: SyncTransport):
        self.store = store
        self.registry = registry
        self.transport = transport

    async def run_sync(self, peer_id: Optional[str] = None) -> SyncResult:
        target = peer_id or self.transport.peer_id
        op_context = logger.log_operation_start("sync_round", peer_id=target)
        stage = SyncStage.EXPORT

        try:
            snapshot = await self.store.export_all()

            stage = SyncStage.IDENTITY
            local_id = self.registry.peer_id
            if local_id is None:
                raise NoIdentityError("No local peer identity; connect first")

            if target == local_id:
                raise ValidationError("Cannot sync with the local peer identity")

            # 交換・適用・記録は1つの接続試行。途中で失敗すれば試行前のステータスに戻る
            async with self.registry.attempt():
                stage = SyncStage.EXCHANGE
                remote = await self.transport.exchange(snapshot, local_id)

                stage = SyncStage.APPLY
                sync_time = utc_now()

                async def record(db):
                    nonlocal stage
                    stage = SyncStage.RECORD
                    await self.registry.write_sync_record(db, target, sync_time,
                                                          device_type=self.transport.device_type)

                # マージと同期記録は同じトランザクションでコミットされる
                merge_result = await self.store.import_merge(remote, record_hook=record)
                await self.registry.mark_synced(target, sync_time)

        except TodoSyncError as e:
            e.stage = e.stage or stage
            logger.log_operation_end(op_context, success=False,
                                     stage=e.stage.value,
                                     error_type=e.__class__.__name__,
                                     error_message=e.message)
            raise

        result = SyncResult(
            peer_id=target,
            local_count=len(snapshot),
            remote_count=len(remote),
            updated=len(merge_result.updates),
            inserted=len(merge_result.inserted_ids),
            discarded=merge_result.discarded,
            skipped_ids=list(merge_result.skipped_ids),
            sync_time=sync_time,
        )
        logger.log_operation_end(op_context, success=True, summary=result.summary())
        return result
