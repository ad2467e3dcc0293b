"""
コマンド層 - UI/CLIから呼ばれる操作の窓口
各操作はエラーを例外ではなく CommandResult として返す
"""

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, Optional

from ...config.sync_config import TodoSyncConfig, get_config
from ...core.exceptions import SyncStage, TodoSyncError, ValidationError
from ...core.models import SyncStatus
from ...utils.enhanced_logger import get_logger
from ..storage_layer.database import TodoDatabase
from ..storage_layer.todo_store import TodoStore
from ..sync_layer.peer_messages import PeerMessageHandler
from ..sync_layer.peer_registry import PeerRegistry
from ..sync_layer.sync_coordinator import SyncCoordinator
from ..sync_layer.transport import HttpSyncTransport, SyncTransport, parse_snapshot, snapshot_to_payload
from .error_handler import ErrorType, classify_error

logger = get_logger()


@dataclass
class CommandResult:
    """コマンド実行結果"""
    success: bool
    value: Any = None
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    stage: Optional[SyncStage] = None

    @classmethod
    def ok(cls, value: Any = None) -> "CommandResult":
        return cls(success=True, value=value)

    @classmethod
    def failure(cls, error: TodoSyncError) -> "CommandResult":
        return cls(
            success=False,
            error_type=classify_error(error),
            error_message=error.message,
            stage=error.stage,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error_type": self.error_type.value if self.error_type else None,
            "error_message": self.error_message,
            "stage": self.stage.value if self.stage else None,
        }


class TodoSyncApp:
    """コマンドサーフェス"""

    def __init__(self,
                 database: TodoDatabase,
                 store: TodoStore,
                 registry: PeerRegistry,
                 coordinator: SyncCoordinator,
                 config: Optional[TodoSyncConfig] = None):
        self.database = database
        self.store = store
        self.registry = registry
        self.coordinator = coordinator
        self.config = config or TodoSyncConfig()
        self.peer_messages = PeerMessageHandler(store)

    @classmethod
    async def open(cls,
                   config: Optional[TodoSyncConfig] = None,
                   transport: Optional[SyncTransport] = None) -> "TodoSyncApp":
        """設定から全コンポーネントを組み立てる"""
        config = config or get_config()

        database = TodoDatabase(config.storage.database_path)
        await database.initialize()

        store = TodoStore(database, days=config.storage.days)
        registry = PeerRegistry(database)
        transport = transport or HttpSyncTransport(
            base_url=config.sync.api_url,
            sync_path=config.sync.sync_path,
            timeout_seconds=config.sync.timeout_seconds,
        )
        coordinator = SyncCoordinator(store, registry, transport)

        logger.info("Todo sync app opened",
                    database=str(config.storage.database_path),
                    sync_peer=transport.peer_id)
        return cls(database, store, registry, coordinator, config)

    async def close(self):
        await self.database.close()

    async def __aenter__(self) -> "TodoSyncApp":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def _run(self, command: str, operation: Awaitable) -> CommandResult:
        try:
            value = await operation
        except TodoSyncError as e:
            logger.warning(f"Command failed: {command}",
                           operation=command,
                           error_type=e.__class__.__name__,
                           error_message=e.message,
                           stage=e.stage.value if e.stage else None)
            return CommandResult.failure(e)
        return CommandResult.ok(value)

    # -- Todo操作 --------------------------------------------------------

    async def add_todo(self, day: str, content: str) -> CommandResult:
        return await self._run("add_todo", self.store.create(day, content))

    async def list_todos(self, day: str) -> CommandResult:
        return await self._run("list_todos", self.store.list(day))

    async def edit_todo(self, todo_id: int, content: str) -> CommandResult:
        return await self._run("edit_todo", self.store.update_content(todo_id, content))

    async def delete_todo(self, todo_id: int) -> CommandResult:
        return await self._run("delete_todo", self.store.delete(todo_id))

    async def reorder_day(self, day: str, todos: Iterable[Any]) -> CommandResult:
        """日パーティションの破壊的な置き換え（全件を渡すこと）"""
        return await self._run("reorder_day", self.store.replace_order(day, todos))

    async def move_todo(self, todo_id: int, new_day: str) -> CommandResult:
        return await self._run("move_todo", self.store.move_to_day(todo_id, new_day))

    async def export_snapshot(self) -> CommandResult:
        return await self._run("export_snapshot", self._export_json())

    async def _export_json(self) -> str:
        snapshot = await self.store.export_all()
        return json.dumps(snapshot_to_payload(snapshot), ensure_ascii=False)

    async def import_snapshot(self, data: str) -> CommandResult:
        return await self._run("import_snapshot", self._import_json(data))

    async def _import_json(self, data: str):
        try:
            payload = json.loads(data)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Snapshot is not valid JSON: {e}") from e
        return await self.store.import_merge(parse_snapshot(payload))

    # -- ピア・同期 ------------------------------------------------------

    async def connect_peer(self,
                           peer_id: Optional[str] = None,
                           device_name: Optional[str] = None,
                           device_type: Optional[str] = None) -> CommandResult:
        return await self._run("connect_peer",
                               self.registry.connect(peer_id, device_name, device_type))

    async def disconnect_peer(self, peer_id: str) -> CommandResult:
        return await self._run("disconnect_peer", self.registry.disconnect(peer_id))

    async def list_peers(self) -> CommandResult:
        return await self._run("list_peers", self.registry.list_connections())

    def sync_status(self) -> SyncStatus:
        return self.registry.status()

    async def run_sync(self, peer_id: Optional[str] = None) -> CommandResult:
        return await self._run("run_sync", self.coordinator.run_sync(peer_id))

    async def handle_peer_message(self, message: Any) -> CommandResult:
        return await self._run("handle_peer_message", self.peer_messages.handle(message))
