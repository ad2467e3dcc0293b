"""
ピアメッセージ処理 - ピアから届いた変更通知をローカルストアに適用
"""

import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from ...core.exceptions import ValidationError
from ...core.models import Todo
from .transport import parse_snapshot, snapshot_to_payload

if TYPE_CHECKING:
    from ..storage_layer.todo_store import TodoStore

logger = logging.getLogger(__name__)

SYNC_REQUEST = "SYNC_REQUEST"
SYNC_RESPONSE = "SYNC_RESPONSE"
TODO_ADDED = "TODO_ADDED"
TODO_UPDATE = "TODO_UPDATE"
TODO_DELETED = "TODO_DELETED"
TODO_MOVED = "TODO_MOVED"
TODO_ORDER_UPDATED = "TODO_ORDER_UPDATED"


class PeerMessageHandler:
    """受信メッセージのディスパッチャ

    追加・移動はLWWマージ経由で適用するので、古いエコーは上書きしない。
    """

    def __init__(self, store: "TodoStore"):
        self.store = store
        self._handlers: Dict[str, Callable] = {
            SYNC_REQUEST: self._on_sync_request,
            SYNC_RESPONSE: self._on_sync_response,
            TODO_ADDED: self._on_todo_added,
            TODO_UPDATE: self._on_todo_update,
            TODO_DELETED: self._on_todo_deleted,
            TODO_MOVED: self._on_todo_moved,
            TODO_ORDER_UPDATED: self._on_order_updated,
        }
        self.messages_handled = 0
        self.messages_ignored = 0

    async def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        """メッセージを適用し、返信が必要なら返信メッセージを返す"""
        if not isinstance(message, dict):
            raise ValidationError("Peer message must be an object")

        message_type = message.get('type')
        if not isinstance(message_type, str):
            raise ValidationError("Peer message has no type")

        handler = self._handlers.get(message_type.upper())
        if handler is None:
            self.messages_ignored += 1
            logger.warning(f"Unknown peer message type: {message_type}")
            return None

        reply = await handler(message)
        self.messages_handled += 1
        return reply

    @staticmethod
    def _require(message: Dict[str, Any], key: str) -> Any:
        value = message.get(key)
        if value is None:
            raise ValidationError(f"Peer message {message.get('type')} is missing '{key}'")
        return value

    async def _on_sync_request(self, message):
        snapshot = await self.store.export_all()
        return {"type": SYNC_RESPONSE, "todos": snapshot_to_payload(snapshot)}

    async def _on_sync_response(self, message):
        remote = parse_snapshot(self._require(message, 'todos'))
        await self.store.import_merge(remote)

    async def _on_todo_added(self, message):
        todo = Todo.from_dict(self._require(message, 'todo'))
        await self.store.import_merge([todo])

    async def _on_todo_update(self, message):
        action = message.get('action')
        if action in ('add', 'move'):
            return await self._on_todo_added(message)
        if action == 'delete':
            todo = self._require(message, 'todo')
            if not isinstance(todo, dict) or 'id' not in todo:
                raise ValidationError("Delete message has no todo id")
            await self.store.delete(todo['id'])
            return None
        raise ValidationError(f"Unknown todo_update action: {action!r}")

    async def _on_todo_deleted(self, message):
        await self.store.delete(self._require(message, 'todoId'))

    async def _on_todo_moved(self, message):
        todo = Todo.from_dict(self._require(message, 'todo'))
        todo.day = self._require(message, 'newDay')
        await self.store.import_merge([todo])

    async def _on_order_updated(self, message):
        todos = self._require(message, 'todos')
        if not isinstance(todos, list):
            raise ValidationError("Order update must carry a todo list")
        await self.store.replace_order(self._require(message, 'day'), todos)
