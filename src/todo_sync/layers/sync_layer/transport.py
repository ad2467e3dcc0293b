"""
同期トランスポート - スナップショットの送受信
サーバー（HTTP /sync）と同一プロセス内のピアデバイスに対応
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List, Optional

import aiohttp

from ...core.exceptions import TransportError, ValidationError
from ...core.models import Todo

if TYPE_CHECKING:
    from ..storage_layer.todo_store import TodoStore

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_SYNC_PATH = "/sync"


def parse_snapshot(payload: Any) -> List[Todo]:
    """JSON配列（デコード済み）をTodoのリストに変換"""
    if not isinstance(payload, list):
        raise ValidationError(f"Snapshot must be a JSON array, got {type(payload).__name__}")
    return [Todo.from_dict(item) for item in payload]


def snapshot_to_payload(snapshot: List[Todo]) -> List[dict]:
    return [todo.to_dict() for todo in snapshot]


class SyncTransport(ABC):
    """交換相手（サーバーまたはピア）の抽象基底"""

    device_type: str = "unknown"

    def __init__(self, peer_id: str):
        self.peer_id = peer_id

    @abstractmethod
    async def exchange(self, snapshot: List[Todo], local_peer_id: str) -> List[Todo]:
        """ローカルのスナップショットを送り、相手のスナップショットを受け取る"""


class HttpSyncTransport(SyncTransport):
    """HTTPサーバーとの同期交換"""

    device_type = "server"

    def __init__(self,
                 base_url: str = DEFAULT_API_URL,
                 sync_path: str = DEFAULT_SYNC_PATH,
                 timeout_seconds: Optional[float] = 30,
                 peer_id: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.sync_path = sync_path if sync_path.startswith('/') else f"/{sync_path}"
        self.timeout_seconds = timeout_seconds
        super().__init__(peer_id or f"server:{self.base_url}")

    @property
    def sync_url(self) -> str:
        return f"{self.base_url}{self.sync_path}"

    async def exchange(self, snapshot: List[Todo], local_peer_id: str) -> List[Todo]:
        payload = snapshot_to_payload(snapshot)
        headers = {"X-Peer-Id": local_peer_id}
        # タイムアウトはHTTPクライアント側の責務（None なら無制限）
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.sync_url, json=payload, headers=headers) as response:
                    body = await response.read()
                    if response.status < 200 or response.status >= 300:
                        raise TransportError(
                            f"Sync server returned {response.status}: "
                            f"{body[:200].decode('utf-8', errors='replace')}",
                            status_code=response.status,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Sync exchange with {self.sync_url} failed: {e!r}")
            raise TransportError(f"Sync exchange failed: {e!r}") from e

        try:
            remote_payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Sync server returned invalid JSON: {e}") from e

        remote = parse_snapshot(remote_payload)
        logger.debug(f"Exchanged {len(snapshot)} local / {len(remote)} remote todos with {self.sync_url}")
        return remote


class LocalPeerTransport(SyncTransport):
    """同一プロセス内の別ストア（ピアデバイス）との交換

    SYNC_REQUEST / SYNC_RESPONSE の往復に相当する: 相手がこちらのスナップショットを
    マージしてから、自分の全件スナップショットを返す。
    """

    device_type = "peer"

    def __init__(self, peer_store: "TodoStore", peer_id: str):
        super().__init__(peer_id)
        self.peer_store = peer_store

    async def exchange(self, snapshot: List[Todo], local_peer_id: str) -> List[Todo]:
        await self.peer_store.import_merge(snapshot)
        return await self.peer_store.export_all()
