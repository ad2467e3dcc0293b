"""データモデル定義"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple, Union

from .exceptions import InvalidTransitionError, ValidationError

DEFAULT_DAYS: Tuple[str, ...] = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, int, float, datetime]) -> datetime:
    """ISO-8601文字列・エポック秒・datetimeをUTCのdatetimeに正規化"""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")

    # タイムゾーンなしはUTCとして扱う
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


@dataclass
class Todo:
    """タスクレコード

    Fields:
        id: 作成時に採番される不変ID（削除後も再利用しない）
        day: 所属する日パーティション（例: "Monday"）
        content: 本文
        position: 日パーティション内の並び順
        last_modified: 論理タイムスタンプ（変更のたびに更新）
    """
    id: int
    day: str
    content: str
    position: int
    last_modified: datetime

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        data = asdict(self)
        data['last_modified'] = format_timestamp(self.last_modified)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Todo":
        """外部スナップショットの1レコードを検証して生成"""
        if not isinstance(data, dict):
            raise ValidationError(f"Todo record must be an object, got {type(data).__name__}")

        todo_id = data.get('id')
        if isinstance(todo_id, bool) or not isinstance(todo_id, int):
            raise ValidationError(f"Todo record has invalid id: {todo_id!r}")

        day = data.get('day')
        if not isinstance(day, str) or not day:
            raise ValidationError(f"Todo {todo_id} has invalid day: {day!r}")

        content = data.get('content')
        if not isinstance(content, str):
            raise ValidationError(f"Todo {todo_id} has invalid content: {content!r}")

        position = data.get('position', 0)
        if isinstance(position, bool) or not isinstance(position, int):
            raise ValidationError(f"Todo {todo_id} has invalid position: {position!r}")

        # Web版は lastModified キーを使う
        stamp = data.get('last_modified', data.get('lastModified'))
        if stamp is None:
            raise ValidationError(f"Todo {todo_id} is missing last_modified")

        return cls(
            id=todo_id,
            day=day,
            content=content,
            position=position,
            last_modified=parse_timestamp(stamp),
        )


class SyncStatus(Enum):
    """ローカルノードの接続ステータス"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SyncEvent(Enum):
    """接続ステータスを動かすイベント"""
    BEGIN_CONNECT = "begin_connect"
    CONNECT_SUCCEEDED = "connect_succeeded"
    CONNECT_FAILED = "connect_failed"
    LAST_PEER_REMOVED = "last_peer_removed"


# (現在の状態, イベント) -> 次の状態
TRANSITIONS: Dict[Tuple[SyncStatus, SyncEvent], SyncStatus] = {
    (SyncStatus.DISCONNECTED, SyncEvent.BEGIN_CONNECT): SyncStatus.CONNECTING,
    (SyncStatus.CONNECTING, SyncEvent.BEGIN_CONNECT): SyncStatus.CONNECTING,
    (SyncStatus.CONNECTED, SyncEvent.BEGIN_CONNECT): SyncStatus.CONNECTED,
    (SyncStatus.CONNECTING, SyncEvent.CONNECT_SUCCEEDED): SyncStatus.CONNECTED,
    (SyncStatus.CONNECTED, SyncEvent.CONNECT_SUCCEEDED): SyncStatus.CONNECTED,
    (SyncStatus.CONNECTING, SyncEvent.CONNECT_FAILED): SyncStatus.DISCONNECTED,
    (SyncStatus.CONNECTED, SyncEvent.CONNECT_FAILED): SyncStatus.CONNECTED,
    (SyncStatus.CONNECTED, SyncEvent.LAST_PEER_REMOVED): SyncStatus.DISCONNECTED,
    (SyncStatus.DISCONNECTED, SyncEvent.LAST_PEER_REMOVED): SyncStatus.DISCONNECTED,
    (SyncStatus.CONNECTING, SyncEvent.LAST_PEER_REMOVED): SyncStatus.CONNECTING,
}


def transition(status: SyncStatus, event: SyncEvent) -> SyncStatus:
    """状態遷移関数"""
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"No transition from {status.value} on {event.value}"
        ) from None


@dataclass
class PeerConnection:
    """既知ピアの永続レコード"""
    peer_id: str
    last_sync: Optional[datetime] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.DISCONNECTED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_sync'] = format_timestamp(self.last_sync) if self.last_sync else None
        data['sync_status'] = self.sync_status.value
        return data


@dataclass
class PeerState:
    """プロセス内のピア状態（非永続）"""
    peer_id: Optional[str] = None
    connected_peers: Set[str] = field(default_factory=set)
    sync_status: SyncStatus = SyncStatus.DISCONNECTED
    last_sync: Optional[datetime] = None
