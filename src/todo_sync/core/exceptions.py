"""
例外定義 - ストレージ・同期・入力検証のエラー分類
"""

from enum import Enum
from typing import Optional


class SyncStage(Enum):
    """同期ラウンドの段階"""
    EXPORT = "export"
    IDENTITY = "identity"
    EXCHANGE = "exchange"
    APPLY = "apply"
    RECORD = "record"


class TodoSyncError(Exception):
    """基底例外"""

    def __init__(self, message: str, stage: Optional[SyncStage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage.value}] {self.message}"
        return self.message


class StorageError(TodoSyncError):
    """永続化層の失敗"""


class NotFoundError(TodoSyncError):
    """存在しないIDを参照した"""

    def __init__(self, message: str, record_id=None, stage: Optional[SyncStage] = None):
        super().__init__(message, stage)
        self.record_id = record_id


class TransportError(TodoSyncError):
    """同期交換の失敗"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 stage: Optional[SyncStage] = None):
        super().__init__(message, stage)
        self.status_code = status_code


class NoIdentityError(TodoSyncError):
    """ローカルpeer_id未設定のまま同期を試みた"""


class ValidationError(TodoSyncError):
    """不正な入力・インポートペイロード"""


class InvalidTransitionError(TodoSyncError):
    """状態遷移表に定義されていない遷移"""
