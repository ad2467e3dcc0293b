"""
同期層 - LWWマージ・ピア管理・同期ラウンドの統括
"""

from .merge_engine import MergeEngine, MergeResult
from .peer_registry import PeerRegistry
from .peer_messages import PeerMessageHandler
from .sync_coordinator import SyncCoordinator, SyncResult
from .transport import HttpSyncTransport, LocalPeerTransport, SyncTransport

__all__ = [
    'MergeEngine', 'MergeResult',
    'PeerRegistry', 'PeerMessageHandler',
    'SyncCoordinator', 'SyncResult',
    'HttpSyncTransport', 'LocalPeerTransport', 'SyncTransport'
]
