"""
同期層 統合テスト
LWWマージ・ピアレジストリ・トランスポート・同期コーディネーター・ピアメッセージの確認
"""

import pytest
import asyncio
import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch
import sys
import os

import aiohttp

# テスト対象モジュールのパスを追加
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from todo_sync.core.exceptions import (
    InvalidTransitionError, NoIdentityError, NotFoundError, StorageError,
    SyncStage, TransportError, ValidationError,
)
from todo_sync.core.models import SyncEvent, SyncStatus, TRANSITIONS, Todo, transition
from todo_sync.layers.storage_layer.database import TodoDatabase
from todo_sync.layers.storage_layer.todo_store import TodoStore
from todo_sync.layers.sync_layer.merge_engine import MergeEngine, merge_snapshots
from todo_sync.layers.sync_layer.peer_messages import PeerMessageHandler
from todo_sync.layers.sync_layer.peer_registry import PeerRegistry
from todo_sync.layers.sync_layer.sync_coordinator import SyncCoordinator
from todo_sync.layers.sync_layer.transport import (
    HttpSyncTransport, LocalPeerTransport, SyncTransport, parse_snapshot,
)


def stamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def make_todo(todo_id: int, content: str, seconds: float, day: str = "Monday", position: int = 0) -> Todo:
    return Todo(id=todo_id, day=day, content=content, position=position, last_modified=stamp(seconds))


class StaticTransport(SyncTransport):
    """決まったスナップショットを返すテスト用トランスポート"""
    device_type = "test"

    def __init__(self, remote: List[Todo], peer_id: str = "static-peer"):
        super().__init__(peer_id)
        self.remote = remote
        self.received: List[List[Todo]] = []

    async def exchange(self, snapshot, local_peer_id):
        self.received.append(list(snapshot))
        return list(self.remote)


class FailingTransport(SyncTransport):
    """常に失敗するテスト用トランスポート"""
    device_type = "test"

    def __init__(self, peer_id: str = "unreachable-peer"):
        super().__init__(peer_id)

    async def exchange(self, snapshot, local_peer_id):
        raise TransportError("connection refused")


class GatedTransport(SyncTransport):
    """release されるまで交換を保留するテスト用トランスポート"""
    device_type = "test"

    def __init__(self, peer_id: str = "slow-peer"):
        super().__init__(peer_id)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def exchange(self, snapshot, local_peer_id):
        self.entered.set()
        await self.release.wait()
        return []


async def identity_only(registry: PeerRegistry) -> str:
    """ローカルIDを持ち、接続ピアのない disconnected 状態にする"""
    await registry.connect("bootstrap-peer")
    await registry.disconnect("bootstrap-peer")
    return registry.peer_id


class TestMergeEngine:
    """LWWマージのテスト"""

    def test_newer_remote_wins(self):
        """厳密に新しいリモートだけが採用される"""
        local = [make_todo(1, "old", 100)]
        remote = [make_todo(1, "new", 200, day="Tuesday", position=3)]

        result = merge_snapshots(local, remote)

        assert result.updates == remote
        assert result.inserts == []
        assert result.discarded == 0
        assert result.has_changes

    def test_older_or_equal_remote_is_discarded(self):
        """同時刻・古いリモートはローカル優先"""
        local = [make_todo(1, "local", 100), make_todo(2, "local", 100)]
        remote = [make_todo(1, "tie", 100), make_todo(2, "older", 50)]

        result = merge_snapshots(local, remote)

        assert result.updates == []
        assert result.inserts == []
        assert result.discarded == 2
        assert not result.has_changes

    def test_unknown_ids_are_inserted(self):
        """ローカルに無いIDは挿入される"""
        result = merge_snapshots([make_todo(1, "a", 100)], [make_todo(5, "b", 10)])

        assert [t.id for t in result.inserts] == [5]
        assert result.updates == []

    def test_local_only_records_are_kept(self):
        """リモートに無いローカルレコードは削除されない"""
        result = merge_snapshots([make_todo(1, "a", 100), make_todo(2, "b", 100)], [])

        assert result.updates == []
        assert result.inserts == []
        assert result.discarded == 0
        assert result.summary() == "0 updated, 0 inserted, 0 discarded"

    def test_duplicate_remote_ids_collapse_to_newest(self):
        """同一スナップショット内の重複IDは最新のものだけが残る"""
        remote = [make_todo(3, "first", 100), make_todo(3, "latest", 300), make_todo(3, "middle", 200)]

        result = merge_snapshots([], remote)

        assert [t.content for t in result.inserts] == ["latest"]
        assert result.discarded == 2

    def test_engine_statistics(self):
        """マージ統計"""
        engine = MergeEngine()
        engine.merge([make_todo(1, "a", 100)], [make_todo(1, "b", 200), make_todo(2, "c", 1)])
        engine.merge([make_todo(1, "a", 100)], [make_todo(1, "a", 100)])

        stats = engine.get_statistics()
        assert stats == {
            "merges_run": 2,
            "updates_staged": 1,
            "inserts_staged": 1,
            "records_discarded": 1,
        }


class TestImportMerge:
    """ストアへのマージ適用テスト"""

    @pytest.mark.asyncio
    async def test_last_write_wins_scenario(self, store):
        """新しい更新は採用され、その後の古い更新は無視される"""
        await store.import_merge([make_todo(1, "buy milk", 100)])

        result = await store.import_merge([make_todo(1, "buy milk v2", 200)])
        assert len(result.updates) == 1
        todo = await store.get(1)
        assert todo.content == "buy milk v2"
        assert todo.last_modified == stamp(200)

        result = await store.import_merge([make_todo(1, "buy milk", 50)])
        assert not result.has_changes
        todo = await store.get(1)
        assert todo.content == "buy milk v2"
        assert todo.last_modified == stamp(200)

    @pytest.mark.asyncio
    async def test_reimporting_own_export_is_noop(self, store):
        """自分のエクスポートを取り込んでも何も変わらない"""
        await store.create("Monday", "a")
        await store.create("Tuesday", "b")
        await store.create("Tuesday", "c")
        before = await store.export_all()

        result = await store.import_merge(await store.export_all())

        assert not result.has_changes
        assert result.discarded == 3
        assert await store.export_all() == before

    @pytest.mark.asyncio
    async def test_inserts_keep_remote_ids(self, store):
        """挿入はリモートのIDを保持する"""
        result = await store.import_merge([make_todo(42, "remote", 100, day="Saturday", position=4)])

        assert result.inserted_ids == [42]
        todo = await store.get(42)
        assert todo.day == "Saturday"
        assert todo.position == 4

        # 以降の採番は取り込んだIDより大きくなる
        new_id = await store.create("Saturday", "local")
        assert new_id > 42

    @pytest.mark.asyncio
    async def test_merge_never_deletes(self, store):
        """リモートに無いレコードは残る"""
        local_id = await store.create("Monday", "local only")

        await store.import_merge([make_todo(500, "remote", 100)])

        ids = [t.id for t in await store.export_all()]
        assert local_id in ids
        assert 500 in ids

    @pytest.mark.asyncio
    async def test_deleted_record_reappears_from_snapshot(self, store):
        """削除の伝播はないため、古いスナップショットから復活する"""
        todo_id = await store.create("Monday", "a")
        snapshot = await store.export_all()
        await store.delete(todo_id)

        await store.import_merge(snapshot)

        assert (await store.get(todo_id)).content == "a"

    @pytest.mark.asyncio
    async def test_invalid_day_rejects_whole_snapshot(self, store):
        """不明な日を含むスナップショットは全体が拒否される"""
        with pytest.raises(ValidationError):
            await store.import_merge([make_todo(1, "ok", 100), make_todo(2, "bad", 100, day="Funday")])

        assert await store.export_all() == []

    @pytest.mark.asyncio
    async def test_record_hook_runs_in_same_transaction(self, store):
        """フックはマージ適用後に同じトランザクションで呼ばれ、失敗すれば全体が戻る"""
        seen = []

        async def count_rows(db):
            cursor = await db.execute("SELECT COUNT(*) FROM todos")
            seen.append((await cursor.fetchone())[0])

        await store.import_merge([make_todo(1, "a", 100)], record_hook=count_rows)
        assert seen == [1]

        async def failing_hook(db):
            raise ValidationError("record rejected")

        with pytest.raises(ValidationError):
            await store.import_merge([make_todo(1, "a2", 200), make_todo(2, "b", 100)],
                                     record_hook=failing_hook)

        assert await store.export_all() == [make_todo(1, "a", 100)]

    def test_parse_snapshot(self):
        """JSONペイロードの検証"""
        todos = parse_snapshot([
            {"id": 1, "day": "Monday", "content": "a", "position": 2,
             "last_modified": "2024-05-01T10:00:00Z"},
            {"id": 2, "day": "Friday", "content": "b", "lastModified": 1700000000},
        ])

        assert todos[0].last_modified == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        assert todos[1].position == 0
        assert todos[1].last_modified == stamp(1700000000)

        with pytest.raises(ValidationError):
            parse_snapshot({"id": 1})
        with pytest.raises(ValidationError):
            parse_snapshot([{"id": "1", "day": "Monday", "content": "a", "last_modified": 1}])
        with pytest.raises(ValidationError):
            parse_snapshot([{"id": 1, "day": "Monday", "content": "a"}])
        with pytest.raises(ValidationError):
            parse_snapshot([{"id": 1, "day": "Monday", "content": "a", "last_modified": "yesterday"}])


class TestSyncStatusTransitions:
    """接続ステータス遷移表のテスト"""

    @pytest.mark.parametrize("key,expected", list(TRANSITIONS.items()))
    def test_defined_transitions(self, key, expected):
        status, event = key
        assert transition(status, event) == expected

    @pytest.mark.parametrize("status,event", [
        (SyncStatus.DISCONNECTED, SyncEvent.CONNECT_SUCCEEDED),
        (SyncStatus.DISCONNECTED, SyncEvent.CONNECT_FAILED),
    ])
    def test_undefined_transitions(self, status, event):
        with pytest.raises(InvalidTransitionError):
            transition(status, event)


class TestPeerRegistry:
    """ピアレジストリのテスト"""

    @pytest.fixture
    async def registry(self, database):
        return PeerRegistry(database)

    @pytest.mark.asyncio
    async def test_initial_state(self, registry):
        assert registry.peer_id is None
        assert registry.status() == SyncStatus.DISCONNECTED
        assert registry.connected_peers == frozenset()
        assert registry.last_sync is None
        assert not registry.is_connected()

    @pytest.mark.asyncio
    async def test_connect_without_peer_assigns_identity(self, registry):
        """ピア指定なしの接続はIDの採番のみ"""
        local_id = await registry.connect()

        assert local_id == registry.peer_id
        assert registry.status() == SyncStatus.CONNECTED
        assert registry.connected_peers == frozenset()
        assert not registry.is_connected()

        # 2回目以降もIDは変わらない
        assert await registry.connect() == local_id

    @pytest.mark.asyncio
    async def test_connect_peer(self, registry):
        """ピアへの接続は永続レコードを作る"""
        result = await registry.connect("peer-b", device_name="Laptop", device_type="desktop")

        assert result == "peer-b"
        assert registry.peer_id is not None
        assert registry.connected_peers == frozenset({"peer-b"})
        assert registry.is_connected()

        connection = await registry.get_connection("peer-b")
        assert connection.sync_status == SyncStatus.CONNECTED
        assert connection.device_name == "Laptop"
        assert connection.device_type == "desktop"
        assert connection.last_sync is None

    @pytest.mark.asyncio
    async def test_reconnect_keeps_device_info(self, registry):
        """再接続で既存のデバイス情報は消えない"""
        await registry.connect("peer-b", device_name="Laptop", device_type="desktop")
        await registry.disconnect("peer-b")
        await registry.connect("peer-b")

        connection = await registry.get_connection("peer-b")
        assert connection.device_name == "Laptop"
        assert connection.sync_status == SyncStatus.CONNECTED
        assert len(await registry.list_connections()) == 1

    @pytest.mark.asyncio
    async def test_connect_validation(self, registry):
        """自分自身・空のIDには接続できない"""
        local_id = await registry.connect()

        with pytest.raises(ValidationError):
            await registry.connect(local_id)
        with pytest.raises(ValidationError):
            await registry.connect("  ")

        assert registry.connected_peers == frozenset()
        assert await registry.list_connections() == []

    @pytest.mark.asyncio
    async def test_disconnect_last_peer(self, registry):
        """最後のピアの切断で disconnected に戻る"""
        await registry.connect("peer-b")
        await registry.connect("peer-c")

        await registry.disconnect("peer-b")
        assert registry.status() == SyncStatus.CONNECTED
        assert registry.is_connected()

        await registry.disconnect("peer-c")
        assert registry.status() == SyncStatus.DISCONNECTED
        assert not registry.is_connected()
        assert registry.peer_id is not None

        connection = await registry.get_connection("peer-c")
        assert connection.sync_status == SyncStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_already_disconnected_peer(self, registry):
        """切断済みのピアの再切断はステータスを変えない"""
        await registry.connect("peer-b")
        await registry.disconnect("peer-b")
        await registry.connect()
        assert registry.status() == SyncStatus.CONNECTED

        await registry.disconnect("peer-b")
        assert registry.status() == SyncStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_unknown_peer(self, registry):
        with pytest.raises(NotFoundError):
            await registry.disconnect("nobody")

    @pytest.mark.asyncio
    async def test_failed_attempt_reverts_status(self, registry):
        """失敗した接続試行は試行前のステータスに戻す"""
        with pytest.raises(RuntimeError):
            async with registry.attempt():
                assert registry.status() == SyncStatus.CONNECTING
                raise RuntimeError("boom")

        assert registry.status() == SyncStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_failed_attempt_keeps_connecting_while_others_pending(self, registry):
        """並行する試行が残っている間は connecting を維持する"""
        async with registry.attempt():
            with pytest.raises(RuntimeError):
                async with registry.attempt():
                    raise RuntimeError("boom")
            assert registry.status() == SyncStatus.CONNECTING

        assert registry.status() == SyncStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_record_sync(self, registry):
        """同期記録は未知のピアの行も作る"""
        when = stamp(1700000000)
        await registry.record_sync("server:http://example", when)

        connection = await registry.get_connection("server:http://example")
        assert connection.last_sync == when
        assert connection.sync_status == SyncStatus.DISCONNECTED
        assert registry.last_sync == when

        peers = [c.peer_id for c in await registry.list_connections()]
        assert peers == ["server:http://example"]


class TestHttpSyncTransport:
    """HTTPトランスポートのテスト"""

    @staticmethod
    def _mock_session(mock_session_class, status=200, body="[]"):
        mock_response = MagicMock()
        mock_response.status = status
        if isinstance(body, str):
            body = body.encode("utf-8")
        mock_response.read = AsyncMock(return_value=body)

        mock_session = MagicMock()
        mock_session.post.return_value.__aenter__.return_value = mock_response
        mock_session.post.return_value.__aexit__.return_value = False

        mock_session_class.return_value.__aenter__.return_value = mock_session
        mock_session_class.return_value.__aexit__.return_value = False
        return mock_session

    def test_urls_and_identity(self):
        transport = HttpSyncTransport("http://sync.example/", "sync", timeout_seconds=5)

        assert transport.sync_url == "http://sync.example/sync"
        assert transport.peer_id == "server:http://sync.example"
        assert transport.device_type == "server"

    @pytest.mark.asyncio
    async def test_exchange_posts_snapshot(self):
        """ローカルスナップショットをPOSTし、応答をパースする"""
        transport = HttpSyncTransport("http://sync.example", "/sync", timeout_seconds=5)
        local = [make_todo(1, "a", 100)]
        body = json.dumps([{"id": 2, "day": "Tuesday", "content": "b", "position": 0,
                            "last_modified": "2024-01-01T00:00:00+00:00"}])

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            mock_session = self._mock_session(mock_session_class, body=body)

            remote = await transport.exchange(local, "local-1")

        mock_session_class.assert_called_once_with(timeout=aiohttp.ClientTimeout(total=5))
        mock_session.post.assert_called_once_with(
            "http://sync.example/sync",
            json=[local[0].to_dict()],
            headers={"X-Peer-Id": "local-1"},
        )
        assert [t.id for t in remote] == [2]
        assert remote[0].day == "Tuesday"

    @pytest.mark.asyncio
    async def test_server_error_status(self):
        """2xx以外の応答は TransportError"""
        transport = HttpSyncTransport("http://sync.example")

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            self._mock_session(mock_session_class, status=503, body="unavailable")

            with pytest.raises(TransportError) as exc_info:
                await transport.exchange([], "local-1")

        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """接続失敗は TransportError"""
        transport = HttpSyncTransport("http://sync.example")

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            mock_session = self._mock_session(mock_session_class)
            mock_session.post.side_effect = aiohttp.ClientConnectionError("refused")

            with pytest.raises(TransportError):
                await transport.exchange([], "local-1")

    @pytest.mark.asyncio
    async def test_timeout(self):
        transport = HttpSyncTransport("http://sync.example", timeout_seconds=0.1)

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            mock_session = self._mock_session(mock_session_class)
            mock_session.post.side_effect = asyncio.TimeoutError()

            with pytest.raises(TransportError):
                await transport.exchange([], "local-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", ["not json", '{"todos": []}', '[{"id": 1}]', b"\xff\xfe[\x00"])
    async def test_invalid_response_body(self, body):
        """不正な応答本文は ValidationError"""
        transport = HttpSyncTransport("http://sync.example")

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            self._mock_session(mock_session_class, body=body)

            with pytest.raises(ValidationError):
                await transport.exchange([], "local-1")


class TestSyncCoordinator:
    """同期コーディネーターのテスト"""

    @pytest.fixture
    async def registry(self, database):
        return PeerRegistry(database)

    @pytest.fixture
    async def peer_store(self):
        """同期相手のストア"""
        with tempfile.TemporaryDirectory() as temp_dir:
            peer_database = TodoDatabase(Path(temp_dir) / "peer.db")
            await peer_database.initialize()
            yield TodoStore(peer_database)
            await peer_database.close()

    @pytest.mark.asyncio
    async def test_sync_with_peer_device(self, store, registry, peer_store):
        """ピアデバイスとの双方向同期"""
        await store.import_merge([make_todo(1, "A-task", 100)])
        await peer_store.import_merge([
            make_todo(1, "A-task edited", 300),
            make_todo(100, "B-task", 100, day="Tuesday"),
        ])
        await registry.connect()

        coordinator = SyncCoordinator(store, registry, LocalPeerTransport(peer_store, "device-b"))
        result = await coordinator.run_sync()

        assert result.peer_id == "device-b"
        assert result.local_count == 1
        assert result.remote_count == 2
        assert result.updated == 1
        assert result.inserted == 1
        assert result.discarded == 0
        assert "1 updated" in result.summary()

        assert (await store.get(1)).content == "A-task edited"
        assert await store.export_all() == await peer_store.export_all()

        assert registry.is_connected()
        assert "device-b" in registry.connected_peers
        assert registry.last_sync == result.sync_time

        connection = await registry.get_connection("device-b")
        assert connection.device_type == "peer"
        assert connection.last_sync == result.sync_time

    @pytest.mark.asyncio
    async def test_repeated_sync_is_idempotent(self, store, registry, peer_store):
        """2回目の同期では何も変わらない"""
        await store.create("Monday", "a")
        await registry.connect()
        coordinator = SyncCoordinator(store, registry, LocalPeerTransport(peer_store, "device-b"))

        await coordinator.run_sync()
        before = await store.export_all()
        second = await coordinator.run_sync()

        assert second.updated == 0
        assert second.inserted == 0
        assert await store.export_all() == before

    @pytest.mark.asyncio
    async def test_sync_requires_identity(self, store, registry):
        """ローカルIDなしの同期は NoIdentityError"""
        transport = StaticTransport([make_todo(1, "a", 100)])
        coordinator = SyncCoordinator(store, registry, transport)

        with pytest.raises(NoIdentityError) as exc_info:
            await coordinator.run_sync()

        assert exc_info.value.stage == SyncStage.IDENTITY
        assert transport.received == []
        assert await store.export_all() == []

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_state_unchanged(self, store, registry):
        """交換の失敗ではローカル状態もステータスも変わらない"""
        await store.create("Monday", "a")
        await identity_only(registry)
        before = await store.export_all()

        coordinator = SyncCoordinator(store, registry, FailingTransport())
        with pytest.raises(TransportError) as exc_info:
            await coordinator.run_sync()

        assert exc_info.value.stage == SyncStage.EXCHANGE
        assert await store.export_all() == before
        assert registry.status() == SyncStatus.DISCONNECTED
        assert "unreachable-peer" not in registry.connected_peers
        assert registry.last_sync is None

    @pytest.mark.asyncio
    async def test_transport_failure_while_connected(self, store, registry):
        """接続済みのノードは失敗しても connected のまま"""
        await registry.connect()

        coordinator = SyncCoordinator(store, registry, FailingTransport())
        with pytest.raises(TransportError):
            await coordinator.run_sync()

        assert registry.status() == SyncStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_invalid_remote_snapshot_is_rejected(self, store, registry):
        """適用段階の検証エラーではステータスも試行前に戻る"""
        await store.create("Monday", "a")
        await identity_only(registry)
        before = await store.export_all()

        transport = StaticTransport([make_todo(9, "bad", 100, day="Funday")])
        coordinator = SyncCoordinator(store, registry, transport)
        with pytest.raises(ValidationError) as exc_info:
            await coordinator.run_sync()

        assert exc_info.value.stage == SyncStage.APPLY
        assert await store.export_all() == before
        assert registry.status() == SyncStatus.DISCONNECTED
        assert registry.connected_peers == frozenset()
        assert await registry.get_connection("static-peer") is None

    @pytest.mark.asyncio
    async def test_record_failure_rolls_back_merge(self, store, registry, database):
        """同期記録の書き込みに失敗するとマージも適用されない"""
        await store.create("Monday", "a")
        await identity_only(registry)
        before = await store.export_all()

        async with database.transaction() as db:
            await db.execute("DROP TABLE peer_connections")

        transport = StaticTransport([make_todo(50, "remote", 100), make_todo(1, "newer", 4102444800)])
        coordinator = SyncCoordinator(store, registry, transport)
        with pytest.raises(StorageError) as exc_info:
            await coordinator.run_sync()

        assert exc_info.value.stage == SyncStage.RECORD
        assert await store.export_all() == before
        assert registry.status() == SyncStatus.DISCONNECTED
        assert registry.connected_peers == frozenset()
        assert registry.last_sync is None

    @pytest.mark.asyncio
    async def test_sync_with_local_identity_is_rejected(self, store, registry):
        """自分自身を同期相手にはできない"""
        local_id = await identity_only(registry)
        coordinator = SyncCoordinator(store, registry, StaticTransport([], peer_id=local_id))

        with pytest.raises(ValidationError) as exc_info:
            await coordinator.run_sync()

        assert exc_info.value.stage == SyncStage.IDENTITY
        assert registry.status() == SyncStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_store_usable_during_exchange(self, store, registry):
        """交換中もストアへの書き込みはブロックされない"""
        await identity_only(registry)
        transport = GatedTransport()
        coordinator = SyncCoordinator(store, registry, transport)

        task = asyncio.create_task(coordinator.run_sync())
        await asyncio.wait_for(transport.entered.wait(), timeout=5)

        assert registry.status() == SyncStatus.CONNECTING
        todo_id = await asyncio.wait_for(store.create("Monday", "during sync"), timeout=5)

        transport.release.set()
        result = await task

        assert result.peer_id == "slow-peer"
        assert registry.status() == SyncStatus.CONNECTED
        assert (await store.get(todo_id)).content == "during sync"

    @pytest.mark.asyncio
    async def test_explicit_peer_id(self, store, registry):
        """peer_id指定時はその名前で記録される"""
        await registry.connect()
        coordinator = SyncCoordinator(store, registry, StaticTransport([]))

        result = await coordinator.run_sync("office-server")

        assert result.peer_id == "office-server"
        connection = await registry.get_connection("office-server")
        assert connection.device_type == "test"
        assert connection.last_sync == result.sync_time

    @pytest.mark.asyncio
    async def test_sync_over_http(self, store, registry):
        """HTTPサーバーとの同期"""
        await store.create("Monday", "local")
        await registry.connect()
        body = json.dumps([{"id": 77, "day": "Sunday", "content": "from server", "position": 0,
                            "lastModified": "2024-01-01T00:00:00Z"}])

        transport = HttpSyncTransport("http://sync.example")
        coordinator = SyncCoordinator(store, registry, transport)

        with patch('todo_sync.layers.sync_layer.transport.aiohttp.ClientSession') as mock_session_class:
            TestHttpSyncTransport._mock_session(mock_session_class, body=body)
            result = await coordinator.run_sync()

        assert result.peer_id == "server:http://sync.example"
        assert result.inserted == 1
        assert (await store.get(77)).content == "from server"

        connection = await registry.get_connection("server:http://sync.example")
        assert connection.device_type == "server"
        assert result.to_dict()["peer_id"] == "server:http://sync.example"


class TestPeerMessageHandler:
    """ピアメッセージ処理のテスト"""

    @pytest.fixture
    async def handler(self, store):
        return PeerMessageHandler(store)

    @pytest.mark.asyncio
    async def test_sync_request_replies_with_snapshot(self, handler, store):
        await store.create("Monday", "a")

        reply = await handler.handle({"type": "SYNC_REQUEST"})

        assert reply["type"] == "SYNC_RESPONSE"
        assert [t["content"] for t in reply["todos"]] == ["a"]
        assert handler.messages_handled == 1

    @pytest.mark.asyncio
    async def test_sync_response_merges(self, handler, store):
        reply = await handler.handle({
            "type": "SYNC_RESPONSE",
            "todos": [{"id": 5, "day": "Friday", "content": "remote", "position": 0,
                       "lastModified": "2024-03-01T12:00:00Z"}],
        })

        assert reply is None
        assert (await store.get(5)).content == "remote"

    @pytest.mark.asyncio
    async def test_todo_added_and_deleted(self, handler, store):
        todo = make_todo(8, "from peer", 100).to_dict()

        await handler.handle({"type": "TODO_ADDED", "todo": todo})
        assert (await store.get(8)).content == "from peer"

        await handler.handle({"type": "TODO_DELETED", "todoId": 8})
        assert await store.export_all() == []

    @pytest.mark.asyncio
    async def test_todo_update_actions(self, handler, store):
        """小文字のメッセージ種別も受け付ける"""
        todo = make_todo(3, "shared", 100).to_dict()

        await handler.handle({"type": "todo_update", "action": "add", "todo": todo})
        assert (await store.get(3)).content == "shared"

        await handler.handle({"type": "todo_update", "action": "delete", "todo": {"id": 3}})
        assert await store.export_all() == []

        with pytest.raises(ValidationError):
            await handler.handle({"type": "todo_update", "action": "rename", "todo": todo})

    @pytest.mark.asyncio
    async def test_todo_moved_uses_last_write_wins(self, handler, store):
        """移動通知もLWWで適用される"""
        await store.import_merge([make_todo(4, "task", 200)])

        await handler.handle({"type": "TODO_MOVED", "todo": make_todo(4, "task", 100).to_dict(),
                              "newDay": "Friday"})
        assert (await store.get(4)).day == "Monday"

        await handler.handle({"type": "TODO_MOVED", "todo": make_todo(4, "task", 300).to_dict(),
                              "newDay": "Friday"})
        assert (await store.get(4)).day == "Friday"

    @pytest.mark.asyncio
    async def test_order_updated(self, handler, store):
        await store.create("Monday", "a")
        await store.create("Monday", "b")

        await handler.handle({"type": "TODO_ORDER_UPDATED", "day": "Monday",
                              "todos": [{"content": "b"}, {"content": "a"}]})

        assert [t.content for t in await store.list("Monday")] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_unknown_and_invalid_messages(self, handler):
        assert await handler.handle({"type": "PING"}) is None
        assert handler.messages_ignored == 1

        with pytest.raises(ValidationError):
            await handler.handle("SYNC_REQUEST")
        with pytest.raises(ValidationError):
            await handler.handle({"todo": {}})
        with pytest.raises(ValidationError):
            await handler.handle({"type": "TODO_DELETED"})
