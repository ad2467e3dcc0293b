"""
マージエンジン - 外部スナップショット取り込み時の競合解決
IDごとの last-write-wins（厳密に新しいタイムスタンプのみ採用）
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List
import logging

from ...core.models import Todo

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """マージ結果（適用すべき書き込みセット）"""
    updates: List[Todo] = field(default_factory=list)
    inserts: List[Todo] = field(default_factory=list)
    discarded: int = 0
    # 適用後にストアが埋める
    inserted_ids: List[int] = field(default_factory=list)
    skipped_ids: List[int] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.updates or self.inserts)

    def summary(self) -> str:
        return (f"{len(self.updates)} updated, "
                f"{len(self.inserts)} inserted, "
                f"{self.discarded} discarded")


class MergeEngine:
    """LWWマージエンジン（状態を持たない純粋関数 + 統計）

    ローカルにだけ存在するIDは決して削除しない。削除の伝播（トゥームストーン）は
    サポートしていないため、ローカルで削除したIDはそれを持つスナップショットの
    取り込みで再び現れる。
    """

    def __init__(self):
        # 統計情報
        self.merges_run = 0
        self.updates_staged = 0
        self.inserts_staged = 0
        self.records_discarded = 0

    def merge(self, local: Iterable[Todo], remote: Iterable[Todo]) -> MergeResult:
        result = merge_snapshots(local, remote)

        self.merges_run += 1
        self.updates_staged += len(result.updates)
        self.inserts_staged += len(result.inserts)
        self.records_discarded += result.discarded

        logger.debug(f"Merge staged: {result.summary()}")
        return result

    def get_statistics(self) -> Dict[str, Any]:
        """マージ統計情報"""
        return {
            "merges_run": self.merges_run,
            "updates_staged": self.updates_staged,
            "inserts_staged": self.inserts_staged,
            "records_discarded": self.records_discarded,
        }


def merge_snapshots(local: Iterable[Todo], remote: Iterable[Todo]) -> MergeResult:
    """ローカルとリモートのスナップショットから書き込みセットを計算"""
    local_by_id = {todo.id: todo for todo in local}

    # 同一スナップショット内の重複IDは最新のものに畳み込む
    remote_by_id: Dict[int, Todo] = {}
    duplicates = 0
    for todo in remote:
        current = remote_by_id.get(todo.id)
        if current is None:
            remote_by_id[todo.id] = todo
            continue
        duplicates += 1
        if todo.last_modified > current.last_modified:
            remote_by_id[todo.id] = todo

    result = MergeResult(discarded=duplicates)
    for todo_id in sorted(remote_by_id):
        remote_todo = remote_by_id[todo_id]
        local_todo = local_by_id.get(todo_id)

        if local_todo is None:
            result.inserts.append(remote_todo)
        elif remote_todo.last_modified > local_todo.last_modified:
            result.updates.append(remote_todo)
        else:
            # 同時刻はローカル優先（冪等）
            result.discarded += 1

    return result
