"""集約リポジトリ

EventLog と SnapshotStore をまとめ、集約状態の読み込みと
状態機械が返したイベントのコミットを行う。
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from ..errors import StorageError
from ..events import AggregateType, BaseEvent
from ..state.machines import rehydrate
from ..state.models import AggregateState
from .snapshots import Snapshot, SnapshotStore, dump_state
from .storage import EventLog, StreamAppend

logger = logging.getLogger(__name__)


class AggregateRepository:
    """集約の読み込みとコミット

    Attributes:
        log: イベントログ
        snapshots: スナップショットストア（Noneなら常に全件リプレイ）
        snapshot_interval: スナップショットを取るバージョン間隔
    """

    def __init__(
        self,
        log: EventLog,
        snapshots: SnapshotStore | None = None,
        snapshot_interval: int = 50,
    ):
        self.log = log
        self.snapshots = snapshots
        self.snapshot_interval = snapshot_interval

    def load(self, aggregate_type: AggregateType, aggregate_id: str) -> AggregateState | None:
        """最新スナップショット + 以降のイベントから現在状態を復元

        Returns:
            集約状態。イベントが1件もなければNone
        """
        snapshot = self.snapshots.latest(aggregate_type, aggregate_id) if self.snapshots else None
        from_version = snapshot.version if snapshot else 0
        events = self.log.read(aggregate_id, aggregate_type, from_version=from_version)
        return rehydrate(aggregate_type, events, snapshot.state if snapshot else None)

    def commit(
        self,
        events: Sequence[BaseEvent],
        expected_versions: Mapping[tuple[str, str], int],
    ) -> list[BaseEvent]:
        """イベントを集約ごとにまとめて1つの作業単位で追記

        Args:
            events: 状態機械が返したイベント（複数集約が混在してよい）
            expected_versions: (集約種別, 集約ID) -> 期待バージョン。
                含まれない集約は新規（期待バージョン0）として扱う

        Returns:
            確定したイベント
        """
        batches: dict[tuple[str, str], StreamAppend] = {}
        for event in events:
            key = event.stream
            if key not in batches:
                batches[key] = StreamAppend(
                    aggregate_type=key[0],
                    aggregate_id=key[1],
                    expected_version=expected_versions.get(key, 0),
                    events=[],
                )
            batches[key].events.append(event)  # type: ignore[attr-defined]

        stored = self.log.append_streams(list(batches.values()))
        self._maybe_snapshot(stored)
        return stored

    def _maybe_snapshot(self, stored: Sequence[BaseEvent]) -> None:
        if self.snapshots is None:
            return
        last: dict[tuple[str, str], int] = {}
        first: dict[tuple[str, str], int] = {}
        for event in stored:
            first.setdefault(event.stream, event.version or 0)
            last[event.stream] = event.version or 0

        for (type_value, aggregate_id), version in last.items():
            # このコミットで interval の倍数をまたいだ集約のみ
            crossed = version // self.snapshot_interval > (
                (first[(type_value, aggregate_id)] - 1) // self.snapshot_interval
            )
            if not crossed:
                continue
            state = self.load(AggregateType(type_value), aggregate_id)
            if state is None:
                continue
            snapshot = Snapshot(
                aggregate_type=type_value,
                aggregate_id=aggregate_id,
                version=state.version,
                state=dump_state(state),
            )
            try:
                self.snapshots.save(snapshot)
            except StorageError as e:
                # イベントは確定済み。スナップショットは次の間隔で取り直す
                logger.warning("snapshot of %s %s skipped: %s", type_value, aggregate_id, e)
                continue
            logger.debug("snapshot taken for %s %s at v%d", type_value, aggregate_id, state.version)
