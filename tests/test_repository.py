"""集約リポジトリとスナップショットのテスト"""

import os
from datetime import UTC, datetime

import pytest

from cardforge.core.ar import AggregateRepository, EventLog, Snapshot, SnapshotStore
from cardforge.core.commands import CutSheet, EnterSheetStation, RegisterSheet
from cardforge.core.errors import StorageError, VersionConflict
from cardforge.core.events import AggregateType, SheetStatus
from cardforge.core.state import Policy, transition_sheet

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
POLICY = Policy()


@pytest.fixture
def log(temp_vault):
    return EventLog(temp_vault)


@pytest.fixture
def snapshots(temp_vault):
    return SnapshotStore(temp_vault)


def run(repository, sheet_id, command):
    """読み込み -> 遷移 -> コミット"""
    state = repository.load(AggregateType.SHEET, sheet_id)
    new_state, events = transition_sheet(state, sheet_id, command.stamp(NOW), POLICY)
    version = state.version if state else 0
    repository.commit(events, {("sheet", sheet_id): version})
    return new_state


class TestAggregateRepository:
    """AggregateRepository のテスト"""

    def test_load_missing(self, log):
        assert AggregateRepository(log).load(AggregateType.CARD, "S1-01") is None

    def test_commit_groups_streams(self, log):
        """複数集約のイベントを集約ごとのバージョンで一度に追記"""
        # Arrange
        repository = AggregateRepository(log)
        run(repository, "S1", RegisterSheet())
        run(repository, "S1", EnterSheetStation(station="print"))

        # Act
        run(repository, "S1", CutSheet(fan_out=4))

        # Assert
        assert log.current_version("S1", "sheet") == 3
        assert log.list_aggregates(AggregateType.CARD) == ["S1-01", "S1-02", "S1-03", "S1-04"]
        assert log.current_version("A-S1", "assembly") == 1
        assert repository.load(AggregateType.SHEET, "S1").status == SheetStatus.CUT

    def test_commit_with_stale_version(self, log):
        repository = AggregateRepository(log)
        run(repository, "S1", RegisterSheet())
        _, events = transition_sheet(
            None, "S1", RegisterSheet().stamp(NOW.replace(hour=10)), POLICY
        )

        with pytest.raises(VersionConflict):
            repository.commit(events, {})

    def test_snapshot_taken_at_interval(self, log, snapshots):
        """interval の倍数を越えたコミットでスナップショットを保存"""
        # Arrange
        repository = AggregateRepository(log, snapshots, snapshot_interval=2)

        # Act
        run(repository, "S1", RegisterSheet())
        first = snapshots.latest("sheet", "S1")
        run(repository, "S1", EnterSheetStation(station="print"))

        # Assert
        assert first is None
        snapshot = snapshots.latest("sheet", "S1")
        assert snapshot.version == 2
        assert snapshot.state["station"] == "print"

    def test_load_from_snapshot_matches_full_replay(self, log, snapshots):
        """スナップショット経由と全件リプレイで同じ状態"""
        with_snapshots = AggregateRepository(log, snapshots, snapshot_interval=2)
        run(with_snapshots, "S1", RegisterSheet(job_id="J1"))
        run(with_snapshots, "S1", EnterSheetStation(station="print"))
        run(with_snapshots, "S1", EnterSheetStation(station="coat"))

        assert with_snapshots.load(AggregateType.SHEET, "S1") == AggregateRepository(log).load(
            AggregateType.SHEET, "S1"
        )


class TestSnapshotStore:
    """SnapshotStore のテスト"""

    def test_save_and_latest(self, snapshots):
        snapshots.save(Snapshot(aggregate_type="card", aggregate_id="S1-01", version=3))

        assert snapshots.latest("card", "S1-01").version == 3
        assert snapshots.latest(AggregateType.CARD, "S1-01").version == 3
        assert snapshots.count() == 1

    def test_older_snapshot_not_saved(self, snapshots):
        """既存より古いバージョンでは置き換えない"""
        snapshots.save(Snapshot(aggregate_type="card", aggregate_id="S1-01", version=5))
        snapshots.save(Snapshot(aggregate_type="card", aggregate_id="S1-01", version=4))

        assert snapshots.latest("card", "S1-01").version == 5

    def test_corrupt_snapshot_ignored(self, snapshots, temp_vault):
        """壊れたスナップショットは無視してリプレイにフォールバック"""
        path = temp_vault / "snapshots" / "card" / "S1-01.json"
        path.parent.mkdir(parents=True)
        path.write_text("{broken", encoding="utf-8")

        assert snapshots.latest("card", "S1-01") is None

    def test_delete(self, snapshots):
        snapshots.save(Snapshot(aggregate_type="sheet", aggregate_id="S1", version=1))

        snapshots.delete("sheet", "S1")
        snapshots.delete("sheet", "S1")

        assert snapshots.latest("sheet", "S1") is None
        assert snapshots.count() == 0

    def test_failed_write_leaves_no_temp_file(self, snapshots, temp_vault, monkeypatch):
        """書き込み失敗時は StorageError、一時ファイルは残さない"""
        # Arrange
        def refuse(src, dst):
            raise OSError("read-only file system")

        monkeypatch.setattr(os, "replace", refuse)

        # Act & Assert
        with pytest.raises(StorageError):
            snapshots.save(Snapshot(aggregate_type="sheet", aggregate_id="S1", version=1))
        assert list((temp_vault / "snapshots").rglob("*.tmp")) == []
        assert snapshots.latest("sheet", "S1") is None
