"""EventLog ストレージのテスト"""

import threading
from datetime import UTC, datetime

import pytest

from cardforge.core.ar import EventLog, StreamAppend
from cardforge.core.errors import DuplicateEvent, StorageError, VersionConflict
from cardforge.core.events import (
    AggregateType,
    CardCreatedEvent,
    CardStationEnteredEvent,
    EventType,
    SheetRegisteredEvent,
    SheetStationEnteredEvent,
)

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)


def registered(sheet_id, job_id="J1044"):
    return SheetRegisteredEvent(aggregate_id=sheet_id, occurred_at=NOW, payload={"job_id": job_id})


def entered(sheet_id, station):
    return SheetStationEnteredEvent(aggregate_id=sheet_id, occurred_at=NOW, station=station)


def card_created(card_id, position):
    return CardCreatedEvent(
        aggregate_id=card_id,
        occurred_at=NOW,
        payload={"sheet_id": "S1", "position": position, "fan_out": 2, "job_id": None},
    )


class TestAppend:
    """追記のテスト"""

    def test_append_assigns_sequence_and_version(self, temp_vault):
        """追記時に通し番号・バージョン・ID・記録時刻が確定する"""
        # Arrange
        log = EventLog(temp_vault)

        # Act
        stored = log.append("S1", AggregateType.SHEET, 0, registered("S1"))

        # Assert
        assert stored.sequence == 1
        assert stored.version == 1
        assert stored.id is not None
        assert stored.recorded_at is not None
        assert stored.prev_hash is None
        assert log.current_version("S1", AggregateType.SHEET) == 1
        assert log.last_sequence() == 1

    def test_sequence_is_global_and_version_per_aggregate(self, temp_vault):
        """通し番号はログ全体、バージョンは集約ごと"""
        log = EventLog(temp_vault)

        a1 = log.append("S1", "sheet", 0, registered("S1"))
        b1 = log.append("S2", "sheet", 0, registered("S2"))
        a2 = log.append("S1", "sheet", 1, entered("S1", "print"))

        assert [a1.sequence, b1.sequence, a2.sequence] == [1, 2, 3]
        assert [a1.version, b1.version, a2.version] == [1, 1, 2]
        assert a2.prev_hash == b1.hash

    def test_version_conflict(self, temp_vault):
        """期待バージョンが異なれば VersionConflict で何も書かれない"""
        # Arrange
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))

        # Act
        with pytest.raises(VersionConflict) as excinfo:
            log.append("S1", "sheet", 0, entered("S1", "print"))

        # Assert
        assert excinfo.value.expected == 0
        assert excinfo.value.actual == 1
        assert excinfo.value.retryable is True
        assert log.count_events() == 1

    def test_duplicate_event_id(self, temp_vault):
        """同じイベントIDの再追記は DuplicateEvent"""
        log = EventLog(temp_vault)
        stored = log.append("S1", "sheet", 0, registered("S1"))

        with pytest.raises(DuplicateEvent):
            log.append("S1", "sheet", 1, stored)

    def test_duplicate_content_at_same_version(self, temp_vault):
        """同じ (集約, バージョン) に同じ内容を再送すると DuplicateEvent"""
        log = EventLog(temp_vault)
        event = registered("S1")
        log.append("S1", "sheet", 0, event)

        with pytest.raises(DuplicateEvent):
            log.append("S1", "sheet", 0, event)
        assert log.count_events() == 1

    def test_different_content_at_same_version_conflicts(self, temp_vault):
        """同じバージョンに別の内容を送ると VersionConflict"""
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))

        with pytest.raises(VersionConflict):
            log.append("S1", "sheet", 0, registered("S1", job_id="OTHER"))

    def test_other_station_or_actor_at_same_version_conflicts(self, temp_vault):
        """ステーションか作業者だけが異なる場合も同一内容とはみなさない"""
        # Arrange
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))

        def at(station, actor):
            return SheetStationEnteredEvent(
                aggregate_id="S1",
                occurred_at=NOW,
                correlation_id="C-1",
                station=station,
                actor=actor,
            )

        log.append("S1", "sheet", 1, at("print", "OP-1"))

        # Act & Assert
        with pytest.raises(VersionConflict):
            log.append("S1", "sheet", 1, at("laminate", "OP-1"))
        with pytest.raises(VersionConflict):
            log.append("S1", "sheet", 1, at("print", "OP-2"))
        assert log.count_events() == 2

    def test_append_batch_contiguous_versions(self, temp_vault):
        """バッチは連続したバージョンで追記される"""
        log = EventLog(temp_vault)

        stored = log.append_batch(
            "S1", "sheet", 0, [registered("S1"), entered("S1", "print"), entered("S1", "coat")]
        )

        assert [e.version for e in stored] == [1, 2, 3]
        assert [e.sequence for e in stored] == [1, 2, 3]

    def test_append_streams_is_all_or_nothing(self, temp_vault):
        """複数集約の追記は1つでも競合すれば全件書かれない"""
        # Arrange
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))

        # Act
        with pytest.raises(VersionConflict):
            log.append_streams(
                [
                    StreamAppend("card", "S1-01", 0, [card_created("S1-01", 1)]),
                    StreamAppend("sheet", "S1", 0, [entered("S1", "print")]),
                ]
            )

        # Assert
        assert log.count_events() == 1
        assert log.current_version("S1-01", "card") == 0

    def test_append_streams_commits_every_stream(self, temp_vault):
        """複数集約への追記が通し番号順に確定する"""
        log = EventLog(temp_vault)

        stored = log.append_streams(
            [
                StreamAppend("card", "S1-01", 0, [card_created("S1-01", 1)]),
                StreamAppend("card", "S1-02", 0, [card_created("S1-02", 2)]),
            ]
        )

        assert [e.sequence for e in stored] == [1, 2]
        assert log.list_aggregates(AggregateType.CARD) == ["S1-01", "S1-02"]

    def test_rejects_malformed_batches(self, temp_vault):
        """空のバッチや集約の不一致は ValueError"""
        log = EventLog(temp_vault)

        with pytest.raises(ValueError):
            log.append_streams([])
        with pytest.raises(ValueError):
            log.append("S2", "sheet", 0, registered("S1"))
        with pytest.raises(ValueError):
            log.append_streams(
                [
                    StreamAppend("sheet", "S1", 0, [registered("S1")]),
                    StreamAppend("sheet", "S1", 0, [registered("S1")]),
                ]
            )


class TestRead:
    """読み取りのテスト"""

    def test_read_in_version_order(self, temp_vault):
        """集約のイベントをバージョン順に取得"""
        log = EventLog(temp_vault)
        log.append_batch("S1", "sheet", 0, [registered("S1"), entered("S1", "print")])
        log.append("S2", "sheet", 0, registered("S2"))

        events = list(log.read("S1", AggregateType.SHEET))

        assert [e.version for e in events] == [1, 2]
        assert events[1].type == EventType.SHEET_STATION_ENTERED
        assert events[1].station == "print"

    def test_read_from_version(self, temp_vault):
        """from_version より後のイベントのみ"""
        log = EventLog(temp_vault)
        log.append_batch(
            "S1", "sheet", 0, [registered("S1"), entered("S1", "a"), entered("S1", "b")]
        )

        events = list(log.read("S1", "sheet", from_version=1))

        assert [e.version for e in events] == [2, 3]

    def test_read_unknown_aggregate_is_empty(self, temp_vault):
        log = EventLog(temp_vault)
        assert list(log.read("missing", "sheet")) == []

    def test_read_all_from_sequence_and_types(self, temp_vault):
        """全体フィードの開始位置と種別フィルタ"""
        log = EventLog(temp_vault)
        log.append_batch("S1", "sheet", 0, [registered("S1"), entered("S1", "print")])
        log.append("S2", "sheet", 0, registered("S2"))

        assert [e.sequence for e in log.read_all(from_sequence=1)] == [2, 3]
        registered_only = list(log.read_all(event_types=[EventType.SHEET_REGISTERED]))
        assert [e.aggregate_id for e in registered_only] == ["S1", "S2"]

    def test_read_is_restartable(self, temp_vault):
        """読み取りは何度でもやり直せる"""
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))

        first = list(log.read("S1", "sheet"))
        second = list(log.read("S1", "sheet"))

        assert [e.id for e in first] == [e.id for e in second]

    def test_get_last_event(self, temp_vault):
        log = EventLog(temp_vault)
        assert log.get_last_event() is None
        log.append("S1", "sheet", 0, registered("S1"))
        assert log.get_last_event().aggregate_id == "S1"

    def test_export(self, temp_vault, tmp_path):
        """JSONLエクスポート"""
        log = EventLog(temp_vault)
        log.append_batch("S1", "sheet", 0, [registered("S1"), entered("S1", "print")])

        count = log.export(tmp_path / "export.jsonl")

        assert count == 2
        assert len((tmp_path / "export.jsonl").read_text().splitlines()) == 2


class TestPersistence:
    """永続化と複数インスタンスのテスト"""

    def test_reopen_restores_index(self, temp_vault):
        """開き直してもバージョンと通し番号が復元される"""
        log = EventLog(temp_vault)
        log.append_batch("S1", "sheet", 0, [registered("S1"), entered("S1", "print")])

        reopened = EventLog(temp_vault)

        assert reopened.current_version("S1", "sheet") == 2
        assert reopened.last_sequence() == 2
        stored = reopened.append("S1", "sheet", 2, entered("S1", "coat"))
        assert stored.sequence == 3

    def test_catch_up_other_writer(self, temp_vault):
        """別インスタンスが書いたイベントをバージョン確認前に取り込む"""
        # Arrange
        log_a = EventLog(temp_vault)
        log_b = EventLog(temp_vault)
        log_a.append("S1", "sheet", 0, registered("S1"))

        # Act & Assert: log_b の古い見え方では競合する
        with pytest.raises(VersionConflict):
            log_b.append("S1", "sheet", 0, registered("S1", job_id="OTHER"))

        stored = log_b.append("S1", "sheet", 1, entered("S1", "print"))
        assert stored.sequence == 2
        assert stored.prev_hash == next(log_a.read("S1", "sheet")).hash

    def test_read_all_sees_other_writer(self, temp_vault):
        """全体フィードも別インスタンスの追記を取り込んでから返す"""
        log_a = EventLog(temp_vault)
        log_b = EventLog(temp_vault)
        log_a.append("S1", "sheet", 0, registered("S1"))
        log_a.append("S2", "sheet", 0, registered("S2"))

        sequences = [e.sequence for e in log_b.read_all()]

        assert sequences == [1, 2]

    def test_verify_chain(self, temp_vault):
        """ハッシュチェーンの検証"""
        log = EventLog(temp_vault)
        for i in range(5):
            log.append(f"S{i}", "sheet", 0, registered(f"S{i}"))

        valid, error = log.verify_chain()

        assert valid is True
        assert error is None

    def test_tampered_log_is_rejected(self, temp_vault):
        """途中の行を書き換えるとチェーン不整合で StorageError"""
        # Arrange
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1", job_id="J1"))
        log.append("S2", "sheet", 0, registered("S2"))
        path = temp_vault / "events.jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        lines[0] = lines[0].replace('"J1"', '"J9"')
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        # Act & Assert
        with pytest.raises(StorageError):
            EventLog(temp_vault)

    def test_non_object_line_is_rejected(self, temp_vault):
        """オブジェクトでない行があれば StorageError"""
        (temp_vault / "events.jsonl").write_text("[1, 2]\n", encoding="utf-8")

        with pytest.raises(StorageError):
            EventLog(temp_vault)

    def test_incomplete_line_is_rejected(self, temp_vault):
        """末尾が途中で切れたファイルは StorageError"""
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))
        with open(temp_vault / "events.jsonl", "a", encoding="utf-8") as f:
            f.write('{"type": "sheet.registered"')

        with pytest.raises(StorageError):
            EventLog(temp_vault)


class TestSubscribers:
    """購読者のテスト"""

    def test_prepare_failure_aborts_append(self, temp_vault):
        """prepare が失敗すれば追記も行われない"""

        class Failing:
            def prepare(self, events):
                raise RuntimeError("projection failed")

            def commit(self, staged):
                raise AssertionError("commit must not be called")

        log = EventLog(temp_vault)
        log.subscribe(Failing())

        with pytest.raises(RuntimeError):
            log.append("S1", "sheet", 0, registered("S1"))
        assert log.count_events() == 0
        assert (temp_vault / "events.jsonl").read_bytes() == b""

    def test_subscribe_applies_backlog(self, temp_vault):
        """登録時に既存イベントが適用される"""

        class Recorder:
            def __init__(self):
                self.sequences = []

            def prepare(self, events):
                return [e.sequence for e in events]

            def commit(self, staged):
                self.sequences.extend(staged)

        log = EventLog(temp_vault)
        log.append_batch("S1", "sheet", 0, [registered("S1"), entered("S1", "print")])
        recorder = Recorder()

        log.subscribe(recorder, from_sequence=1)
        log.append("S2", "sheet", 0, registered("S2"))

        assert recorder.sequences == [2, 3]


class TestConcurrency:
    """スレッド並行のテスト"""

    def test_parallel_appends_are_gap_free(self, temp_vault):
        """並行追記でも通し番号とバージョンに欠番がない"""
        log = EventLog(temp_vault)
        errors = []

        def worker(n):
            try:
                card_id = f"S1-{n:02d}"
                log.append(card_id, "card", 0, card_created(card_id, 1))
                for i in range(4):
                    event = CardStationEnteredEvent(
                        aggregate_id=card_id, occurred_at=NOW, station=f"st-{i}"
                    )
                    log.append(card_id, "card", i + 1, event)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert [e.sequence for e in log.read_all()] == list(range(1, 41))
        assert all(log.current_version(f"S1-{n:02d}", "card") == 5 for n in range(8))
        assert log.verify_chain() == (True, None)

    def test_contended_aggregate_exactly_one_winner(self, temp_vault):
        """同じバージョンへの並行追記はちょうど1件だけ成功する"""
        log = EventLog(temp_vault)
        log.append("S1", "sheet", 0, registered("S1"))
        results = []
        barrier = threading.Barrier(6)

        def worker(n):
            barrier.wait()
            try:
                log.append("S1", "sheet", 1, entered("S1", f"station-{n}"))
                results.append("ok")
            except VersionConflict:
                results.append("conflict")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == 5
        assert log.current_version("S1", "sheet") == 2
