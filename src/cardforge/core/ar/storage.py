"""EventLog ストレージ層

追記専用のイベントログ。集約ごとの楽観的バージョン管理と
ログ全体の通し番号（sequence）を持つ。

Vault/events.jsonl に1行1イベントで保存し、ファイルロックで
複数プロセスからの書き込みを直列化する。各コミットは1回の write で
書き出すため、バッチは全件が見えるか1件も見えないかのどちらかになる。
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

import portalocker

from ..errors import DuplicateEvent, StorageError, VersionConflict
from ..events import BaseEvent, EventType, generate_event_id, parse_event

logger = logging.getLogger(__name__)

EVENTS_FILENAME = "events.jsonl"


def _key(aggregate_type: Enum | str, aggregate_id: str) -> tuple[str, str]:
    value = aggregate_type.value if isinstance(aggregate_type, Enum) else aggregate_type
    return (value, aggregate_id)


@dataclass
class StreamAppend:
    """1集約分の追記要求

    Attributes:
        aggregate_type: 集約種別
        aggregate_id: 集約ID
        expected_version: 追記前に期待するバージョン（新規集約は0）
        events: 追記するイベント（順序どおりに連番が振られる）
    """

    aggregate_type: Enum | str
    aggregate_id: str
    expected_version: int
    events: Sequence[BaseEvent] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        return _key(self.aggregate_type, self.aggregate_id)


class LogSubscriber(Protocol):
    """追記と同じ作業単位で通知を受ける購読者（投影エンジン）

    prepare は書き込み前に呼ばれ、例外を送出すれば追記自体が中止される。
    commit は書き込み成功後に prepare の結果を反映する。
    """

    def prepare(self, events: Sequence[BaseEvent]) -> Any: ...

    def commit(self, staged: Any) -> None: ...


class EventLog:
    """追記専用イベントログ

    Attributes:
        vault_path: Vaultディレクトリのパス
    """

    def __init__(self, vault_path: Path | str, lock_timeout: int = 10):
        """
        Args:
            vault_path: Vaultディレクトリのパス
            lock_timeout: ファイルロック待機秒
        """
        self.vault_path = Path(vault_path)
        self.vault_path.mkdir(parents=True, exist_ok=True)
        self.events_file = self.vault_path / EVENTS_FILENAME
        self.events_file.touch(exist_ok=True)
        self._lock_timeout = lock_timeout

        # プロセス内の直列化（ファイルロックはプロセス間）
        self._mutex = threading.RLock()
        self._subscribers: list[LogSubscriber] = []

        # 読み込み済みの位置とインデックス
        self._offset = 0
        self._last_sequence = 0
        self._last_hash: str | None = None
        self._sequence_offsets: list[int] = []
        self._stream_offsets: dict[tuple[str, str], list[int]] = {}
        self._fingerprints: dict[tuple[str, str, int], str] = {}
        self._event_ids: set[str] = set()

        self.refresh()

    # =========================================================================
    # 内部: ファイル走査
    # =========================================================================

    def _open_locked(self) -> portalocker.Lock:
        return portalocker.Lock(self.events_file, mode="a+b", timeout=self._lock_timeout)

    def _scan(self, f) -> list[BaseEvent]:
        """前回位置以降に追記された行を読み込みインデックスへ反映

        他プロセスが書いた行もここで取り込む。ファイルロック保持中に呼ぶこと。

        Raises:
            StorageError: 行の破損、通し番号・バージョン・ハッシュチェーンの不整合
        """
        f.seek(0, 2)
        file_size = f.tell()
        if file_size < self._offset:
            raise StorageError(f"{self.events_file} shrank from {self._offset} to {file_size} bytes")
        if file_size == self._offset:
            return []

        f.seek(self._offset)
        data = f.read(file_size - self._offset)
        if not data.endswith(b"\n"):
            raise StorageError(f"{self.events_file} ends with an incomplete line")

        new_events: list[BaseEvent] = []
        position = self._offset
        for raw in data.split(b"\n")[:-1]:
            line_offset = position
            position += len(raw) + 1
            if not raw.strip():
                continue
            try:
                event = parse_event(raw.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                raise StorageError(f"corrupt event at byte {line_offset}: {e}") from e
            self._index(event, line_offset)
            new_events.append(event)

        self._offset = position
        return new_events

    def _index(self, event: BaseEvent, offset: int) -> None:
        key = event.stream
        expected_version = len(self._stream_offsets.get(key, [])) + 1
        if event.sequence != self._last_sequence + 1:
            raise StorageError(
                f"sequence gap: expected {self._last_sequence + 1}, found {event.sequence}"
            )
        if event.version != expected_version:
            raise StorageError(
                f"version gap in {key[0]} {key[1]}: expected {expected_version}, "
                f"found {event.version}"
            )
        if event.prev_hash != self._last_hash:
            raise StorageError(f"hash chain broken at sequence {event.sequence}")

        self._last_sequence = event.sequence
        self._last_hash = event.hash
        self._sequence_offsets.append(offset)
        self._stream_offsets.setdefault(key, []).append(offset)
        self._fingerprints[(key[0], key[1], event.version)] = event.fingerprint
        if event.id:
            self._event_ids.add(event.id)

    def _notify(self, events: Sequence[BaseEvent]) -> None:
        """他プロセス由来のイベントを購読者へ反映"""
        if not events:
            return
        for subscriber in self._subscribers:
            subscriber.commit(subscriber.prepare(events))

    def refresh(self) -> int:
        """他プロセスが追記したイベントを取り込む

        Returns:
            取り込んだイベント数
        """
        with self._mutex:
            try:
                with self._open_locked() as f:
                    new_events = self._scan(f)
            except portalocker.exceptions.LockException as e:
                raise StorageError(f"could not lock {self.events_file}: {e}") from e
            except OSError as e:
                raise StorageError(f"could not read {self.events_file}: {e}") from e
            self._notify(new_events)
            return len(new_events)

    # =========================================================================
    # 購読
    # =========================================================================

    def subscribe(self, subscriber: LogSubscriber, from_sequence: int = 0) -> None:
        """購読者を登録し、from_sequence より後の既存イベントを先に適用

        Args:
            subscriber: 購読者
            from_sequence: 購読者が既に反映済みの通し番号
        """
        with self._mutex:
            self.refresh()
            backlog = list(self.read_all(from_sequence=from_sequence))
            if backlog:
                subscriber.commit(subscriber.prepare(backlog))
            self._subscribers.append(subscriber)

    # =========================================================================
    # 追記
    # =========================================================================

    def append(
        self,
        aggregate_id: str,
        aggregate_type: Enum | str,
        expected_version: int,
        event: BaseEvent,
    ) -> BaseEvent:
        """イベントを1件追記

        Returns:
            sequence / version / id / recorded_at / prev_hash が確定したイベント

        Raises:
            VersionConflict: 現在のバージョンが expected_version と異なる場合
            DuplicateEvent: 同じイベントが既に追記済みの場合
            StorageError: ストレージ障害
        """
        return self.append_batch(aggregate_id, aggregate_type, expected_version, [event])[0]

    def append_batch(
        self,
        aggregate_id: str,
        aggregate_type: Enum | str,
        expected_version: int,
        events: Sequence[BaseEvent],
    ) -> list[BaseEvent]:
        """1集約に複数イベントを連続バージョンで追記（全件か0件）"""
        return self.append_streams(
            [StreamAppend(aggregate_type, aggregate_id, expected_version, events)]
        )

    def append_streams(self, batches: Sequence[StreamAppend]) -> list[BaseEvent]:
        """複数集約へのイベントを1つの作業単位として追記（全件か0件）

        カット（ファンアウト）のように、シート・全カード・セットのイベントを
        同時に見えるようにする必要がある場合に使う。

        Returns:
            確定したイベント（バッチ順・イベント順）

        Raises:
            ValueError: 空のバッチ、集約の重複、イベントと集約の不一致
            VersionConflict: いずれかの集約でバージョンが一致しない場合
            DuplicateEvent: 同じイベントが既に追記済みの場合
            StorageError: ストレージ障害
        """
        self._validate_batches(batches)

        with self._mutex:
            try:
                with self._open_locked() as f:
                    self._notify(self._scan(f))
                    for batch in batches:
                        self._check_version(batch)

                    stored = self._stamp(batches)
                    staged = [(s, s.prepare(stored)) for s in self._subscribers]
                    offsets = self._write(f, stored)
                    for event in stored:
                        self._index(event, offsets[event.sequence])
                    self._offset = f.tell()
            except portalocker.exceptions.LockException as e:
                raise StorageError(f"could not lock {self.events_file}: {e}") from e
            except OSError as e:
                raise StorageError(f"could not append to {self.events_file}: {e}") from e

            for subscriber, result in staged:
                subscriber.commit(result)

        logger.info(
            "committed %d event(s) to %d stream(s), sequence %d..%d",
            len(stored),
            len(batches),
            stored[0].sequence,
            stored[-1].sequence,
        )
        return stored

    def _validate_batches(self, batches: Sequence[StreamAppend]) -> None:
        if not batches or not any(batch.events for batch in batches):
            raise ValueError("nothing to append")
        seen: set[tuple[str, str]] = set()
        for batch in batches:
            if batch.key in seen:
                raise ValueError(f"stream {batch.key} appears twice in one commit")
            seen.add(batch.key)
            if batch.expected_version < 0:
                raise ValueError("expected_version must be >= 0")
            for event in batch.events:
                if event.stream != batch.key:
                    raise ValueError(
                        f"event for {event.stream} submitted to stream {batch.key}"
                    )

    def _check_version(self, batch: StreamAppend) -> None:
        for event in batch.events:
            if event.id and event.id in self._event_ids:
                raise DuplicateEvent(f"event {event.id} already recorded")

        current = len(self._stream_offsets.get(batch.key, []))
        if current == batch.expected_version:
            return

        # 同じ (集約, バージョン) に同じ内容を再送した場合は冪等ガード
        if current > batch.expected_version:
            type_value, aggregate_id = batch.key
            versions = range(batch.expected_version + 1, batch.expected_version + 1 + len(batch.events))
            stored = [self._fingerprints.get((type_value, aggregate_id, v)) for v in versions]
            if stored == [e.fingerprint for e in batch.events]:
                raise DuplicateEvent(
                    f"{type_value} {aggregate_id} version {batch.expected_version + 1} "
                    "already recorded with identical content"
                )

        logger.warning(
            "version conflict on %s %s: expected %d, actual %d",
            batch.key[0],
            batch.key[1],
            batch.expected_version,
            current,
        )
        raise VersionConflict(batch.key[0], batch.key[1], batch.expected_version, current)

    def _stamp(self, batches: Sequence[StreamAppend]) -> list[BaseEvent]:
        """通し番号・バージョン・ハッシュチェーンを付与"""
        recorded_at = datetime.now(UTC)
        sequence = self._last_sequence
        prev_hash = self._last_hash
        stored: list[BaseEvent] = []
        for batch in batches:
            version = batch.expected_version
            for event in batch.events:
                sequence += 1
                version += 1
                updated = event.model_copy(
                    update={
                        "id": event.id or generate_event_id(),
                        "sequence": sequence,
                        "version": version,
                        "recorded_at": recorded_at,
                        "prev_hash": prev_hash,
                    }
                )
                prev_hash = updated.hash
                stored.append(updated)
        return stored

    def _write(self, f, stored: Sequence[BaseEvent]) -> dict[int, int]:
        """1回の write で書き出す。失敗時は書き込み前の長さに戻す

        Returns:
            通し番号 -> 行の先頭バイト位置
        """
        payload = "".join(event.to_jsonl() + "\n" for event in stored).encode("utf-8")
        f.seek(0, 2)
        start = f.tell()
        try:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        except OSError:
            logger.error("append to %s failed, truncating to %d bytes", self.events_file, start)
            f.truncate(start)
            raise
        return self._line_offsets(start, stored)

    @staticmethod
    def _line_offsets(start: int, stored: Sequence[BaseEvent]) -> dict[int, int]:
        offsets: dict[int, int] = {}
        position = start
        for event in stored:
            offsets[event.sequence] = position
            position += len((event.to_jsonl() + "\n").encode("utf-8"))
        return offsets

    # =========================================================================
    # 読み取り
    # =========================================================================

    def _iter_offsets(self, offsets: Iterable[int]) -> Iterator[BaseEvent]:
        # コミット済みの行は変更されないため、読み取りにロックは不要
        try:
            with open(self.events_file, "rb") as f:
                for offset in offsets:
                    f.seek(offset)
                    yield parse_event(f.readline().decode("utf-8"))
        except OSError as e:
            raise StorageError(f"could not read {self.events_file}: {e}") from e

    def read(
        self,
        aggregate_id: str,
        aggregate_type: Enum | str,
        from_version: int = 0,
    ) -> Iterator[BaseEvent]:
        """集約のイベントをバージョン順に取得

        Args:
            aggregate_id: 集約ID
            aggregate_type: 集約種別
            from_version: このバージョンより後のイベントのみ取得

        Yields:
            イベント（バージョン昇順、欠番なし）
        """
        self.refresh()
        offsets = list(self._stream_offsets.get(_key(aggregate_type, aggregate_id), []))
        return self._iter_offsets(offsets[max(from_version, 0) :])

    def read_all(
        self,
        from_sequence: int = 0,
        event_types: Iterable[EventType | str] | None = None,
    ) -> Iterator[BaseEvent]:
        """ログ全体を通し番号順に取得

        Args:
            from_sequence: この通し番号より後のイベントのみ取得
            event_types: 指定した場合はこの種別のみ

        Yields:
            イベント（通し番号昇順）
        """
        self.refresh()
        with self._mutex:
            offsets = list(self._sequence_offsets[max(from_sequence, 0) :])
        if event_types is None:
            return self._iter_offsets(offsets)
        wanted = {t.value if isinstance(t, Enum) else t for t in event_types}
        return (e for e in self._iter_offsets(offsets) if e.type_value in wanted)

    def current_version(self, aggregate_id: str, aggregate_type: Enum | str) -> int:
        """集約の現在のバージョン（未作成なら0）"""
        with self._mutex:
            return len(self._stream_offsets.get(_key(aggregate_type, aggregate_id), []))

    def last_sequence(self) -> int:
        """最後に記録された通し番号（空なら0）"""
        return self._last_sequence

    def count_events(self) -> int:
        """イベント数"""
        return self._last_sequence

    def list_aggregates(self, aggregate_type: Enum | str | None = None) -> list[str]:
        """集約IDの一覧"""
        with self._mutex:
            keys = list(self._stream_offsets)
        if aggregate_type is None:
            return sorted({aggregate_id for _, aggregate_id in keys})
        wanted = _key(aggregate_type, "")[0]
        return sorted(aggregate_id for type_value, aggregate_id in keys if type_value == wanted)

    def get_last_event(self) -> BaseEvent | None:
        """最後のイベント"""
        if not self._sequence_offsets:
            return None
        return next(self._iter_offsets([self._sequence_offsets[-1]]))

    def verify_chain(self) -> tuple[bool, str | None]:
        """イベントチェーンの整合性を検証

        Returns:
            (整合性OK, エラーメッセージ) のタプル
        """
        prev_hash = None
        expected_sequence = 1
        for event in self._iter_offsets(list(self._sequence_offsets)):
            if event.sequence != expected_sequence:
                return False, f"Sequence gap at event {event.id}"
            if event.prev_hash != prev_hash:
                return False, f"Hash mismatch at event {event.id}"
            prev_hash = event.hash
            expected_sequence += 1
        return True, None

    def export(self, output_path: Path | str) -> int:
        """ログ全体をJSONLでエクスポート

        Returns:
            エクスポートしたイベント数
        """
        count = 0
        with open(output_path, "w", encoding="utf-8") as f:
            for event in self.read_all():
                f.write(event.to_jsonl() + "\n")
                count += 1
        return count
