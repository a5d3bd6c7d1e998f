"""投影 (Projections) モジュール

イベントログから読み取りモデルを計算する。

各読み取りモデルは純粋な reducer の集合:
    apply(row | None, event) -> row | None
で、関心のあるイベント種別と行キーの求め方を宣言する。
ProjectionEngine は EventLog の購読者として追記と同じ作業単位で
行を更新し、通し番号 0 からの再構築（rebuild）も行う。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from itertools import islice
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..errors import NotFound, StorageError
from ..events import (
    AggregateType,
    AssemblyStatus,
    BaseEvent,
    CardStatus,
    EventType,
    SheetStatus,
)

logger = logging.getLogger(__name__)

CARDS = "cards"
SHEETS = "sheets"
ASSEMBLIES = "assemblies"
STATION_QUEUES = "station_queues"
JOB_PROGRESS = "job_progress"


class ReadModelRow(BaseModel):
    """読み取りモデルの1行

    last_applied_sequence 以下の通し番号のイベントは再適用しない。
    """

    model_config = {"frozen": True}

    key: str
    data: dict[str, Any] = Field(default_factory=dict)
    last_applied_sequence: int = Field(default=0, ge=0)


Reducer = Callable[[ReadModelRow | None, BaseEvent], ReadModelRow | None]


@dataclass(frozen=True)
class ReadModel:
    """読み取りモデルの定義

    Attributes:
        name: モデル名
        handlers: イベント種別 -> reducer（閉じた集合）
        keys: イベントから影響を受ける行キーを求める関数
    """

    name: str
    handlers: Mapping[EventType, Reducer]
    keys: Callable[[BaseEvent], list[str]]

    @property
    def event_types(self) -> frozenset[EventType]:
        return frozenset(self.handlers)

    def apply(self, row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
        """イベントを1行に適用（関心のない種別なら行をそのまま返す）"""
        handler = self.handlers.get(event.type)  # type: ignore[call-overload]
        if handler is None:
            return row
        return handler(row, event)


# =============================================================================
# reducer 共通
# =============================================================================


def _time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _aggregate_key(event: BaseEvent) -> list[str]:
    return [event.aggregate_id]


def _new(event: BaseEvent, **data: Any) -> ReadModelRow:
    data["version"] = event.version
    data["updated_at"] = _time(event.occurred_at)
    return ReadModelRow(key=event.aggregate_id, data=data)


def _update(row: ReadModelRow | None, event: BaseEvent, **changes: Any) -> ReadModelRow | None:
    if row is None:
        return None
    data = dict(row.data)
    data.update(changes)
    data["version"] = event.version
    data["updated_at"] = _time(event.occurred_at)
    return row.model_copy(update={"data": data})


# =============================================================================
# cards
# =============================================================================


def _card_created(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow:
    payload = event.payload
    return _new(
        event,
        card_id=event.aggregate_id,
        sheet_id=payload["sheet_id"],
        position=payload["position"],
        job_id=payload.get("job_id"),
        status=CardStatus.CREATED.value,
        station=None,
        qa_failures=0,
        rework_count=0,
        defect=None,
        void_reason=None,
        replaces=payload.get("replaces"),
        replaced_by=None,
        assembly_id=None,
        created_at=_time(event.occurred_at),
    )


def _card_station_entered(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, status=CardStatus.IN_PROCESS.value, station=event.station)


def _card_qa_passed(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, status=CardStatus.QA_PASSED.value, defect=None)


def _card_qa_failed(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    if row is None:
        return None
    return _update(
        row,
        event,
        status=CardStatus.QA_FAILED.value,
        qa_failures=row.data["qa_failures"] + 1,
        defect=event.payload.get("defect"),
    )


def _card_rework_started(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    if row is None:
        return None
    return _update(
        row, event, status=CardStatus.IN_PROCESS.value, rework_count=row.data["rework_count"] + 1
    )


def _card_voided(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, status=CardStatus.VOIDED.value, void_reason=event.payload["reason"])


def _card_replaced(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, replaced_by=event.payload["replacement_id"])


def _card_assembled(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(
        row, event, status=CardStatus.ASSEMBLED.value, assembly_id=event.payload["assembly_id"]
    )


def _card_packed(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, status=CardStatus.PACKED.value)


# =============================================================================
# sheets
# =============================================================================


def _sheet_registered(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow:
    return _new(
        event,
        sheet_id=event.aggregate_id,
        job_id=event.payload.get("job_id"),
        status=SheetStatus.PENDING.value,
        station=event.station,
        fan_out=None,
        card_ids=[],
        assembly_id=None,
        registered_at=_time(event.occurred_at),
        cut_at=None,
    )


def _sheet_station_entered(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(row, event, status=SheetStatus.IN_PROCESS.value, station=event.station)


def _sheet_cut(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    payload = event.payload
    return _update(
        row,
        event,
        status=SheetStatus.CUT.value,
        fan_out=payload["fan_out"],
        card_ids=list(payload["card_ids"]),
        assembly_id=payload["assembly_id"],
        cut_at=_time(event.occurred_at),
    )


# =============================================================================
# assemblies
# =============================================================================


def _assembly_created(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow:
    payload = event.payload
    count = payload["expected_count"]
    return _new(
        event,
        assembly_id=event.aggregate_id,
        sheet_id=payload["sheet_id"],
        job_id=payload.get("job_id"),
        status=AssemblyStatus.PENDING.value,
        expected_count=count,
        expected=list(payload["expected"]),
        gathered=[],
        gathered_count=0,
        missing_positions=list(range(1, count + 1)),
        first_gathered_at=None,
        completed_at=None,
        error_reason=None,
    )


def _assembly_child_gathered(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    if row is None:
        return None
    position = event.payload["position"]
    gathered = sorted(set(row.data["gathered"]) | {position})
    return _update(
        row,
        event,
        status=AssemblyStatus.IN_PROGRESS.value,
        gathered=gathered,
        gathered_count=len(gathered),
        missing_positions=[p for p in row.data["missing_positions"] if p != position],
        first_gathered_at=row.data["first_gathered_at"] or _time(event.occurred_at),
    )


def _assembly_completed(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(
        row, event, status=AssemblyStatus.COMPLETE.value, completed_at=_time(event.occurred_at)
    )


def _assembly_card_substituted(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    if row is None:
        return None
    expected = list(row.data["expected"])
    expected[event.payload["position"] - 1] = event.payload["replacement_id"]
    return _update(row, event, expected=expected)


def _assembly_errored(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    return _update(
        row,
        event,
        status=AssemblyStatus.ERROR.value,
        error_reason=event.payload["reason"],
        missing_positions=list(event.payload.get("missing_positions", [])),
    )


# =============================================================================
# station_queues
# =============================================================================

_ENTERED = (EventType.SHEET_STATION_ENTERED, EventType.CARD_STATION_ENTERED)


def _station_keys(event: BaseEvent) -> list[str]:
    keys = [event.payload.get("from_station")]
    if event.type in _ENTERED:
        keys.append(event.station)
    return list(dict.fromkeys(k for k in keys if k))


def _station_changed(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow | None:
    """ステーションへの投入で追加、移動・カット・廃棄・組み込みで除外"""
    group = "sheets" if event.aggregate_type == AggregateType.SHEET else "cards"
    entering = event.type in _ENTERED
    if row is None:
        if not entering:
            return None
        data = {"station": event.station, "sheets": [], "cards": []}
        row = ReadModelRow(key=event.station, data=data)

    units = set(row.data[group])
    if entering and row.key == event.station:
        units.add(event.aggregate_id)
    else:
        units.discard(event.aggregate_id)
    data = dict(row.data)
    data[group] = sorted(units)
    return row.model_copy(update={"data": data})


# =============================================================================
# job_progress
# =============================================================================

_JOB_COUNTERS = (
    "sheets",
    "sheets_cut",
    "cards_cut",
    "replacements",
    "qa_passed",
    "qa_failed",
    "voided",
    "assembled",
    "packed",
    "sets_completed",
    "sets_errored",
)


def _job_keys(event: BaseEvent) -> list[str]:
    job_id = event.payload.get("job_id")
    return [job_id] if job_id else []


def _job_counter(counter: str) -> Reducer:
    def reducer(row: ReadModelRow | None, event: BaseEvent) -> ReadModelRow:
        job_id = event.payload["job_id"]
        data = dict(row.data) if row else {"job_id": job_id, **dict.fromkeys(_JOB_COUNTERS, 0)}
        data[counter] += 1
        data["updated_at"] = _time(event.occurred_at)
        return ReadModelRow(
            key=job_id,
            data=data,
            last_applied_sequence=row.last_applied_sequence if row else 0,
        )

    return reducer


# =============================================================================
# 読み取りモデル定義
# =============================================================================


def default_read_models() -> list[ReadModel]:
    """標準の読み取りモデル一覧"""
    return [
        ReadModel(
            name=CARDS,
            keys=_aggregate_key,
            handlers={
                EventType.CARD_CREATED: _card_created,
                EventType.CARD_REPLACEMENT_CREATED: _card_created,
                EventType.CARD_STATION_ENTERED: _card_station_entered,
                EventType.CARD_QA_PASSED: _card_qa_passed,
                EventType.CARD_QA_FAILED: _card_qa_failed,
                EventType.CARD_REWORK_STARTED: _card_rework_started,
                EventType.CARD_VOIDED: _card_voided,
                EventType.CARD_REPLACED: _card_replaced,
                EventType.CARD_ASSEMBLED: _card_assembled,
                EventType.CARD_PACKED: _card_packed,
            },
        ),
        ReadModel(
            name=SHEETS,
            keys=_aggregate_key,
            handlers={
                EventType.SHEET_REGISTERED: _sheet_registered,
                EventType.SHEET_STATION_ENTERED: _sheet_station_entered,
                EventType.SHEET_CUT: _sheet_cut,
            },
        ),
        ReadModel(
            name=ASSEMBLIES,
            keys=_aggregate_key,
            handlers={
                EventType.ASSEMBLY_CREATED: _assembly_created,
                EventType.ASSEMBLY_CHILD_GATHERED: _assembly_child_gathered,
                EventType.ASSEMBLY_COMPLETED: _assembly_completed,
                EventType.ASSEMBLY_CARD_SUBSTITUTED: _assembly_card_substituted,
                EventType.ASSEMBLY_ERRORED: _assembly_errored,
            },
        ),
        ReadModel(
            name=STATION_QUEUES,
            keys=_station_keys,
            handlers={
                EventType.SHEET_STATION_ENTERED: _station_changed,
                EventType.SHEET_CUT: _station_changed,
                EventType.CARD_STATION_ENTERED: _station_changed,
                EventType.CARD_VOIDED: _station_changed,
                EventType.CARD_ASSEMBLED: _station_changed,
            },
        ),
        ReadModel(
            name=JOB_PROGRESS,
            keys=_job_keys,
            handlers={
                EventType.SHEET_REGISTERED: _job_counter("sheets"),
                EventType.SHEET_CUT: _job_counter("sheets_cut"),
                EventType.CARD_CREATED: _job_counter("cards_cut"),
                EventType.CARD_REPLACEMENT_CREATED: _job_counter("replacements"),
                EventType.CARD_QA_PASSED: _job_counter("qa_passed"),
                EventType.CARD_QA_FAILED: _job_counter("qa_failed"),
                EventType.CARD_VOIDED: _job_counter("voided"),
                EventType.CARD_ASSEMBLED: _job_counter("assembled"),
                EventType.CARD_PACKED: _job_counter("packed"),
                EventType.ASSEMBLY_COMPLETED: _job_counter("sets_completed"),
                EventType.ASSEMBLY_ERRORED: _job_counter("sets_errored"),
            },
        ),
    ]


# =============================================================================
# エンジン
# =============================================================================

Changes = dict[str, ReadModelRow | None]


def fold_rows(
    model: ReadModel,
    rows: Mapping[str, ReadModelRow],
    events: Iterable[BaseEvent],
    watermark: int = 0,
) -> tuple[Changes, int]:
    """イベント列を通し番号順に読み取りモデルへ適用（rows は変更しない）

    Returns:
        (変更された行 (Noneは削除), 新しい通し番号の最大値)
    """
    changed: Changes = {}
    for event in events:
        sequence = event.sequence or 0
        watermark = max(watermark, sequence)
        if event.type not in model.event_types:
            continue
        for key in model.keys(event):
            row = changed[key] if key in changed else rows.get(key)
            if row is not None and sequence <= row.last_applied_sequence:
                continue
            new_row = model.apply(row, event)
            if new_row is None:
                if row is not None:
                    changed[key] = None
                continue
            # 未作成の行に別キーの行を作ろうとした場合は対象外
            if new_row.key != key:
                continue
            changed[key] = new_row.model_copy(update={"last_applied_sequence": sequence})
    return changed, watermark


def _merge(rows: dict[str, ReadModelRow], changed: Changes) -> None:
    for key, row in changed.items():
        if row is None:
            rows.pop(key, None)
        else:
            rows[key] = row


class ProjectionEngine:
    """読み取りモデルを同期的に更新する投影エンジン

    EventLog.subscribe() で登録すると、追記の直前に prepare()、
    書き込み成功後に commit() が呼ばれる。

    Attributes:
        checkpoint_dir: チェックポイント保存先（Noneならメモリのみ）
    """

    def __init__(
        self,
        vault_path: Path | str | None = None,
        read_models: Iterable[ReadModel] | None = None,
    ):
        self.checkpoint_dir = Path(vault_path) / "projections" if vault_path else None
        self._lock = threading.RLock()
        self._models: dict[str, ReadModel] = {}
        self._rows: dict[str, dict[str, ReadModelRow]] = {}
        self._watermarks: dict[str, int] = {}
        for model in default_read_models() if read_models is None else read_models:
            self.register(model)

    def register(self, model: ReadModel) -> None:
        """読み取りモデルを登録"""
        with self._lock:
            if model.name in self._models:
                raise ValueError(f"read model '{model.name}' is already registered")
            self._models[model.name] = model
            self._rows[model.name] = {}
            self._watermarks[model.name] = 0

    @property
    def names(self) -> list[str]:
        return list(self._models)

    def _model(self, name: str) -> ReadModel:
        model = self._models.get(name)
        if model is None:
            raise NotFound(f"unknown read model '{name}'")
        return model

    # =========================================================================
    # LogSubscriber
    # =========================================================================

    def prepare(self, events: Sequence[BaseEvent]) -> dict[str, tuple[Changes, int]]:
        """書き込み前に全モデルの変更行を計算（例外なら追記中止）"""
        with self._lock:
            return {
                name: fold_rows(model, self._rows[name], events, self._watermarks[name])
                for name, model in self._models.items()
            }

    def commit(self, staged: dict[str, tuple[Changes, int]]) -> None:
        """prepare() の結果を反映"""
        with self._lock:
            for name, (changed, watermark) in staged.items():
                _merge(self._rows[name], changed)
                self._watermarks[name] = max(self._watermarks[name], watermark)

    # =========================================================================
    # 参照
    # =========================================================================

    def query(self, name: str, key: str) -> ReadModelRow:
        """1行を取得

        Raises:
            NotFound: モデルまたは行が存在しない場合
        """
        self._model(name)
        with self._lock:
            row = self._rows[name].get(key)
        if row is None:
            raise NotFound(f"{name} has no row '{key}'")
        return row

    def rows(self, name: str) -> list[ReadModelRow]:
        """全行（キー順）"""
        self._model(name)
        with self._lock:
            return [self._rows[name][key] for key in sorted(self._rows[name])]

    def dump(self, name: str) -> str:
        """全行のJSON表現（再構築結果の比較用）"""
        return json.dumps([row.model_dump() for row in self.rows(name)], sort_keys=True)

    def watermark(self, name: str) -> int:
        """モデルが反映済みの最大通し番号"""
        self._model(name)
        return self._watermarks[name]

    def position(self) -> int:
        """全モデルが反映済みの通し番号（最小値）"""
        with self._lock:
            return min(self._watermarks.values(), default=0)

    # =========================================================================
    # 再構築
    # =========================================================================

    def rebuild(
        self, name: str, log: Any, resume: bool = False, checkpoint_every: int = 1000
    ) -> int:
        """通し番号 0（または保存済みチェックポイント）から読み取りモデルを再構築

        Args:
            name: モデル名
            log: EventLog
            resume: True ならチェックポイントから続きを再構築
            checkpoint_every: このイベント数ごとにチェックポイントを保存

        Returns:
            再構築後の通し番号
        """
        model = self._model(name)
        rows: dict[str, ReadModelRow] = {}
        watermark = 0
        if resume:
            loaded = self.load_checkpoint(name)
            if loaded is not None:
                rows, watermark = loaded

        events = log.read_all(from_sequence=watermark)
        while True:
            chunk = list(islice(events, checkpoint_every))
            if not chunk:
                break
            changed, watermark = fold_rows(model, rows, chunk, watermark)
            _merge(rows, changed)
            self._write_checkpoint(name, rows, watermark)

        with self._lock:
            self._rows[name] = rows
            self._watermarks[name] = watermark

        # 再構築中にコミットされたイベントを取り込む（行ごとの通し番号で重複は無視）
        tail = list(log.read_all(from_sequence=watermark))
        if tail:
            self.commit({name: fold_rows(model, self._rows[name], tail, watermark)})

        self.save_checkpoint(name)
        logger.info(
            "rebuilt read model %s: %d row(s) up to sequence %d",
            name,
            len(self._rows[name]),
            self._watermarks[name],
        )
        return self._watermarks[name]

    # =========================================================================
    # チェックポイント
    # =========================================================================

    def _checkpoint_path(self, name: str) -> Path | None:
        return self.checkpoint_dir / f"{name}.json" if self.checkpoint_dir else None

    def _write_checkpoint(
        self, name: str, rows: Mapping[str, ReadModelRow], watermark: int
    ) -> None:
        path = self._checkpoint_path(name)
        if path is None:
            return
        document = {
            "name": name,
            "watermark": watermark,
            "rows": [rows[key].model_dump() for key in sorted(rows)],
        }
        tmp_name: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, ensure_ascii=False)
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"could not write checkpoint {path}: {e}") from e

    def save_checkpoint(self, name: str) -> None:
        """現在の行と通し番号をチェックポイントへ保存"""
        with self._lock:
            self._write_checkpoint(name, dict(self._rows[name]), self._watermarks[name])

    def save_checkpoints(self) -> None:
        """全モデルのチェックポイントを保存"""
        for name in self.names:
            self.save_checkpoint(name)

    def load_checkpoint(self, name: str) -> tuple[dict[str, ReadModelRow], int] | None:
        """チェックポイントを読み込む（なければ、または壊れていればNone）"""
        path = self._checkpoint_path(name)
        if path is None or not path.exists():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
            rows = [ReadModelRow.model_validate(r) for r in document["rows"]]
            watermark = int(document["watermark"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("ignoring unreadable checkpoint %s: %s", path, e)
            return None
        return {row.key: row for row in rows}, watermark

    def load_checkpoints(self) -> int:
        """保存済みチェックポイントを全モデルに読み込む

        Returns:
            全モデルが反映済みの通し番号（購読開始位置）
        """
        with self._lock:
            for name in self.names:
                loaded = self.load_checkpoint(name)
                if loaded is not None:
                    self._rows[name], self._watermarks[name] = loaded
        return self.position()
