"""イベントの共通エンベロープ

全集約のイベントが共有する項目と、ハッシュチェーン用の正規化を定義する。
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

import jcs
from pydantic import BaseModel, Field, computed_field, field_validator
from ulid import ULID

from .types import AggregateType, EventType

# UnknownEvent に保持する生データの上限（バイト）
MAX_RAW_EVENT_BYTES = 256 * 1024

# 追記時にログが確定する項目（同一内容の判定から除く）
LOG_ASSIGNED_FIELDS = frozenset(
    {"id", "version", "sequence", "recorded_at", "prev_hash", "hash", "raw"}
)


def generate_event_id() -> str:
    """イベントIDを生成 (ULID形式)"""
    return str(ULID())


def canonical(value: Any) -> Any:
    """JCSで正規化できる値へ変換

    Raises:
        TypeError: 変換できない型
        ValueError: inf / nan
    """
    if value is None or isinstance(value, str | bool | int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"non-finite float cannot be hashed: {value}")
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, BaseModel):
        return canonical(value.model_dump())
    if isinstance(value, dict):
        return {str(k): canonical(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [canonical(v) for v in value]
    if isinstance(value, set | frozenset):
        return sorted(canonical(v) for v in value)
    raise TypeError(f"{type(value).__name__} cannot be hashed: {value!r}")


def compute_hash(data: dict[str, Any]) -> str:
    """hash 以外の項目の正規化JSONに対する SHA-256"""
    body = canonical({k: v for k, v in data.items() if k != "hash"})
    return hashlib.sha256(jcs.canonicalize(body)).hexdigest()


class BaseEvent(BaseModel):
    """イベント基底クラス

    状態機械が返す時点では id / version / sequence / recorded_at / prev_hash は
    未確定で、EventLog への追記時に確定する。occurred_at と correlation_id は
    コマンドから与えられる。
    """

    model_config = {
        "strict": True,
        "frozen": True,
    }

    id: str | None = Field(default=None, description="イベントID (ULID、追記時に付与)")
    type: EventType | str = Field(..., description="イベント種別")
    aggregate_type: AggregateType = Field(..., description="集約種別")
    aggregate_id: str = Field(..., description="集約ID")
    version: int | None = Field(default=None, description="集約内バージョン（1始まり）")
    sequence: int | None = Field(default=None, description="ログ全体の通し番号（1始まり）")
    occurred_at: datetime = Field(..., description="業務上の発生時刻")
    recorded_at: datetime | None = Field(default=None, description="記録時刻（追記時に付与）")
    actor: str = Field(default="system", description="作業者")
    station: str | None = Field(default=None, description="ステーション")
    correlation_id: str | None = Field(default=None, description="同一操作由来イベントの相関ID")
    payload: dict[str, Any] = Field(default_factory=dict, description="イベントペイロード")
    prev_hash: str | None = Field(default=None, description="前イベントのハッシュ（チェーン用）")

    @computed_field
    @property
    def hash(self) -> str:
        """チェーン用ハッシュ（保存された値は使わず常に再計算）"""
        return compute_hash(self.model_dump(exclude={"hash", "raw"}))

    @property
    def fingerprint(self) -> str:
        """内容のハッシュ（再送の判定用）"""
        return compute_hash(self.model_dump(exclude=set(LOG_ASSIGNED_FIELDS)))

    @property
    def stream(self) -> tuple[str, str]:
        """(集約種別, 集約ID)"""
        kind = self.aggregate_type
        return (kind.value if isinstance(kind, Enum) else kind, self.aggregate_id)

    @property
    def type_value(self) -> str:
        return self.type.value if isinstance(self.type, Enum) else self.type

    def to_jsonl(self) -> str:
        """JSONL形式（改行なし）でシリアライズ"""
        return self.model_dump_json()


class UnknownEvent(BaseEvent):
    """このバージョンが知らない種別のイベント

    新しいバージョンが書いたログを読んでもリプレイは止めず、
    状態にもread modelにも影響させない。
    """

    type: str = Field(..., description="未知のイベント種別")
    aggregate_type: AggregateType | str = Field(..., description="集約種別")
    raw: dict[str, Any] = Field(default_factory=dict, description="読み込んだ行（上限あり）")

    @field_validator("raw", mode="before")
    @classmethod
    def limit_raw_size(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        size = len(json.dumps(value, default=str).encode("utf-8"))
        if size <= MAX_RAW_EVENT_BYTES:
            return value
        return {"type": value.get("type"), "truncated_bytes": size}
