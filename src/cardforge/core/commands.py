"""コマンドモデル

集約ごとに閉じたコマンドの集合を定義する。
外部から受け取った dict は parse_command() で種別タグ（command）により
対応するモデルへ変換する。

occurred_at と correlation_id は状態機械を決定的にするため
コマンド側で確定させる（未指定なら受付時に stamp() で補完）。
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .events import AggregateType, generate_event_id
from .identity import AGGREGATE_ID_PATTERN

# 他の集約を指すID
AggregateId = Annotated[str, Field(pattern=AGGREGATE_ID_PATTERN)]


class Command(BaseModel):
    """コマンド基底"""

    model_config = {"frozen": True, "extra": "forbid"}

    command: str
    actor: str = Field(default="system", description="作業者/オペレーターID")
    station: str | None = Field(default=None, description="実行ステーション")
    occurred_at: datetime | None = Field(default=None, description="業務上の発生時刻")
    correlation_id: str | None = Field(default=None, description="相関ID")

    @field_validator("occurred_at")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        """タイムゾーンなしの時刻はUTCとみなす"""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def stamp(self, now: datetime | None = None) -> Command:
        """未指定の発生時刻・相関IDを補完したコピーを返す"""
        update: dict[str, Any] = {}
        if self.occurred_at is None:
            update["occurred_at"] = now or datetime.now(UTC)
        if self.correlation_id is None:
            update["correlation_id"] = generate_event_id()
        return self.model_copy(update=update) if update else self


# ─── Sheet ──────────────────────────────────────────


class RegisterSheet(Command):
    """シート受け入れ（PENDINGで作成）"""

    command: Literal["register"] = "register"
    job_id: str | None = None


class EnterSheetStation(Command):
    """シートをステーションへ投入"""

    command: Literal["enter_station"] = "enter_station"
    station: str


class CutSheet(Command):
    """シートをN枚のカードへカット（ファンアウト）"""

    command: Literal["cut"] = "cut"
    fan_out: int


# ─── Card ───────────────────────────────────────────


class StartCard(Command):
    """カードをステーションへ投入"""

    command: Literal["start"] = "start"
    station: str


class RecordQA(Command):
    """QA結果を記録"""

    command: Literal["record_qa"] = "record_qa"
    passed: bool
    defect: str | None = None


class ReworkCard(Command):
    """QA不合格カードを手直しへ戻す"""

    command: Literal["rework"] = "rework"
    override_by: str | None = Field(default=None, description="承認したマネージャー")


class VoidCard(Command):
    """QA不合格カードを廃棄（理由必須）"""

    command: Literal["void"] = "void"
    reason: str


class CreateReplacement(Command):
    """VOIDEDカードの代替カードを作成（対象は元カード）"""

    command: Literal["create_replacement"] = "create_replacement"


class MarkAssembled(Command):
    """完成セットへの組み込みを記録"""

    command: Literal["mark_assembled"] = "mark_assembled"
    assembly_id: AggregateId


class PackCard(Command):
    """梱包"""

    command: Literal["pack"] = "pack"


# ─── Assembly ───────────────────────────────────────


class GatherCard(Command):
    """カードをセットへ収集"""

    command: Literal["gather"] = "gather"
    card_id: AggregateId


class SubstituteCard(Command):
    """セットの期待カード（VOIDED）を代替カードへ差し替え"""

    command: Literal["substitute"] = "substitute"
    original_id: AggregateId
    replacement_id: AggregateId


class FlagAssemblyError(Command):
    """マネージャー判断でセットを異常扱いにする"""

    command: Literal["flag_error"] = "flag_error"
    reason: str


class TimeoutAssembly(Command):
    """タイムアウト判定（occurred_at を判定時刻として使う）"""

    command: Literal["timeout"] = "timeout"


SheetCommand = Annotated[
    RegisterSheet | EnterSheetStation | CutSheet,
    Field(discriminator="command"),
]
CardCommand = Annotated[
    StartCard | RecordQA | ReworkCard | VoidCard | CreateReplacement | MarkAssembled | PackCard,
    Field(discriminator="command"),
]
AssemblyCommand = Annotated[
    GatherCard | SubstituteCard | FlagAssemblyError | TimeoutAssembly,
    Field(discriminator="command"),
]

_ADAPTERS: dict[AggregateType, TypeAdapter[Any]] = {
    AggregateType.SHEET: TypeAdapter(SheetCommand),
    AggregateType.CARD: TypeAdapter(CardCommand),
    AggregateType.ASSEMBLY: TypeAdapter(AssemblyCommand),
}


def parse_command(aggregate_type: AggregateType | str, payload: dict[str, Any] | Command) -> Command:
    """dict を集約種別に応じたコマンドモデルへ変換

    Raises:
        ValueError: 未知の集約種別
        pydantic.ValidationError: 未知のコマンド、または項目の不足・不正
    """
    kind = AggregateType(aggregate_type.value if isinstance(aggregate_type, Enum) else aggregate_type)
    if isinstance(payload, Command):
        payload = payload.model_dump()
    return _ADAPTERS[kind].validate_python(payload)
