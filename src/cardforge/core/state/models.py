"""集約の状態モデル

Sheet / Card / Assembly の現在状態。全てイミュータブルで、
状態機械は新しいインスタンスを返す。
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from ..config import CardForgeSettings
from ..events import AssemblyStatus, CardStatus, SheetStatus


class AggregateState(BaseModel):
    """集約状態の基底"""

    model_config = {"frozen": True}

    version: int = Field(default=0, ge=0, description="適用済みの最終バージョン")


class SheetState(AggregateState):
    """シート（親ユニット）の状態"""

    sheet_id: str
    status: SheetStatus = SheetStatus.PENDING
    job_id: str | None = None
    station: str | None = None
    fan_out: int | None = None
    card_ids: tuple[str, ...] = ()
    assembly_id: str | None = None
    registered_at: datetime | None = None
    cut_at: datetime | None = None

    @property
    def archived(self) -> bool:
        """カット済みのシートは変更されない"""
        return self.status == SheetStatus.CUT


class CardState(AggregateState):
    """カード（子ユニット）の状態

    sheet_id はシートへの参照（IDのみ、所有しない）。
    """

    card_id: str
    sheet_id: str
    position: int = Field(..., ge=1)
    status: CardStatus = CardStatus.CREATED
    job_id: str | None = None
    station: str | None = None
    qa_failures: int = 0
    rework_count: int = 0
    defect: str | None = None
    void_reason: str | None = None
    replaces: str | None = None
    replaced_by: str | None = None
    replacement_count: int = 0
    assembly_id: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (CardStatus.PACKED, CardStatus.VOIDED)


class AssemblyState(AggregateState):
    """セット（ファンイン集約）の状態

    不変条件:
        - gathered ⊆ expected_positions
        - status == COMPLETE ⇔ gathered == expected_positions
    """

    assembly_id: str
    sheet_id: str
    job_id: str | None = None
    expected_count: int = Field(..., ge=1)
    expected: tuple[str, ...] = Field(..., description="ポジション順の期待カードID")
    gathered: frozenset[int] = frozenset()
    status: AssemblyStatus = AssemblyStatus.PENDING
    first_gathered_at: datetime | None = None
    completed_at: datetime | None = None
    error_reason: str | None = None

    @property
    def expected_positions(self) -> frozenset[int]:
        return frozenset(range(1, self.expected_count + 1))

    @property
    def missing_positions(self) -> list[int]:
        return sorted(self.expected_positions - self.gathered)

    def expected_card(self, position: int) -> str:
        return self.expected[position - 1]


@dataclass(frozen=True)
class Policy:
    """状態機械に渡す業務ポリシー（設定から生成）"""

    min_fan_out: int = 1
    max_fan_out: int = 99
    allow_rework: bool = False
    max_rework: int = 1
    assembly_timeout: timedelta = timedelta(minutes=240)

    @classmethod
    def from_settings(cls, settings: CardForgeSettings) -> Policy:
        return cls(
            min_fan_out=settings.fan_out.min_cards,
            max_fan_out=settings.fan_out.max_cards,
            allow_rework=settings.qa.allow_rework,
            max_rework=settings.qa.max_rework,
            assembly_timeout=timedelta(minutes=settings.assembly.timeout_minutes),
        )
