"""Sheet イベントクラス"""

from __future__ import annotations

from typing import Literal

from .base import BaseEvent
from .types import AggregateType, EventType


class SheetEvent(BaseEvent):
    """Sheet 集約イベントの基底"""

    aggregate_type: Literal[AggregateType.SHEET] = AggregateType.SHEET


class SheetRegisteredEvent(SheetEvent):
    """シート受け入れイベント"""

    type: Literal[EventType.SHEET_REGISTERED] = EventType.SHEET_REGISTERED


class SheetStationEnteredEvent(SheetEvent):
    """シートのステーション投入イベント"""

    type: Literal[EventType.SHEET_STATION_ENTERED] = EventType.SHEET_STATION_ENTERED


class SheetCutEvent(SheetEvent):
    """シートのカット（ファンアウト）イベント

    payload: fan_out, card_ids, assembly_id, job_id
    """

    type: Literal[EventType.SHEET_CUT] = EventType.SHEET_CUT
