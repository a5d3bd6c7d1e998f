"""イベントレジストリとパーサー

EVENT_TYPE_MAP と parse_event() の定義。
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from .assembly import (
    AssemblyCompletedEvent,
    AssemblyCreatedEvent,
    AssemblyErroredEvent,
    CardSubstitutedEvent,
    ChildGatheredEvent,
)
from .base import BaseEvent, UnknownEvent
from .card import (
    CardAssembledEvent,
    CardCreatedEvent,
    CardPackedEvent,
    CardQAFailedEvent,
    CardQAPassedEvent,
    CardReplacedEvent,
    CardReplacementCreatedEvent,
    CardReworkStartedEvent,
    CardStationEnteredEvent,
    CardVoidedEvent,
)
from .sheet import SheetCutEvent, SheetRegisteredEvent, SheetStationEnteredEvent
from .types import AggregateType, EventType

# イベントタイプからクラスへのマッピング（閉じた集合）
EVENT_TYPE_MAP: dict[EventType, type[BaseEvent]] = {
    # Sheet
    EventType.SHEET_REGISTERED: SheetRegisteredEvent,
    EventType.SHEET_STATION_ENTERED: SheetStationEnteredEvent,
    EventType.SHEET_CUT: SheetCutEvent,
    # Card
    EventType.CARD_CREATED: CardCreatedEvent,
    EventType.CARD_REPLACEMENT_CREATED: CardReplacementCreatedEvent,
    EventType.CARD_STATION_ENTERED: CardStationEnteredEvent,
    EventType.CARD_QA_PASSED: CardQAPassedEvent,
    EventType.CARD_QA_FAILED: CardQAFailedEvent,
    EventType.CARD_REWORK_STARTED: CardReworkStartedEvent,
    EventType.CARD_VOIDED: CardVoidedEvent,
    EventType.CARD_REPLACED: CardReplacedEvent,
    EventType.CARD_ASSEMBLED: CardAssembledEvent,
    EventType.CARD_PACKED: CardPackedEvent,
    # Assembly
    EventType.ASSEMBLY_CREATED: AssemblyCreatedEvent,
    EventType.ASSEMBLY_CHILD_GATHERED: ChildGatheredEvent,
    EventType.ASSEMBLY_COMPLETED: AssemblyCompletedEvent,
    EventType.ASSEMBLY_CARD_SUBSTITUTED: CardSubstitutedEvent,
    EventType.ASSEMBLY_ERRORED: AssemblyErroredEvent,
}

_DATETIME_FIELDS = ("occurred_at", "recorded_at")


def parse_event(data: dict[str, Any] | str) -> BaseEvent:
    """イベントデータをパースして適切なイベントクラスに変換

    未知のイベントタイプはUnknownEventとして返す（前方互換性）。

    Raises:
        ValueError: JSONオブジェクトでない場合
    """
    if isinstance(data, str):
        data = json.loads(data)

    if not isinstance(data, dict):
        raise ValueError(f"event must be a JSON object, got {type(data).__name__}")

    raw = dict(data)
    data = dict(data)
    data.pop("hash", None)

    # strict=Trueモードではstr→Enum/datetime自動変換されないため、事前に型変換を行う
    for name in _DATETIME_FIELDS:
        if isinstance(data.get(name), str):
            data[name] = datetime.fromisoformat(data[name])

    try:
        event_type = EventType(data["type"])
    except (KeyError, ValueError):
        return UnknownEvent(
            **{k: v for k, v in data.items() if k in UnknownEvent.model_fields},
            raw=raw,
        )

    data["type"] = event_type
    data["aggregate_type"] = AggregateType(data["aggregate_type"])
    return EVENT_TYPE_MAP[event_type].model_validate(data)
