"""CardForge イベントモデル

イミュータブルなイベントの定義とシリアライズ。
全てのイベントは EventLog に永続化される。
"""

from .assembly import (
    AssemblyCompletedEvent,
    AssemblyCreatedEvent,
    AssemblyErroredEvent,
    AssemblyEvent,
    CardSubstitutedEvent,
    ChildGatheredEvent,
)
from .base import (
    MAX_RAW_EVENT_BYTES,
    BaseEvent,
    UnknownEvent,
    compute_hash,
    generate_event_id,
)
from .card import (
    CardAssembledEvent,
    CardCreatedEvent,
    CardEvent,
    CardPackedEvent,
    CardQAFailedEvent,
    CardQAPassedEvent,
    CardReplacedEvent,
    CardReplacementCreatedEvent,
    CardReworkStartedEvent,
    CardStationEnteredEvent,
    CardVoidedEvent,
)
from .registry import EVENT_TYPE_MAP, parse_event
from .sheet import SheetCutEvent, SheetEvent, SheetRegisteredEvent, SheetStationEnteredEvent
from .types import AggregateType, AssemblyStatus, CardStatus, EventType, SheetStatus

__all__ = [
    # 列挙型
    "AggregateType",
    "EventType",
    "SheetStatus",
    "CardStatus",
    "AssemblyStatus",
    # 基底
    "MAX_RAW_EVENT_BYTES",
    "BaseEvent",
    "UnknownEvent",
    "compute_hash",
    "generate_event_id",
    "EVENT_TYPE_MAP",
    "parse_event",
    # Sheet
    "SheetEvent",
    "SheetRegisteredEvent",
    "SheetStationEnteredEvent",
    "SheetCutEvent",
    # Card
    "CardEvent",
    "CardCreatedEvent",
    "CardReplacementCreatedEvent",
    "CardStationEnteredEvent",
    "CardQAPassedEvent",
    "CardQAFailedEvent",
    "CardReworkStartedEvent",
    "CardVoidedEvent",
    "CardReplacedEvent",
    "CardAssembledEvent",
    "CardPackedEvent",
    # Assembly
    "AssemblyEvent",
    "AssemblyCreatedEvent",
    "ChildGatheredEvent",
    "AssemblyCompletedEvent",
    "CardSubstitutedEvent",
    "AssemblyErroredEvent",
]
