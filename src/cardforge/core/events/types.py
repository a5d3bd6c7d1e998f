"""イベントタイプと関連列挙型

EventType / AggregateType と各集約の状態列挙型を定義。
"""

from __future__ import annotations

from enum import Enum


class AggregateType(str, Enum):
    """集約種別"""

    SHEET = "sheet"
    CARD = "card"
    ASSEMBLY = "assembly"


class EventType(str, Enum):
    """イベント種別"""

    # Sheet イベント
    SHEET_REGISTERED = "sheet.registered"
    SHEET_STATION_ENTERED = "sheet.station_entered"
    SHEET_CUT = "sheet.cut"

    # Card イベント
    CARD_CREATED = "card.created"
    CARD_REPLACEMENT_CREATED = "card.replacement_created"
    CARD_STATION_ENTERED = "card.station_entered"
    CARD_QA_PASSED = "card.qa_passed"
    CARD_QA_FAILED = "card.qa_failed"
    CARD_REWORK_STARTED = "card.rework_started"
    CARD_VOIDED = "card.voided"
    CARD_REPLACED = "card.replaced"
    CARD_ASSEMBLED = "card.assembled"
    CARD_PACKED = "card.packed"

    # Assembly イベント
    ASSEMBLY_CREATED = "assembly.created"
    ASSEMBLY_CHILD_GATHERED = "assembly.child_gathered"
    ASSEMBLY_COMPLETED = "assembly.completed"
    ASSEMBLY_CARD_SUBSTITUTED = "assembly.card_substituted"
    ASSEMBLY_ERRORED = "assembly.errored"


class SheetStatus(str, Enum):
    """シート状態"""

    PENDING = "PENDING"
    IN_PROCESS = "IN_PROCESS"
    CUT = "CUT"


class CardStatus(str, Enum):
    """カード状態"""

    CREATED = "CREATED"
    IN_PROCESS = "IN_PROCESS"
    QA_PASSED = "QA_PASSED"
    QA_FAILED = "QA_FAILED"
    VOIDED = "VOIDED"
    ASSEMBLED = "ASSEMBLED"
    PACKED = "PACKED"


class AssemblyStatus(str, Enum):
    """セット状態"""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
