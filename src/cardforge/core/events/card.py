"""Card イベントクラス"""

from __future__ import annotations

from typing import Literal

from .base import BaseEvent
from .types import AggregateType, EventType


class CardEvent(BaseEvent):
    """Card 集約イベントの基底"""

    aggregate_type: Literal[AggregateType.CARD] = AggregateType.CARD


class CardCreatedEvent(CardEvent):
    """カット由来のカード生成イベント

    payload: sheet_id, position, fan_out, job_id
    """

    type: Literal[EventType.CARD_CREATED] = EventType.CARD_CREATED


class CardReplacementCreatedEvent(CardEvent):
    """VOIDEDカードの代替カード生成イベント

    payload: sheet_id, position, replaces, job_id
    """

    type: Literal[EventType.CARD_REPLACEMENT_CREATED] = EventType.CARD_REPLACEMENT_CREATED


class CardStationEnteredEvent(CardEvent):
    """カードのステーション投入イベント"""

    type: Literal[EventType.CARD_STATION_ENTERED] = EventType.CARD_STATION_ENTERED


class CardQAPassedEvent(CardEvent):
    """QA合格イベント"""

    type: Literal[EventType.CARD_QA_PASSED] = EventType.CARD_QA_PASSED


class CardQAFailedEvent(CardEvent):
    """QA不合格イベント

    payload: defect
    """

    type: Literal[EventType.CARD_QA_FAILED] = EventType.CARD_QA_FAILED


class CardReworkStartedEvent(CardEvent):
    """手直し開始イベント

    payload: override_by（マネージャー承認時のみ）
    """

    type: Literal[EventType.CARD_REWORK_STARTED] = EventType.CARD_REWORK_STARTED


class CardVoidedEvent(CardEvent):
    """カード廃棄イベント

    payload: reason
    """

    type: Literal[EventType.CARD_VOIDED] = EventType.CARD_VOIDED


class CardReplacedEvent(CardEvent):
    """VOIDEDカードに代替カードが割り当てられたイベント

    payload: replacement_id
    """

    type: Literal[EventType.CARD_REPLACED] = EventType.CARD_REPLACED


class CardAssembledEvent(CardEvent):
    """セット組み込みイベント

    payload: assembly_id
    """

    type: Literal[EventType.CARD_ASSEMBLED] = EventType.CARD_ASSEMBLED


class CardPackedEvent(CardEvent):
    """梱包イベント"""

    type: Literal[EventType.CARD_PACKED] = EventType.CARD_PACKED
