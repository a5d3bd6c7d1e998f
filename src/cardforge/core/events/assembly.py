"""Assembly イベントクラス"""

from __future__ import annotations

from typing import Literal

from .base import BaseEvent
from .types import AggregateType, EventType


class AssemblyEvent(BaseEvent):
    """Assembly 集約イベントの基底"""

    aggregate_type: Literal[AggregateType.ASSEMBLY] = AggregateType.ASSEMBLY


class AssemblyCreatedEvent(AssemblyEvent):
    """セット生成イベント（カットと同一バッチ）

    payload: sheet_id, expected_count, expected（ポジション順のカードID）, job_id
    """

    type: Literal[EventType.ASSEMBLY_CREATED] = EventType.ASSEMBLY_CREATED


class ChildGatheredEvent(AssemblyEvent):
    """カード収集イベント

    payload: card_id, position, gathered_count
    """

    type: Literal[EventType.ASSEMBLY_CHILD_GATHERED] = EventType.ASSEMBLY_CHILD_GATHERED


class AssemblyCompletedEvent(AssemblyEvent):
    """セット完成イベント

    payload: card_ids
    """

    type: Literal[EventType.ASSEMBLY_COMPLETED] = EventType.ASSEMBLY_COMPLETED


class CardSubstitutedEvent(AssemblyEvent):
    """代替カードへの差し替えイベント

    payload: position, original_id, replacement_id
    """

    type: Literal[EventType.ASSEMBLY_CARD_SUBSTITUTED] = EventType.ASSEMBLY_CARD_SUBSTITUTED


class AssemblyErroredEvent(AssemblyEvent):
    """セット異常イベント（タイムアウトまたはマネージャー判断）

    payload: reason, missing_positions
    """

    type: Literal[EventType.ASSEMBLY_ERRORED] = EventType.ASSEMBLY_ERRORED
