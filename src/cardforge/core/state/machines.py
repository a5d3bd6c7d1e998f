"""状態機械 (State Machines)

Sheet, Card, Assembly の状態遷移を管理。

各集約は2つの純粋関数を持つ:
- evolve: (状態 | None, イベント) -> 状態。リプレイとコマンド処理の両方で使う
- transition: (状態 | None, コマンド, ポリシー) -> (新しい状態, イベント列)

どちらも引数を変更せず、I/Oを行わない。
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from ..commands import (
    Command,
    CreateReplacement,
    CutSheet,
    EnterSheetStation,
    FlagAssemblyError,
    GatherCard,
    MarkAssembled,
    PackCard,
    RecordQA,
    RegisterSheet,
    ReworkCard,
    StartCard,
    SubstituteCard,
    TimeoutAssembly,
    VoidCard,
)
from ..errors import (
    AlreadyExists,
    DuplicateGather,
    InvalidFanOut,
    InvalidTransition,
    MissingReason,
    NotEligible,
    NotReadyForFanOut,
    RequiresManagerOverride,
    UnknownAggregate,
    WrongParent,
)
from ..events import (
    AggregateType,
    AssemblyCompletedEvent,
    AssemblyCreatedEvent,
    AssemblyErroredEvent,
    AssemblyStatus,
    BaseEvent,
    CardAssembledEvent,
    CardCreatedEvent,
    CardPackedEvent,
    CardQAFailedEvent,
    CardQAPassedEvent,
    CardReplacedEvent,
    CardReplacementCreatedEvent,
    CardReworkStartedEvent,
    CardStationEnteredEvent,
    CardStatus,
    CardSubstitutedEvent,
    CardVoidedEvent,
    ChildGatheredEvent,
    EventType,
    SheetCutEvent,
    SheetRegisteredEvent,
    SheetStationEnteredEvent,
    SheetStatus,
    UnknownEvent,
)
from ..identity import assembly_id as make_assembly_id
from ..identity import child_ids, replacement_id
from .models import AggregateState, AssemblyState, CardState, Policy, SheetState

S = TypeVar("S", bound=AggregateState)


@dataclass(frozen=True)
class Transition:
    """状態遷移の定義（from_state が None なら生成）"""

    from_state: Enum | None
    to_state: Enum
    event_type: EventType


class TransitionTable:
    """(現在状態, イベント種別) -> 遷移先 の表"""

    def __init__(self, name: str, transitions: list[Transition]):
        self.name = name
        self._transitions = {(t.from_state, t.event_type): t for t in transitions}

    def can_transition(self, state: Enum | None, event_type: EventType) -> bool:
        """指定イベントで遷移可能か確認"""
        return (state, event_type) in self._transitions

    def get_valid_events(self, state: Enum | None) -> list[EventType]:
        """状態から遷移可能なイベント一覧"""
        return [event_type for (s, event_type) in self._transitions if s == state]

    def target(self, state: Enum | None, event_type: EventType | str) -> Enum:
        """遷移先を返す

        Raises:
            InvalidTransition: 不正な遷移の場合
        """
        transition = self._transitions.get((state, event_type))
        if not transition:
            label = state.value if isinstance(state, Enum) else "absent"
            valid = [e.value for e in self.get_valid_events(state)]
            raise InvalidTransition(
                f"{self.name} cannot apply {_value(event_type)} while {label}. "
                f"Valid events: {valid}"
            )
        return transition.to_state


def _value(value: Enum | str) -> str:
    return value.value if isinstance(value, Enum) else value


SHEET_TRANSITIONS = TransitionTable(
    "sheet",
    [
        Transition(None, SheetStatus.PENDING, EventType.SHEET_REGISTERED),
        Transition(SheetStatus.PENDING, SheetStatus.IN_PROCESS, EventType.SHEET_STATION_ENTERED),
        # ステーション間の移動
        Transition(SheetStatus.IN_PROCESS, SheetStatus.IN_PROCESS, EventType.SHEET_STATION_ENTERED),
        Transition(SheetStatus.IN_PROCESS, SheetStatus.CUT, EventType.SHEET_CUT),
    ],
)

CARD_TRANSITIONS = TransitionTable(
    "card",
    [
        Transition(None, CardStatus.CREATED, EventType.CARD_CREATED),
        Transition(None, CardStatus.CREATED, EventType.CARD_REPLACEMENT_CREATED),
        Transition(CardStatus.CREATED, CardStatus.IN_PROCESS, EventType.CARD_STATION_ENTERED),
        Transition(CardStatus.IN_PROCESS, CardStatus.IN_PROCESS, EventType.CARD_STATION_ENTERED),
        Transition(CardStatus.IN_PROCESS, CardStatus.QA_PASSED, EventType.CARD_QA_PASSED),
        Transition(CardStatus.IN_PROCESS, CardStatus.QA_FAILED, EventType.CARD_QA_FAILED),
        Transition(CardStatus.QA_FAILED, CardStatus.IN_PROCESS, EventType.CARD_REWORK_STARTED),
        Transition(CardStatus.QA_FAILED, CardStatus.VOIDED, EventType.CARD_VOIDED),
        Transition(CardStatus.VOIDED, CardStatus.VOIDED, EventType.CARD_REPLACED),
        Transition(CardStatus.QA_PASSED, CardStatus.ASSEMBLED, EventType.CARD_ASSEMBLED),
        Transition(CardStatus.ASSEMBLED, CardStatus.PACKED, EventType.CARD_PACKED),
    ],
)

ASSEMBLY_TRANSITIONS = TransitionTable(
    "assembly",
    [
        Transition(None, AssemblyStatus.PENDING, EventType.ASSEMBLY_CREATED),
        Transition(
            AssemblyStatus.PENDING, AssemblyStatus.IN_PROGRESS, EventType.ASSEMBLY_CHILD_GATHERED
        ),
        Transition(
            AssemblyStatus.IN_PROGRESS,
            AssemblyStatus.IN_PROGRESS,
            EventType.ASSEMBLY_CHILD_GATHERED,
        ),
        Transition(
            AssemblyStatus.IN_PROGRESS, AssemblyStatus.COMPLETE, EventType.ASSEMBLY_COMPLETED
        ),
        Transition(
            AssemblyStatus.PENDING, AssemblyStatus.PENDING, EventType.ASSEMBLY_CARD_SUBSTITUTED
        ),
        Transition(
            AssemblyStatus.IN_PROGRESS,
            AssemblyStatus.IN_PROGRESS,
            EventType.ASSEMBLY_CARD_SUBSTITUTED,
        ),
        Transition(AssemblyStatus.PENDING, AssemblyStatus.ERROR, EventType.ASSEMBLY_ERRORED),
        Transition(AssemblyStatus.IN_PROGRESS, AssemblyStatus.ERROR, EventType.ASSEMBLY_ERRORED),
    ],
)


# =============================================================================
# evolve: イベント適用
# =============================================================================


def _bump(state: S, event: BaseEvent, **update: Any) -> S:
    update["version"] = event.version if event.version is not None else state.version + 1
    return state.model_copy(update=update)


def evolve_sheet(state: SheetState | None, event: BaseEvent) -> SheetState:
    """シートにイベントを適用"""
    status = SHEET_TRANSITIONS.target(state.status if state else None, event.type)
    payload = event.payload

    if state is None:
        return SheetState(
            sheet_id=event.aggregate_id,
            status=status,
            job_id=payload.get("job_id"),
            station=event.station,
            registered_at=event.occurred_at,
            version=event.version or 1,
        )
    if event.type == EventType.SHEET_CUT:
        return _bump(
            state,
            event,
            status=status,
            fan_out=payload["fan_out"],
            card_ids=tuple(payload["card_ids"]),
            assembly_id=payload["assembly_id"],
            cut_at=event.occurred_at,
        )
    return _bump(state, event, status=status, station=event.station)


def evolve_card(state: CardState | None, event: BaseEvent) -> CardState:
    """カードにイベントを適用"""
    status = CARD_TRANSITIONS.target(state.status if state else None, event.type)
    payload = event.payload

    if state is None:
        return CardState(
            card_id=event.aggregate_id,
            sheet_id=payload["sheet_id"],
            position=payload["position"],
            status=status,
            job_id=payload.get("job_id"),
            replaces=payload.get("replaces"),
            version=event.version or 1,
        )

    match event.type:
        case EventType.CARD_STATION_ENTERED:
            return _bump(state, event, status=status, station=event.station)
        case EventType.CARD_QA_PASSED:
            return _bump(state, event, status=status, defect=None)
        case EventType.CARD_QA_FAILED:
            return _bump(
                state,
                event,
                status=status,
                qa_failures=state.qa_failures + 1,
                defect=payload.get("defect"),
            )
        case EventType.CARD_REWORK_STARTED:
            return _bump(state, event, status=status, rework_count=state.rework_count + 1)
        case EventType.CARD_VOIDED:
            return _bump(state, event, status=status, void_reason=payload["reason"])
        case EventType.CARD_REPLACED:
            return _bump(
                state,
                event,
                replaced_by=payload["replacement_id"],
                replacement_count=state.replacement_count + 1,
            )
        case EventType.CARD_ASSEMBLED:
            return _bump(state, event, status=status, assembly_id=payload["assembly_id"])
        case _:
            return _bump(state, event, status=status)


def evolve_assembly(state: AssemblyState | None, event: BaseEvent) -> AssemblyState:
    """セットにイベントを適用"""
    status = ASSEMBLY_TRANSITIONS.target(state.status if state else None, event.type)
    payload = event.payload

    if state is None:
        return AssemblyState(
            assembly_id=event.aggregate_id,
            sheet_id=payload["sheet_id"],
            job_id=payload.get("job_id"),
            expected_count=payload["expected_count"],
            expected=tuple(payload["expected"]),
            status=status,
            version=event.version or 1,
        )

    match event.type:
        case EventType.ASSEMBLY_CHILD_GATHERED:
            return _bump(
                state,
                event,
                status=status,
                gathered=state.gathered | {payload["position"]},
                first_gathered_at=state.first_gathered_at or event.occurred_at,
            )
        case EventType.ASSEMBLY_COMPLETED:
            return _bump(state, event, status=status, completed_at=event.occurred_at)
        case EventType.ASSEMBLY_CARD_SUBSTITUTED:
            expected = list(state.expected)
            expected[payload["position"] - 1] = payload["replacement_id"]
            return _bump(state, event, expected=tuple(expected))
        case EventType.ASSEMBLY_ERRORED:
            return _bump(state, event, status=status, error_reason=payload["reason"])
        case _:
            return _bump(state, event, status=status)


EVOLVERS: dict[AggregateType, Callable[[Any, BaseEvent], Any]] = {
    AggregateType.SHEET: evolve_sheet,
    AggregateType.CARD: evolve_card,
    AggregateType.ASSEMBLY: evolve_assembly,
}


def fold(
    aggregate_type: AggregateType,
    events: Iterable[BaseEvent],
    state: AggregateState | None = None,
) -> AggregateState | None:
    """イベント列を順に適用して状態を再構築"""
    evolve = EVOLVERS[aggregate_type]
    for event in events:
        # 新しいバージョンが書いた未知のイベントは状態に影響しない
        if isinstance(event, UnknownEvent):
            continue
        state = evolve(state, event)
    return state


def _own_state(
    aggregate_type: AggregateType,
    aggregate_id: str,
    state: AggregateState | None,
    events: Sequence[BaseEvent],
) -> AggregateState | None:
    own = [e for e in events if e.stream == (aggregate_type.value, aggregate_id)]
    return fold(aggregate_type, own, state)


def _envelope(command: Command) -> dict[str, Any]:
    """コマンドから全イベント共通の項目を取り出す"""
    if command.occurred_at is None or command.correlation_id is None:
        raise ValueError("command must be stamped with occurred_at and correlation_id")
    return {
        "occurred_at": command.occurred_at,
        "correlation_id": command.correlation_id,
        "actor": command.actor,
        "station": command.station,
    }


def _require(state: S | None, aggregate_type: AggregateType, aggregate_id: str) -> S:
    if state is None:
        raise UnknownAggregate(f"{aggregate_type.value} {aggregate_id} does not exist")
    return state


# =============================================================================
# Sheet
# =============================================================================


def _decide_sheet(
    state: SheetState | None, sheet_id: str, command: Command, policy: Policy
) -> list[BaseEvent]:
    envelope = _envelope(command)

    if isinstance(command, RegisterSheet):
        if state is not None:
            raise AlreadyExists(f"sheet {sheet_id} is already registered")
        return [
            SheetRegisteredEvent(
                aggregate_id=sheet_id, payload={"job_id": command.job_id}, **envelope
            )
        ]

    state = _require(state, AggregateType.SHEET, sheet_id)

    if isinstance(command, CutSheet):
        if state.status != SheetStatus.IN_PROCESS:
            raise NotReadyForFanOut(
                f"sheet {sheet_id} is {state.status.value}, only IN_PROCESS sheets can be cut"
            )
        if not policy.min_fan_out <= command.fan_out <= policy.max_fan_out:
            raise InvalidFanOut(
                f"fan-out {command.fan_out} outside "
                f"[{policy.min_fan_out}, {policy.max_fan_out}]"
            )
        return _fan_out(state, command.fan_out, policy, envelope)

    if state.archived:
        raise InvalidTransition(f"sheet {sheet_id} is CUT and archived")

    if isinstance(command, EnterSheetStation):
        return [
            SheetStationEnteredEvent(
                aggregate_id=sheet_id,
                payload={"job_id": state.job_id, "from_station": state.station},
                **envelope,
            )
        ]

    raise InvalidTransition(f"sheet does not accept {command.command}")


def _fan_out(
    state: SheetState, fan_out: int, policy: Policy, envelope: dict[str, Any]
) -> list[BaseEvent]:
    """カット: シートの CUT + N枚のカード生成 + セット生成"""
    card_ids = child_ids(state.sheet_id, fan_out, policy.max_fan_out)
    set_id = make_assembly_id(state.sheet_id)
    events: list[BaseEvent] = [
        SheetCutEvent(
            aggregate_id=state.sheet_id,
            payload={
                "fan_out": fan_out,
                "card_ids": list(card_ids),
                "assembly_id": set_id,
                "job_id": state.job_id,
                "from_station": state.station,
            },
            **envelope,
        )
    ]
    events.extend(
        CardCreatedEvent(
            aggregate_id=card_id,
            payload={
                "sheet_id": state.sheet_id,
                "position": position,
                "fan_out": fan_out,
                "job_id": state.job_id,
            },
            **envelope,
        )
        for position, card_id in enumerate(card_ids, start=1)
    )
    events.append(
        AssemblyCreatedEvent(
            aggregate_id=set_id,
            payload={
                "sheet_id": state.sheet_id,
                "expected_count": fan_out,
                "expected": list(card_ids),
                "job_id": state.job_id,
            },
            **envelope,
        )
    )
    return events


def transition_sheet(
    state: SheetState | None, sheet_id: str, command: Command, policy: Policy
) -> tuple[SheetState, list[BaseEvent]]:
    """シートのコマンド処理

    Returns:
        (新しいシート状態, イベント列)。カット時はカード・セットのイベントも含む
    """
    events = _decide_sheet(state, sheet_id, command, policy)
    return _own_state(AggregateType.SHEET, sheet_id, state, events), events  # type: ignore[return-value]


# =============================================================================
# Card
# =============================================================================


def _payload(state: CardState, **extra: Any) -> dict[str, Any]:
    # 集計用に全カードイベントへ job_id を載せる
    return {"job_id": state.job_id, **extra}


def _decide_card(
    state: CardState | None, card_id: str, command: Command, policy: Policy
) -> list[BaseEvent]:
    envelope = _envelope(command)
    state = _require(state, AggregateType.CARD, card_id)

    if isinstance(command, StartCard):
        CARD_TRANSITIONS.target(state.status, EventType.CARD_STATION_ENTERED)
        payload = _payload(state, from_station=state.station)
        return [CardStationEnteredEvent(aggregate_id=card_id, payload=payload, **envelope)]

    if isinstance(command, RecordQA):
        if command.passed:
            CARD_TRANSITIONS.target(state.status, EventType.CARD_QA_PASSED)
            return [CardQAPassedEvent(aggregate_id=card_id, payload=_payload(state), **envelope)]
        CARD_TRANSITIONS.target(state.status, EventType.CARD_QA_FAILED)
        payload = _payload(state, defect=command.defect)
        return [CardQAFailedEvent(aggregate_id=card_id, payload=payload, **envelope)]

    if isinstance(command, ReworkCard):
        CARD_TRANSITIONS.target(state.status, EventType.CARD_REWORK_STARTED)
        if command.override_by is None and not (
            policy.allow_rework and state.rework_count < policy.max_rework
        ):
            raise RequiresManagerOverride(
                f"card {card_id} failed QA {state.qa_failures} time(s); "
                "rework needs a manager override"
            )
        payload = _payload(state, override_by=command.override_by)
        return [CardReworkStartedEvent(aggregate_id=card_id, payload=payload, **envelope)]

    if isinstance(command, VoidCard):
        if not command.reason.strip():
            raise MissingReason(f"voiding card {card_id} requires a reason")
        CARD_TRANSITIONS.target(state.status, EventType.CARD_VOIDED)
        payload = _payload(state, reason=command.reason, from_station=state.station)
        return [CardVoidedEvent(aggregate_id=card_id, payload=payload, **envelope)]

    if isinstance(command, CreateReplacement):
        if state.status != CardStatus.VOIDED:
            raise NotEligible(
                f"card {card_id} is {state.status.value}, only VOIDED cards are replaced"
            )
        if state.replaced_by is not None:
            raise AlreadyExists(f"card {card_id} was already replaced by {state.replaced_by}")
        new_id = replacement_id(card_id, state.replacement_count + 1)
        return [
            CardReplacedEvent(
                aggregate_id=card_id, payload=_payload(state, replacement_id=new_id), **envelope
            ),
            CardReplacementCreatedEvent(
                aggregate_id=new_id,
                payload={
                    "sheet_id": state.sheet_id,
                    "position": state.position,
                    "replaces": card_id,
                    "job_id": state.job_id,
                },
                **envelope,
            ),
        ]

    if isinstance(command, MarkAssembled):
        CARD_TRANSITIONS.target(state.status, EventType.CARD_ASSEMBLED)
        payload = _payload(state, assembly_id=command.assembly_id, from_station=state.station)
        return [CardAssembledEvent(aggregate_id=card_id, payload=payload, **envelope)]

    if isinstance(command, PackCard):
        CARD_TRANSITIONS.target(state.status, EventType.CARD_PACKED)
        return [CardPackedEvent(aggregate_id=card_id, payload=_payload(state), **envelope)]

    raise InvalidTransition(f"card does not accept {command.command}")


def transition_card(
    state: CardState | None, card_id: str, command: Command, policy: Policy
) -> tuple[CardState, list[BaseEvent]]:
    """カードのコマンド処理

    Returns:
        (新しいカード状態, イベント列)。代替作成時は新カードのイベントも含む
    """
    events = _decide_card(state, card_id, command, policy)
    return _own_state(AggregateType.CARD, card_id, state, events), events  # type: ignore[return-value]


# =============================================================================
# Assembly
# =============================================================================


def _check_open(state: AssemblyState) -> None:
    if state.status in (AssemblyStatus.COMPLETE, AssemblyStatus.ERROR):
        raise InvalidTransition(f"assembly {state.assembly_id} is {state.status.value}")


def decide_gather(
    state: AssemblyState, card: CardState, envelope: dict[str, Any]
) -> list[BaseEvent]:
    """カード収集の判定

    判定順: WrongParent -> DuplicateGather -> NotEligible。
    最後の1枚なら assembly.completed も同じバッチで返す。
    """
    if card.sheet_id != state.sheet_id:
        raise WrongParent(f"card {card.card_id} does not belong to set {state.assembly_id}")
    if card.position in state.gathered:
        raise DuplicateGather(
            f"position {card.position} of set {state.assembly_id} is already gathered"
        )
    if card.status != CardStatus.QA_PASSED:
        raise NotEligible(f"card {card.card_id} is {card.status.value}, not QA_PASSED")
    if state.expected_card(card.position) != card.card_id:
        raise NotEligible(
            f"card {card.card_id} is not the expected card for position {card.position} "
            f"(expected {state.expected_card(card.position)}); substitute it first"
        )
    _check_open(state)

    gathered = state.gathered | {card.position}
    events: list[BaseEvent] = [
        ChildGatheredEvent(
            aggregate_id=state.assembly_id,
            payload={
                "card_id": card.card_id,
                "position": card.position,
                "gathered_count": len(gathered),
                "job_id": state.job_id,
            },
            **envelope,
        )
    ]
    if gathered == state.expected_positions:
        events.append(
            AssemblyCompletedEvent(
                aggregate_id=state.assembly_id,
                payload={"card_ids": list(state.expected), "job_id": state.job_id},
                **envelope,
            )
        )
    return events


def decide_substitute(
    state: AssemblyState,
    original_id: str,
    replacement: CardState,
    envelope: dict[str, Any],
) -> list[BaseEvent]:
    """期待カードを代替カードへ差し替える判定"""
    if replacement.sheet_id != state.sheet_id:
        raise WrongParent(
            f"card {replacement.card_id} does not belong to set {state.assembly_id}"
        )
    if replacement.position in state.gathered:
        raise DuplicateGather(
            f"position {replacement.position} of set {state.assembly_id} is already gathered"
        )
    expected = state.expected_card(replacement.position)
    if original_id != expected:
        raise NotEligible(
            f"card {original_id} is not expected at position {replacement.position} "
            f"(expected {expected})"
        )
    if replacement.replaces != original_id:
        raise NotEligible(f"card {replacement.card_id} is not a replacement for {original_id}")
    _check_open(state)
    return [
        CardSubstitutedEvent(
            aggregate_id=state.assembly_id,
            payload={
                "position": replacement.position,
                "original_id": original_id,
                "replacement_id": replacement.card_id,
                "job_id": state.job_id,
            },
            **envelope,
        )
    ]


def decide_timeout(
    state: AssemblyState, now: datetime, policy: Policy, envelope: dict[str, Any]
) -> list[BaseEvent]:
    """タイムアウト判定（該当しなければ空リスト）

    カードの廃棄や代替は行わず、欠けているポジションを記録するだけ。
    """
    if state.status != AssemblyStatus.IN_PROGRESS or state.first_gathered_at is None:
        return []
    if now - state.first_gathered_at < policy.assembly_timeout:
        return []
    return [
        AssemblyErroredEvent(
            aggregate_id=state.assembly_id,
            payload={
                "reason": "timeout",
                "missing_positions": state.missing_positions,
                "job_id": state.job_id,
            },
            **envelope,
        )
    ]


def transition_assembly(
    state: AssemblyState | None,
    assembly_id: str,
    command: Command,
    policy: Policy,
    card: CardState | None = None,
) -> tuple[AssemblyState, list[BaseEvent]]:
    """セットのコマンド処理

    Args:
        card: gather / substitute 対象のカード状態（呼び出し側で読み込む）

    Returns:
        (新しいセット状態, イベント列)。タイムアウト未到達ならイベントは空
    """
    envelope = _envelope(command)
    state = _require(state, AggregateType.ASSEMBLY, assembly_id)

    if isinstance(command, GatherCard | SubstituteCard):
        target = command.card_id if isinstance(command, GatherCard) else command.replacement_id
        if card is None or card.card_id != target:
            raise UnknownAggregate(f"card {target} does not exist")
        if isinstance(command, GatherCard):
            events = decide_gather(state, card, envelope)
        else:
            events = decide_substitute(state, command.original_id, card, envelope)
    elif isinstance(command, FlagAssemblyError):
        if not command.reason.strip():
            raise MissingReason(f"flagging set {assembly_id} requires a reason")
        _check_open(state)
        events = [
            AssemblyErroredEvent(
                aggregate_id=assembly_id,
                payload={
                    "reason": command.reason,
                    "missing_positions": state.missing_positions,
                    "job_id": state.job_id,
                },
                **envelope,
            )
        ]
    elif isinstance(command, TimeoutAssembly):
        events = decide_timeout(state, envelope["occurred_at"], policy, envelope)
    else:
        raise InvalidTransition(f"assembly does not accept {command.command}")

    return fold(AggregateType.ASSEMBLY, events, state), events  # type: ignore[return-value]


STATE_MODELS: dict[AggregateType, type[AggregateState]] = {
    AggregateType.SHEET: SheetState,
    AggregateType.CARD: CardState,
    AggregateType.ASSEMBLY: AssemblyState,
}


def rehydrate(
    aggregate_type: AggregateType,
    events: Iterable[BaseEvent],
    snapshot: dict[str, Any] | None = None,
) -> AggregateState | None:
    """スナップショット（任意）とそれ以降のイベントから状態を復元"""
    state = STATE_MODELS[aggregate_type].model_validate(snapshot) if snapshot else None
    return fold(aggregate_type, events, state)
