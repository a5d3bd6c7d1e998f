"""Assembly Process Manager

セット（ファンイン集約）への唯一の書き込み手。
カードの収集・差し替え・異常フラグ・タイムアウト判定を行い、
セット完成時には収集した全カードへ MarkAssembled を発行する。
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from ..commands import (
    Command,
    FlagAssemblyError,
    GatherCard,
    MarkAssembled,
    SubstituteCard,
    TimeoutAssembly,
)
from ..errors import UnknownAggregate, VersionConflict
from ..events import AggregateType, AssemblyStatus, BaseEvent
from .machines import transition_assembly, transition_card
from .models import AssemblyState, CardState, Policy

if TYPE_CHECKING:
    from ..ar.repository import AggregateRepository

logger = logging.getLogger(__name__)


class AssemblyProcessManager:
    """セット収集のプロセスマネージャー

    各操作は1回の試行で、VersionConflict はそのまま呼び出し側へ送出する
    （再読み込みとリトライはサービス層が行う）。
    """

    def __init__(self, repository: AggregateRepository, policy: Policy | None = None):
        self.repository = repository
        self.policy = policy or Policy()

    def _load_assembly(self, assembly_id: str) -> AssemblyState:
        state = self.repository.load(AggregateType.ASSEMBLY, assembly_id)
        if state is None:
            raise UnknownAggregate(f"assembly {assembly_id} does not exist")
        return state  # type: ignore[return-value]

    def _load_card(self, card_id: str) -> CardState:
        state = self.repository.load(AggregateType.CARD, card_id)
        if state is None:
            raise UnknownAggregate(f"card {card_id} does not exist")
        return state  # type: ignore[return-value]

    def handle(
        self, assembly_id: str, command: Command
    ) -> tuple[AssemblyState, list[BaseEvent]]:
        """セット宛てコマンドを処理してコミット

        Returns:
            (新しいセット状態, 確定したイベント)。何も起きなければイベントは空
        """
        command = command.stamp()
        state = self._load_assembly(assembly_id)

        card = None
        if isinstance(command, GatherCard):
            card = self._load_card(command.card_id)
        elif isinstance(command, SubstituteCard):
            card = self._load_card(command.replacement_id)

        new_state, events = transition_assembly(state, assembly_id, command, self.policy, card)
        if not events:
            return new_state, []

        expected = {(AggregateType.ASSEMBLY.value, assembly_id): state.version}
        if new_state.status == AssemblyStatus.COMPLETE:
            # 完成と同じ作業単位で全カードを ASSEMBLED にする
            for card_id in new_state.expected:
                member = self._load_card(card_id)
                _, card_events = transition_card(
                    member,
                    card_id,
                    MarkAssembled(
                        assembly_id=assembly_id,
                        actor=command.actor,
                        station=command.station,
                        occurred_at=command.occurred_at,
                        correlation_id=command.correlation_id,
                    ),
                    self.policy,
                )
                events.extend(card_events)
                expected[(AggregateType.CARD.value, card_id)] = member.version

        stored = self.repository.commit(events, expected)
        self._log_outcome(new_state)
        return new_state, stored

    def _log_outcome(self, state: AssemblyState) -> None:
        if state.status == AssemblyStatus.COMPLETE:
            logger.info(
                "set %s complete with %d card(s)", state.assembly_id, state.expected_count
            )
        elif state.status == AssemblyStatus.ERROR:
            logger.warning(
                "set %s flagged ERROR (%s), missing positions %s",
                state.assembly_id,
                state.error_reason,
                state.missing_positions,
            )
        else:
            logger.debug(
                "set %s gathered %d/%d",
                state.assembly_id,
                len(state.gathered),
                state.expected_count,
            )

    # =========================================================================
    # 操作
    # =========================================================================

    def gather(
        self, assembly_id: str, card_id: str, actor: str = "system", station: str | None = None
    ) -> tuple[AssemblyState, list[BaseEvent]]:
        """カードをセットへ収集

        Raises:
            WrongParent: 別シートのカード
            DuplicateGather: 収集済みのポジション
            NotEligible: QA_PASSED でない、または期待カードでない
        """
        return self.handle(assembly_id, GatherCard(card_id=card_id, actor=actor, station=station))

    def substitute(
        self,
        assembly_id: str,
        original_id: str,
        replacement_id: str,
        actor: str = "system",
    ) -> tuple[AssemblyState, list[BaseEvent]]:
        """VOIDEDカードのポジションを代替カードへ差し替え"""
        return self.handle(
            assembly_id,
            SubstituteCard(original_id=original_id, replacement_id=replacement_id, actor=actor),
        )

    def flag_error(
        self, assembly_id: str, reason: str, actor: str = "system"
    ) -> tuple[AssemblyState, list[BaseEvent]]:
        """マネージャー判断でセットを ERROR にする"""
        return self.handle(assembly_id, FlagAssemblyError(reason=reason, actor=actor))

    def check_timeouts(self, now: datetime | None = None) -> list[str]:
        """タイムアウトしたセットを ERROR にする

        カードの廃棄や代替は行わない。競合したセットは次回の判定に回す。

        Returns:
            ERROR にしたセットIDの一覧
        """
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        timed_out: list[str] = []
        for assembly_id in self.repository.log.list_aggregates(AggregateType.ASSEMBLY):
            try:
                _, stored = self.handle(assembly_id, TimeoutAssembly(occurred_at=now))
            except VersionConflict as e:
                logger.warning("timeout check for %s deferred: %s", assembly_id, e)
                continue
            if stored:
                timed_out.append(assembly_id)
        return timed_out
