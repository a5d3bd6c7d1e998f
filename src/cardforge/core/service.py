"""コマンドサービス

外部インターフェースの境界。コマンドを受け取り、集約状態の読み込み、
純粋な状態遷移、楽観的バージョン付きの追記を行う。

内部で送出された CardForgeError はここで CommandResult に変換する。
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .ar.projections import ProjectionEngine, ReadModelRow
from .ar.repository import AggregateRepository
from .ar.snapshots import SnapshotStore, dump_state
from .ar.storage import EventLog
from .commands import Command, CutSheet, MarkAssembled, RegisterSheet, parse_command
from .config import CardForgeSettings, get_settings
from .errors import (
    CardForgeError,
    DuplicateEvent,
    InvalidCommand,
    NotFound,
    StorageError,
    TransientConflict,
    UnknownAggregate,
    VersionConflict,
)
from .events import AggregateType, BaseEvent, generate_event_id
from .identity import is_valid_id
from .state.assembly import AssemblyProcessManager
from .state.machines import transition_card, transition_sheet
from .state.models import AggregateState, Policy

logger = logging.getLogger(__name__)


class CommandError(BaseModel):
    """拒否理由"""

    model_config = {"frozen": True}

    code: str
    message: str
    retryable: bool = False


class CommandResult(BaseModel):
    """コマンド処理結果

    成功時は新しい状態と確定したイベント、失敗時は理由コードを持つ。
    """

    model_config = {"frozen": True}

    ok: bool
    aggregate_type: str
    aggregate_id: str | None = None
    state: dict[str, Any] | None = None
    events: list[dict[str, Any]] = Field(default_factory=list)
    error: CommandError | None = None
    duplicate: bool = Field(default=False, description="既に処理済みのコマンドだった")

    @classmethod
    def success(
        cls,
        aggregate_type: str,
        aggregate_id: str,
        state: AggregateState | None,
        events: list[BaseEvent],
        duplicate: bool = False,
    ) -> CommandResult:
        return cls(
            ok=True,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            state=dump_state(state) if state is not None else None,
            events=[e.model_dump(mode="json") for e in events],
            duplicate=duplicate,
        )

    @classmethod
    def failure(
        cls, aggregate_type: str, aggregate_id: str | None, error: CardForgeError
    ) -> CommandResult:
        return cls(
            ok=False,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            error=CommandError(code=error.code, message=str(error), retryable=error.retryable),
        )


class CardForgeService:
    """CardForge のコマンドサービス

    Attributes:
        log: イベントログ
        engine: 投影エンジン
        repository: 集約リポジトリ
        manager: セットのプロセスマネージャー
    """

    def __init__(
        self,
        log: EventLog,
        engine: ProjectionEngine,
        snapshots: SnapshotStore | None = None,
        settings: CardForgeSettings | None = None,
    ):
        self.settings = settings or get_settings()
        self.log = log
        self.engine = engine
        self.policy = Policy.from_settings(self.settings)
        self.repository = AggregateRepository(
            log,
            snapshots if self.settings.snapshots.enabled else None,
            self.settings.snapshots.interval,
        )
        self.manager = AssemblyProcessManager(self.repository, self.policy)

    @classmethod
    def open(cls, settings: CardForgeSettings | None = None) -> CardForgeService:
        """設定の Vault からサービスを組み立てる

        投影はチェックポイントから読み込み、その続きのイベントを適用する。
        """
        settings = settings or get_settings()
        vault_path = settings.get_vault_path()
        log = EventLog(vault_path, lock_timeout=settings.vault.lock_timeout_seconds)
        engine = ProjectionEngine(vault_path)
        log.subscribe(engine, from_sequence=engine.load_checkpoints())
        snapshots = SnapshotStore(vault_path) if settings.snapshots.enabled else None
        return cls(log, engine, snapshots, settings)

    def close(self) -> None:
        """投影のチェックポイントを保存"""
        self.engine.save_checkpoints()

    # =========================================================================
    # コマンド
    # =========================================================================

    def submit_command(
        self,
        aggregate_type: AggregateType | str,
        aggregate_id: str | None,
        command_payload: dict[str, Any] | Command,
    ) -> CommandResult:
        """コマンドを処理

        Args:
            aggregate_type: 集約種別 (sheet / card / assembly)
            aggregate_id: 対象集約ID。シート登録時のみ省略可（自動採番）
            command_payload: command タグ付きのdict、またはコマンドモデル

        Returns:
            CommandResult（例外は送出しない）
        """
        type_value = aggregate_type.value if isinstance(aggregate_type, Enum) else aggregate_type
        try:
            kind = AggregateType(type_value)
        except ValueError:
            error = InvalidCommand(f"unknown aggregate type '{type_value}'")
            return CommandResult.failure(type_value, aggregate_id, error)

        try:
            command = parse_command(kind, command_payload).stamp()
        except ValidationError as e:
            error = InvalidCommand(_describe(e))
            return CommandResult.failure(kind.value, aggregate_id, error)

        if isinstance(command, MarkAssembled):
            error = InvalidCommand("mark_assembled is issued by the assembly process manager only")
            return CommandResult.failure(kind.value, aggregate_id, error)

        if aggregate_id is None:
            if not isinstance(command, RegisterSheet):
                error = UnknownAggregate(f"{kind.value} command '{command.command}' needs an id")
                return CommandResult.failure(kind.value, None, error)
            aggregate_id = f"S-{generate_event_id()}"
        elif not is_valid_id(aggregate_id):
            error = InvalidCommand(f"'{aggregate_id}' is not a valid {kind.value} id")
            return CommandResult.failure(kind.value, aggregate_id, error)

        target_id = aggregate_id
        return self._run(kind, target_id, lambda: self._dispatch(kind, target_id, command))

    def _dispatch(
        self, kind: AggregateType, aggregate_id: str, command: Command
    ) -> tuple[AggregateState, list[BaseEvent]]:
        """1回分の 読み込み -> 遷移 -> 追記"""
        if kind == AggregateType.ASSEMBLY:
            return self.manager.handle(aggregate_id, command)

        state = self.repository.load(kind, aggregate_id)
        if kind == AggregateType.SHEET:
            new_state, events = transition_sheet(state, aggregate_id, command, self.policy)
        else:
            new_state, events = transition_card(state, aggregate_id, command, self.policy)

        expected = {(kind.value, aggregate_id): state.version if state else 0}
        stored = self.repository.commit(events, expected)
        if isinstance(command, CutSheet):
            logger.info("sheet %s cut into %d card(s)", aggregate_id, command.fan_out)
        return new_state, stored

    def _run(
        self,
        kind: AggregateType,
        aggregate_id: str,
        attempt: Callable[[], tuple[AggregateState, list[BaseEvent]]],
    ) -> CommandResult:
        """VersionConflict をバックオフ付きでリトライし、結果値へ変換"""
        retry = self.settings.retry
        last_conflict: VersionConflict | None = None

        for number in range(1, retry.max_attempts + 1):
            try:
                state, events = attempt()
                return CommandResult.success(kind.value, aggregate_id, state, events)
            except VersionConflict as e:
                last_conflict = e
                logger.warning(
                    "attempt %d/%d for %s %s conflicted: %s",
                    number,
                    retry.max_attempts,
                    kind.value,
                    aggregate_id,
                    e,
                )
                if number < retry.max_attempts:
                    time.sleep(retry.backoff_seconds * number)
            except DuplicateEvent as e:
                logger.info("%s %s: %s (already applied)", kind.value, aggregate_id, e)
                state = self.repository.load(kind, aggregate_id)
                return CommandResult.success(kind.value, aggregate_id, state, [], duplicate=True)
            except StorageError as e:
                logger.error("storage fault while handling %s %s: %s", kind.value, aggregate_id, e)
                return CommandResult.failure(kind.value, aggregate_id, e)
            except CardForgeError as e:
                logger.info("rejected %s %s: %s", kind.value, aggregate_id, e)
                return CommandResult.failure(kind.value, aggregate_id, e)

        error = TransientConflict(
            f"{kind.value} {aggregate_id} still conflicting after "
            f"{retry.max_attempts} attempt(s): {last_conflict}"
        )
        return CommandResult.failure(kind.value, aggregate_id, error)

    # =========================================================================
    # プロセスマネージャーへの委譲
    # =========================================================================

    def gather(
        self, assembly_id: str, card_id: str, actor: str = "system", station: str | None = None
    ) -> CommandResult:
        """カードをセットへ収集"""
        return self.submit_command(
            AggregateType.ASSEMBLY,
            assembly_id,
            {"command": "gather", "card_id": card_id, "actor": actor, "station": station},
        )

    def substitute(
        self, assembly_id: str, original_id: str, replacement_id: str, actor: str = "system"
    ) -> CommandResult:
        """VOIDEDカードのポジションを代替カードへ差し替え"""
        return self.submit_command(
            AggregateType.ASSEMBLY,
            assembly_id,
            {
                "command": "substitute",
                "original_id": original_id,
                "replacement_id": replacement_id,
                "actor": actor,
            },
        )

    def flag_error(self, assembly_id: str, reason: str, actor: str = "system") -> CommandResult:
        """マネージャー判断でセットを ERROR にする"""
        return self.submit_command(
            AggregateType.ASSEMBLY,
            assembly_id,
            {"command": "flag_error", "reason": reason, "actor": actor},
        )

    def check_timeouts(self, now: datetime | None = None) -> list[str]:
        """タイムアウトしたセットを ERROR にする

        Returns:
            ERROR にしたセットIDの一覧
        """
        return self.manager.check_timeouts(now)

    # =========================================================================
    # 参照
    # =========================================================================

    def query(self, read_model_name: str, key: str) -> ReadModelRow:
        """読み取りモデルの1行

        Raises:
            NotFound: モデルまたは行が存在しない場合
        """
        self.log.refresh()
        return self.engine.query(read_model_name, key)

    def replay(self, read_model_name: str) -> int:
        """読み取りモデルを通し番号 0 から再構築

        Returns:
            再構築後の通し番号
        """
        return self.engine.rebuild(read_model_name, self.log)

    def load(self, aggregate_type: AggregateType | str, aggregate_id: str) -> AggregateState:
        """集約の現在状態

        Raises:
            NotFound: 集約が存在しない場合
        """
        type_value = aggregate_type.value if isinstance(aggregate_type, Enum) else aggregate_type
        state = self.repository.load(AggregateType(type_value), aggregate_id)
        if state is None:
            raise NotFound(f"{type_value} {aggregate_id} does not exist")
        return state


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "command"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)
