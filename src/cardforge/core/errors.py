"""エラー分類

CardForge コアが送出する例外の階層。

- 一時的エラー: VersionConflict（呼び出し側で再読み込み→リトライ）
- 冪等ガード: DuplicateEvent（呼び出し側では成功扱い）
- ドメインルール違反: DomainError 系（リトライ不可、オペレーターへ理由コード付きで提示）
- 設定/プログラムエラー: InvalidPosition
- ストレージ障害: StorageError（致命的、リトライしない）
"""

from __future__ import annotations


class CardForgeError(Exception):
    """CardForge 例外の基底

    Attributes:
        code: 理由コード（安定した識別子）
        retryable: 呼び出し側がリトライしてよいか
    """

    code = "CARDFORGE_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(f"{self.code}: {message}")
        self.detail = message


# ─── イベントログ ──────────────────────────────────────


class VersionConflict(CardForgeError):
    """楽観的並行性制御の競合"""

    code = "VERSION_CONFLICT"
    retryable = True

    def __init__(
        self, aggregate_type: str, aggregate_id: str, expected: int, actual: int
    ) -> None:
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{aggregate_type} {aggregate_id} is at version {actual}, expected {expected}"
        )


class TransientConflict(CardForgeError):
    """リトライ上限まで VersionConflict が続いた"""

    code = "TRANSIENT_CONFLICT"
    retryable = True


class DuplicateEvent(CardForgeError):
    """同一 (aggregate, version) または同一イベントIDの二重追記"""

    code = "DUPLICATE_EVENT"


class StorageError(CardForgeError):
    """ストレージ層の障害（致命的、リトライしない）"""

    code = "STORAGE_ERROR"


class NotFound(CardForgeError):
    """読み取りモデルまたは集約が存在しない"""

    code = "NOT_FOUND"


# ─── ドメインルール違反 ────────────────────────────────


class DomainError(CardForgeError):
    """ドメインルール違反の基底（リトライ不可）"""

    code = "DOMAIN_ERROR"


class InvalidTransition(DomainError):
    """現在の状態からは受け付けられないコマンド"""

    code = "INVALID_TRANSITION"


class NotReadyForFanOut(DomainError):
    """カット可能な状態ではないシート"""

    code = "NOT_READY_FOR_FAN_OUT"


class InvalidFanOut(DomainError):
    """カット枚数がポリシー範囲外"""

    code = "INVALID_FAN_OUT"


class NotEligible(DomainError):
    """収集対象として適格でないカード"""

    code = "NOT_ELIGIBLE"


class WrongParent(DomainError):
    """別シート由来のカード"""

    code = "WRONG_PARENT"


class DuplicateGather(DomainError):
    """既に収集済みのポジション"""

    code = "DUPLICATE_GATHER"


class RequiresManagerOverride(DomainError):
    """ポリシー上マネージャー承認が必要な操作"""

    code = "REQUIRES_MANAGER_OVERRIDE"


class MissingReason(DomainError):
    """理由の指定が必須の操作で理由がない"""

    code = "MISSING_REASON"


class AlreadyExists(DomainError):
    """既に存在する集約の作成"""

    code = "ALREADY_EXISTS"


class UnknownAggregate(DomainError):
    """存在しない集約へのコマンド"""

    code = "UNKNOWN_AGGREGATE"


class InvalidCommand(DomainError):
    """コマンドの形式不正（未知のコマンド、項目の不足・型違い）"""

    code = "INVALID_COMMAND"


# ─── 設定/プログラムエラー ─────────────────────────────


class InvalidPosition(CardForgeError):
    """ポジション番号が [1, N] の範囲外"""

    code = "INVALID_POSITION"
