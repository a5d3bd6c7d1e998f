"""CardForge Core モジュール

製造トラッキングのバックエンドロジックを提供:
- AR: イベントログ・スナップショット・投影
- State: 状態機械とセットのプロセスマネージャー
- Config: 設定管理
- Events: イベントモデル
"""

from .ar import EventLog, ProjectionEngine, ReadModelRow, SnapshotStore
from .config import CardForgeSettings, get_settings, reload_settings
from .errors import CardForgeError
from .events import (
    AggregateType,
    BaseEvent,
    EventType,
    generate_event_id,
    parse_event,
)
from .service import CardForgeService, CommandResult
from .state import AssemblyProcessManager, Policy

__all__ = [
    # Config
    "get_settings",
    "reload_settings",
    "CardForgeSettings",
    # Errors
    "CardForgeError",
    # Events
    "AggregateType",
    "BaseEvent",
    "EventType",
    "generate_event_id",
    "parse_event",
    # AR
    "EventLog",
    "SnapshotStore",
    "ProjectionEngine",
    "ReadModelRow",
    # State
    "Policy",
    "AssemblyProcessManager",
    # Service
    "CardForgeService",
    "CommandResult",
]
