"""イベント永続化層 (EventLog / スナップショット / 投影)"""

from .projections import (
    ProjectionEngine,
    ReadModel,
    ReadModelRow,
    default_read_models,
    fold_rows,
)
from .repository import AggregateRepository
from .snapshots import Snapshot, SnapshotStore
from .storage import EventLog, LogSubscriber, StreamAppend

__all__ = [
    "EventLog",
    "StreamAppend",
    "LogSubscriber",
    "Snapshot",
    "SnapshotStore",
    "AggregateRepository",
    "ProjectionEngine",
    "ReadModel",
    "ReadModelRow",
    "default_read_models",
    "fold_rows",
]
