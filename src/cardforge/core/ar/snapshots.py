"""集約スナップショット

長いイベントストリームのリプレイを短縮するため、
集約ごとに (version, 状態) の組を1つだけ保持する。
スナップショットは置き換えのみで、既存ファイルを書き換えない。
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..errors import StorageError
from .storage import _key

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """ある時点の集約状態"""

    model_config = {"frozen": True}

    aggregate_type: str
    aggregate_id: str
    version: int = Field(..., ge=1)
    state: dict[str, Any] = Field(default_factory=dict)


class SnapshotStore:
    """Vault/snapshots/{aggregate_type}/{aggregate_id}.json に保存するスナップショットストア"""

    def __init__(self, vault_path: Path | str):
        self.base_path = Path(vault_path) / "snapshots"
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, aggregate_type: Enum | str, aggregate_id: str) -> Path:
        type_value, _ = _key(aggregate_type, aggregate_id)
        return self.base_path / type_value / f"{aggregate_id}.json"

    def latest(self, aggregate_type: Enum | str, aggregate_id: str) -> Snapshot | None:
        """最新のスナップショット（なければNone）"""
        path = self._path(aggregate_type, aggregate_id)
        if not path.exists():
            return None
        try:
            return Snapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # 壊れたスナップショットは使わずリプレイにフォールバック
            logger.warning("ignoring unreadable snapshot %s: %s", path, e)
            return None

    def save(self, snapshot: Snapshot) -> None:
        """スナップショットを置き換え（一時ファイル + os.replace）"""
        path = self._path(snapshot.aggregate_type, snapshot.aggregate_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        current = self.latest(snapshot.aggregate_type, snapshot.aggregate_id)
        if current is not None and current.version >= snapshot.version:
            return
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(snapshot.model_dump_json())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"could not write snapshot {path}: {e}") from e
        logger.debug(
            "snapshot %s %s at version %d",
            snapshot.aggregate_type,
            snapshot.aggregate_id,
            snapshot.version,
        )

    def delete(self, aggregate_type: Enum | str, aggregate_id: str) -> None:
        """スナップショットを破棄"""
        self._path(aggregate_type, aggregate_id).unlink(missing_ok=True)

    def count(self) -> int:
        """保存済みスナップショット数"""
        return sum(1 for _ in self.base_path.glob("*/*.json"))


def dump_state(state: BaseModel) -> dict[str, Any]:
    """状態モデルをスナップショット用のJSON互換dictへ"""
    return json.loads(state.model_dump_json())
