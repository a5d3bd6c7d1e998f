"""CardForge テスト設定"""

import shutil
import tempfile
from pathlib import Path

import pytest

from cardforge.core.ar import EventLog, ProjectionEngine, SnapshotStore
from cardforge.core.config import CardForgeSettings, VaultConfig
from cardforge.core.service import CardForgeService

SHEET_ID = "J1044-S003"


@pytest.fixture
def temp_vault():
    """テスト用の一時Vaultディレクトリ"""
    vault_path = Path(tempfile.mkdtemp())
    yield vault_path
    shutil.rmtree(vault_path, ignore_errors=True)


@pytest.fixture
def settings(temp_vault):
    """テスト用の設定（リトライ待ちなし）"""
    return CardForgeSettings(
        vault=VaultConfig(path=str(temp_vault)),
        retry={"max_attempts": 3, "backoff_seconds": 0.0},
    )


@pytest.fixture
def mock_settings(settings, monkeypatch):
    """get_settings() がテスト用設定を返すようにする"""
    monkeypatch.setattr("cardforge.core.config._settings", settings)
    return settings


@pytest.fixture
def service(settings, temp_vault):
    """テスト用のコマンドサービス"""
    log = EventLog(temp_vault)
    engine = ProjectionEngine(temp_vault)
    log.subscribe(engine)
    return CardForgeService(log, engine, SnapshotStore(temp_vault), settings)


@pytest.fixture
def qa_pass(service):
    """カードを QA_PASSED まで進める関数"""

    def advance(card_id, station="laminate"):
        assert service.submit_command("card", card_id, {"command": "start", "station": station}).ok
        result = service.submit_command("card", card_id, {"command": "record_qa", "passed": True})
        assert result.ok, result.error

    return advance


@pytest.fixture
def cut_sheet(service):
    """J1044-S003 を登録・投入し18枚にカットした状態"""
    assert service.submit_command(
        "sheet", SHEET_ID, {"command": "register", "job_id": "J1044"}
    ).ok
    assert service.submit_command(
        "sheet", SHEET_ID, {"command": "enter_station", "station": "print"}
    ).ok
    result = service.submit_command("sheet", SHEET_ID, {"command": "cut", "fan_out": 18})
    assert result.ok, result.error
    return result
