"""CLIモジュールのテスト"""

import json
import sys
from argparse import Namespace
from unittest.mock import patch

import pytest

from cardforge.cli import main, run_init, run_query, run_submit, run_verify
from cardforge.core.config import get_settings


def run_cli(*argv):
    with patch.object(sys, "argv", ["cardforge", *argv]):
        main()


class TestMainFunction:
    """main関数のテスト"""

    def test_no_command_shows_help(self, capsys):
        """コマンドなしでヘルプが表示される"""
        # Arrange
        with patch.object(sys, "argv", ["cardforge"]):
            # Act & Assert
            with pytest.raises(SystemExit) as excinfo:
                main()
            assert excinfo.value.code == 1

    def test_submit_command_dispatch(self, mock_settings):
        """submitコマンドの引数が正しく渡される"""
        with patch("cardforge.cli.run_submit") as mock_run_submit:
            run_cli("submit", "sheet", "--id", "S1", "--command", '{"command": "register"}')

            args = mock_run_submit.call_args[0][0]
            assert args.aggregate_type == "sheet"
            assert args.aggregate_id == "S1"
            assert json.loads(args.payload) == {"command": "register"}

    def test_gather_command_dispatch(self, mock_settings):
        with patch("cardforge.cli.run_gather") as mock_run_gather:
            run_cli("gather", "A-S1", "S1-01", "--station", "assembly")

            args = mock_run_gather.call_args[0][0]
            assert args.assembly_id == "A-S1"
            assert args.card_id == "S1-01"
            assert args.actor == "cli"
            assert args.station == "assembly"

    def test_check_timeouts_dispatch(self, mock_settings):
        with patch("cardforge.cli.run_check_timeouts") as mock_run:
            run_cli("check-timeouts", "--now", "2026-10-18T13:00:00+00:00")

            assert mock_run.call_args[0][0].now == "2026-10-18T13:00:00+00:00"

    def test_invalid_aggregate_type(self, mock_settings):
        with pytest.raises(SystemExit):
            run_cli("submit", "pallet", "--command", "{}")

    def test_config_option_reloads_settings(self, tmp_path, monkeypatch):
        """--config 指定時はその設定ファイルを読み込む"""
        config_file = tmp_path / "cardforge.config.yaml"
        config_file.write_text(f"vault:\n  path: {tmp_path / 'Vault'}\nlogging:\n  level: DEBUG\n")
        monkeypatch.setattr("cardforge.core.config._settings", None)

        with patch("cardforge.cli.run_init") as mock_run_init:
            run_cli("--config", str(config_file), "init")

        mock_run_init.assert_called_once()
        assert get_settings().logging.level == "DEBUG"


class TestCommands:
    """各コマンドの実行"""

    def test_init(self, mock_settings, capsys):
        run_init(Namespace())

        captured = capsys.readouterr()
        assert "Vault" in captured.out
        assert "イベント数: 0" in captured.out

    def test_submit_and_query(self, mock_settings, capsys):
        """送信したコマンドが読み取りモデルに反映される"""
        # Act
        run_cli("submit", "sheet", "--id", "J1044-S003", "--command", '{"command": "register"}')
        run_cli("query", "sheets", "J1044-S003")

        # Assert
        out = capsys.readouterr().out
        assert "✓ sheet J1044-S003" in out
        assert "sheet.registered" in out
        assert '"status": "PENDING"' in out

    def test_submit_rejected(self, mock_settings, capsys):
        """拒否されたコマンドは終了コード1"""
        args = Namespace(aggregate_type="card", aggregate_id="nope-01", payload='{"command": "pack"}')

        with pytest.raises(SystemExit) as excinfo:
            run_submit(args)

        assert excinfo.value.code == 1
        assert "UNKNOWN_AGGREGATE" in capsys.readouterr().err

    def test_submit_invalid_json(self, mock_settings, capsys):
        args = Namespace(aggregate_type="sheet", aggregate_id="S1", payload="{not json")

        with pytest.raises(SystemExit):
            run_submit(args)

        assert "JSON" in capsys.readouterr().err

    def test_query_not_found(self, mock_settings, capsys):
        with pytest.raises(SystemExit) as excinfo:
            run_query(Namespace(model="cards", key="missing"))

        assert excinfo.value.code == 1
        assert "NOT_FOUND" in capsys.readouterr().err

    def test_replay(self, mock_settings, capsys):
        run_cli("submit", "sheet", "--id", "S1", "--command", '{"command": "register"}')

        run_cli("replay", "sheets")

        assert "sequence 1" in capsys.readouterr().out

    def test_verify(self, mock_settings, capsys):
        run_cli("submit", "sheet", "--id", "S1", "--command", '{"command": "register"}')

        run_verify(Namespace())

        assert "チェーンは正常です" in capsys.readouterr().out

    def test_check_timeouts_none(self, mock_settings, capsys):
        run_cli("check-timeouts")

        assert "タイムアウトしたセットはありません" in capsys.readouterr().out

    def test_check_timeouts_invalid_now(self, mock_settings, capsys):
        """--now が解釈できなければエラー終了"""
        with pytest.raises(SystemExit) as exc_info:
            run_cli("check-timeouts", "--now", "yesterday")

        assert exc_info.value.code == 1
        assert "--now" in capsys.readouterr().err
