"""設定管理モジュールのテスト"""

from datetime import timedelta
from pathlib import Path

import pytest
from pydantic import ValidationError

import cardforge.core.config as config_module
from cardforge.core.config import CardForgeSettings, get_settings, reload_settings
from cardforge.core.state import Policy


class TestCardForgeSettings:
    """CardForgeSettingsのテスト"""

    def test_default_values(self):
        """デフォルト値が正しく設定される"""
        # Arrange & Act: デフォルト設定を作成
        settings = CardForgeSettings()

        # Assert: デフォルト値が設定されている
        assert settings.vault.path == "./Vault"
        assert settings.fan_out.max_cards == 99
        assert settings.qa.allow_rework is False
        assert settings.assembly.timeout_minutes == 240
        assert settings.retry.max_attempts == 3
        assert settings.snapshots.interval == 50

    def test_from_yaml_with_valid_file(self, tmp_path):
        """有効なYAMLファイルから設定を読み込む"""
        # Arrange: YAMLファイルを作成
        config_file = tmp_path / "cardforge.config.yaml"
        config_file.write_text("""
vault:
  path: /custom/vault
fan_out:
  max_cards: 24
qa:
  allow_rework: true
  max_rework: 2
assembly:
  timeout_minutes: 90
""")

        # Act: YAMLから読み込み
        settings = CardForgeSettings.from_yaml(config_file)

        # Assert: カスタム値が設定されている
        assert settings.vault.path == "/custom/vault"
        assert settings.fan_out.max_cards == 24
        assert settings.qa.allow_rework is True
        assert settings.qa.max_rework == 2
        assert settings.assembly.timeout_minutes == 90

    def test_from_yaml_with_nonexistent_file(self):
        """存在しないファイルパスを指定した場合はデフォルト値"""
        settings = CardForgeSettings.from_yaml(Path("/nonexistent/config.yaml"))

        assert settings.retry.max_attempts == 3

    def test_from_yaml_with_empty_file(self, tmp_path):
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        settings = CardForgeSettings.from_yaml(config_file)

        assert settings.fan_out.max_cards == 99

    def test_from_yaml_finds_default_config_file(self, tmp_path, monkeypatch):
        """カレントディレクトリの設定ファイルを自動検出する"""
        # Arrange
        (tmp_path / "cardforge.config.yml").write_text("retry:\n  max_attempts: 7\n")
        monkeypatch.chdir(tmp_path)

        # Act
        settings = CardForgeSettings.from_yaml(None)

        # Assert
        assert settings.retry.max_attempts == 7

    def test_environment_overrides(self, monkeypatch):
        """環境変数で入れ子の設定を上書きできる"""
        monkeypatch.setenv("CARDFORGE_ASSEMBLY__TIMEOUT_MINUTES", "30")

        settings = CardForgeSettings()

        assert settings.assembly.timeout_minutes == 30

    def test_min_fan_out_above_max_rejected(self):
        with pytest.raises(ValidationError):
            CardForgeSettings(fan_out={"min_cards": 10, "max_cards": 5})

    def test_invalid_retry_attempts(self):
        with pytest.raises(ValidationError):
            CardForgeSettings(retry={"max_attempts": 0})


class TestPolicyFromSettings:
    """設定から業務ポリシーへの変換"""

    def test_policy_follows_settings(self):
        settings = CardForgeSettings(
            fan_out={"min_cards": 2, "max_cards": 24},
            qa={"allow_rework": True, "max_rework": 3},
            assembly={"timeout_minutes": 15},
        )

        policy = Policy.from_settings(settings)

        assert policy == Policy(
            min_fan_out=2,
            max_fan_out=24,
            allow_rework=True,
            max_rework=3,
            assembly_timeout=timedelta(minutes=15),
        )


class TestGetVaultPath:
    """get_vault_path メソッドのテスト"""

    def test_absolute_path_unchanged(self):
        """絶対パスはそのまま返される"""
        settings = CardForgeSettings.model_validate({"vault": {"path": "/absolute/vault/path"}})

        assert settings.get_vault_path() == Path("/absolute/vault/path")

    def test_relative_path_resolved_to_absolute(self, tmp_path, monkeypatch):
        """相対パスは現在のディレクトリからの絶対パスに解決される"""
        monkeypatch.chdir(tmp_path)
        settings = CardForgeSettings.model_validate({"vault": {"path": "./relative/vault"}})

        vault_path = settings.get_vault_path()

        assert vault_path.is_absolute()
        assert vault_path == (tmp_path / "relative" / "vault").resolve()


class TestSettingsSingleton:
    """設定シングルトンのテスト"""

    def test_get_settings_returns_same_instance(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setattr(config_module, "_settings", None)

        first = get_settings()

        assert isinstance(first, CardForgeSettings)
        assert get_settings() is first

    def test_reload_settings_updates_singleton(self, tmp_path, monkeypatch):
        """reload_settings はシングルトンを更新する"""
        # Arrange
        config_file = tmp_path / "custom.yaml"
        config_file.write_text("snapshots:\n  enabled: false\n")
        monkeypatch.setattr(config_module, "_settings", None)

        # Act
        settings = reload_settings(config_file)

        # Assert
        assert settings.snapshots.enabled is False
        assert get_settings() is settings
