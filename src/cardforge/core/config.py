"""CardForge 設定管理モジュール

Pydantic Settingsを使用した型安全な設定管理。
cardforge.config.yaml と環境変数から設定を読み込む。
"""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class VaultConfig(BaseModel):
    """イベントログ保存先設定"""

    path: str = Field(default="./Vault", description="Vaultディレクトリ")
    lock_timeout_seconds: int = Field(default=10, ge=1, description="ファイルロック待機秒")


class FanOutConfig(BaseModel):
    """カット（ファンアウト）ポリシー"""

    min_cards: int = Field(default=1, ge=1, description="1シートあたりの最小カード数")
    max_cards: int = Field(default=99, ge=1, le=9999, description="1シートあたりの最大カード数")

    @model_validator(mode="after")
    def check_bounds(self) -> "FanOutConfig":
        if self.min_cards > self.max_cards:
            raise ValueError("fan_out.min_cards must not exceed fan_out.max_cards")
        return self


class QAConfig(BaseModel):
    """QA不合格時のポリシー"""

    allow_rework: bool = Field(
        default=False, description="QA不合格カードの手直しをマネージャー承認なしで許可するか"
    )
    max_rework: int = Field(default=1, ge=0, le=10, description="承認なしで許可する手直し回数")


class AssemblyConfig(BaseModel):
    """セット収集設定"""

    timeout_minutes: int = Field(
        default=240, ge=1, description="最初の収集から COMPLETE までの許容時間（分）"
    )


class RetryConfig(BaseModel):
    """楽観的並行性制御のリトライ設定"""

    max_attempts: int = Field(default=3, ge=1, le=10, description="最大試行回数")
    backoff_seconds: float = Field(default=0.05, ge=0.0, le=5.0, description="リトライ間隔の基準秒")


class SnapshotConfig(BaseModel):
    """スナップショット設定"""

    enabled: bool = Field(default=True)
    interval: int = Field(default=50, ge=1, description="スナップショットを取るバージョン間隔")


class LoggingConfig(BaseModel):
    """ロギング設定"""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")


class CardForgeSettings(BaseSettings):
    """CardForge全体設定

    設定の優先順位:
    1. 環境変数
    2. cardforge.config.yaml
    3. デフォルト値
    """

    model_config = SettingsConfigDict(
        env_prefix="CARDFORGE_",
        env_nested_delimiter="__",
    )

    vault: VaultConfig = Field(default_factory=VaultConfig)
    fan_out: FanOutConfig = Field(default_factory=FanOutConfig)
    qa: QAConfig = Field(default_factory=QAConfig)
    assembly: AssemblyConfig = Field(default_factory=AssemblyConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, config_path: Path | str | None = None) -> "CardForgeSettings":
        """YAMLファイルから設定を読み込む

        Args:
            config_path: 設定ファイルパス。Noneの場合はデフォルトパスを探索

        Returns:
            CardForgeSettings インスタンス
        """
        if config_path is None:
            search_paths = [
                Path.cwd() / "cardforge.config.yaml",
                Path.cwd() / "cardforge.config.yml",
                Path.home() / ".cardforge" / "config.yaml",
            ]
            for path in search_paths:
                if path.exists():
                    config_path = path
                    break

        if config_path and Path(config_path).exists():
            with open(config_path, encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
            return cls.model_validate(yaml_config)

        return cls()

    def get_vault_path(self) -> Path:
        """Vaultパスを絶対パスで取得"""
        vault = Path(self.vault.path)
        if not vault.is_absolute():
            vault = Path.cwd() / vault
        return vault.resolve()


# グローバル設定インスタンス（遅延初期化）
_settings: CardForgeSettings | None = None


def get_settings() -> CardForgeSettings:
    """設定シングルトンを取得"""
    global _settings
    if _settings is None:
        _settings = CardForgeSettings.from_yaml()
    return _settings


def reload_settings(config_path: Path | str | None = None) -> CardForgeSettings:
    """設定を再読み込み"""
    global _settings
    _settings = CardForgeSettings.from_yaml(config_path)
    return _settings
