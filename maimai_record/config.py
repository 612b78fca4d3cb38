"""
設定ファイル(settings.yaml)の読み込み処理を提供するモジュール。

settings.yaml から同期処理に必要な各種設定を読み込み、
アプリ内で扱いやすい dataclass に変換する。

SEGA ID とパスワードは YAML には書かず、環境変数 SEGA_ID / SEGA_PASSWORD から読み込む。
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional

import yaml

from maimai_record.errors import ConfigError

DEFAULT_BASE_URL = "https://maimaidx-eng.com/maimai-mobile/"


@dataclass(frozen=True)
class SiteConfig:
    """
    maimai DX NET への通信設定。

    Attributes:
        base_url: maimai-mobile のルートURL（末尾スラッシュ付き）。
        request_timeout_seconds: 1リクエストあたりのタイムアウト秒。
        request_interval_seconds: 連続するページ取得の間に挟む待機秒。
        max_retries: NetworkError 時の最大試行回数。
        retry_base_delay_seconds: リトライ待機の初期値（試行ごとに倍増）。
    """

    base_url: str = DEFAULT_BASE_URL
    request_timeout_seconds: float = 30.0
    request_interval_seconds: float = 1.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 2.0


@dataclass(frozen=True)
class StorageConfig:
    """
    ローカル保存先の設定。

    Attributes:
        sqlite_path: 記録を保存する SQLite ファイルパス。
        cookie_path: Cookie を永続化する JSON ファイルパス。
    """

    sqlite_path: str = "data/records.sqlite"
    cookie_path: str = "data/cookies.json"


@dataclass(frozen=True)
class ScheduleConfig:
    """
    定期同期とメンテナンス時間帯の設定。

    Attributes:
        poll_interval_seconds: 定期同期の間隔秒。
        maintenance_start_hour: メンテナンス開始時刻（ローカル時刻, 含む）。
        maintenance_end_hour: メンテナンス終了時刻（ローカル時刻, 含まない）。
    """

    poll_interval_seconds: float = 600.0
    maintenance_start_hour: int = 4
    maintenance_end_hour: int = 7


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = "data/logs/record_sync.log"


@dataclass(frozen=True)
class Credentials:
    """SEGA ID 認証情報。repr にパスワードを出さない。"""

    sega_id: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class Settings:
    """
    アプリケーション全体設定。

    Attributes:
        credentials: SEGA ID 認証情報。
        site: 通信設定。
        storage: 保存先設定。
        schedule: 定期同期設定。
        logging: ログ設定。
    """

    credentials: Credentials
    site: SiteConfig = field(default_factory=SiteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_credentials(env: Optional[Mapping[str, str]] = None) -> Credentials:
    """
    環境変数から SEGA ID 認証情報を読み込む。

    Args:
        env: 環境変数のマッピング。省略時は os.environ。

    Raises:
        ConfigError: SEGA_ID または SEGA_PASSWORD が未設定の場合。
    """
    env = os.environ if env is None else env
    sega_id = (env.get("SEGA_ID") or "").strip()
    password = env.get("SEGA_PASSWORD") or ""
    if not sega_id or not password:
        raise ConfigError("環境変数 SEGA_ID / SEGA_PASSWORD が必要です")
    return Credentials(sega_id=sega_id, password=password)


def _section(data: dict, name: str) -> dict:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"settings.yaml の {name} はマッピングである必要があります")
    return value


def load_settings(path: str, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    settings.yaml を読み込み Settings に変換する。

    未指定のキーは各 dataclass のデフォルト値を使う。

    Args:
        path: settings.yaml のファイルパス。
        env: 認証情報を読む環境変数マッピング。省略時は os.environ。

    Returns:
        Settingsオブジェクト。

    Raises:
        FileNotFoundError: 設定ファイルが存在しない場合。
        yaml.YAMLError: YAMLのパースに失敗した場合。
        ConfigError: 値が不正、または認証情報が不足している場合。
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError("settings.yaml のトップレベルはマッピングである必要があります")

    site = _section(data, "site")
    storage = _section(data, "storage")
    schedule = _section(data, "schedule")
    log = _section(data, "logging")

    try:
        base_url = str(site.get("base_url", DEFAULT_BASE_URL)).strip()
        if not base_url.endswith("/"):
            base_url += "/"

        settings = Settings(
            credentials=load_credentials(env),
            site=SiteConfig(
                base_url=base_url,
                request_timeout_seconds=float(site.get("request_timeout_seconds", 30)),
                request_interval_seconds=float(site.get("request_interval_seconds", 1.0)),
                max_retries=int(site.get("max_retries", 3)),
                retry_base_delay_seconds=float(site.get("retry_base_delay_seconds", 2.0)),
            ),
            storage=StorageConfig(
                sqlite_path=str(storage.get("sqlite_path", "data/records.sqlite")),
                cookie_path=str(storage.get("cookie_path", "data/cookies.json")),
            ),
            schedule=ScheduleConfig(
                poll_interval_seconds=float(schedule.get("poll_interval_seconds", 600)),
                maintenance_start_hour=int(schedule.get("maintenance_start_hour", 4)),
                maintenance_end_hour=int(schedule.get("maintenance_end_hour", 7)),
            ),
            logging=LoggingConfig(
                level=str(log.get("level", "INFO")).upper(),
                file=log.get("file", "data/logs/record_sync.log"),
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"settings.yaml の値が不正です: {e}") from e

    if settings.site.max_retries < 1:
        raise ConfigError("site.max_retries は 1 以上である必要があります")

    for hour in (settings.schedule.maintenance_start_hour, settings.schedule.maintenance_end_hour):
        if not 0 <= hour <= 24:
            raise ConfigError(f"メンテナンス時刻は 0..24 で指定してください: {hour}")

    return settings
