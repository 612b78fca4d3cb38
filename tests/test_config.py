"""設定読み込み・メンテナンス判定・ログ設定のテスト。"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import pytest

from maimai_record.config import DEFAULT_BASE_URL, load_credentials, load_settings
from maimai_record.errors import ConfigError
from maimai_record.logging_utils import LOGGER_NAME, configure_logging
from maimai_record.maintenance import is_maintenance_hour, is_maintenance_window

ENV = {"SEGA_ID": "player@example.com", "SEGA_PASSWORD": "s3cret-pass"}


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


@pytest.mark.light
def test_load_settings_from_yaml(tmp_path: Path):
    path = _write(
        tmp_path,
        """
site:
  base_url: https://maimaidx.jp/maimai-mobile
  request_interval_seconds: 2
  max_retries: 5
storage:
  sqlite_path: /tmp/x.sqlite
schedule:
  poll_interval_seconds: 300
logging:
  level: debug
  file: null
""",
    )
    settings = load_settings(path, env=ENV)

    assert settings.site.base_url == "https://maimaidx.jp/maimai-mobile/"
    assert settings.site.request_interval_seconds == 2.0
    assert settings.site.max_retries == 5
    assert settings.site.request_timeout_seconds == 30.0
    assert settings.storage.sqlite_path == "/tmp/x.sqlite"
    assert settings.storage.cookie_path == "data/cookies.json"
    assert settings.schedule.poll_interval_seconds == 300.0
    assert settings.schedule.maintenance_start_hour == 4
    assert settings.logging.level == "DEBUG"
    assert settings.logging.file is None
    assert settings.credentials.sega_id == "player@example.com"


@pytest.mark.light
def test_empty_settings_file_uses_defaults(tmp_path: Path):
    settings = load_settings(_write(tmp_path, ""), env=ENV)
    assert settings.site.base_url == DEFAULT_BASE_URL
    assert settings.schedule.maintenance_end_hour == 7


@pytest.mark.light
def test_password_is_not_in_repr(tmp_path: Path):
    settings = load_settings(_write(tmp_path, ""), env=ENV)
    assert "s3cret-pass" not in repr(settings)


@pytest.mark.light
@pytest.mark.parametrize("env", [{}, {"SEGA_ID": "x"}, {"SEGA_ID": " ", "SEGA_PASSWORD": "y"}])
def test_missing_credentials_raise_config_error(env):
    with pytest.raises(ConfigError):
        load_credentials(env)


@pytest.mark.light
@pytest.mark.parametrize(
    "text",
    [
        "- a\n- b\n",
        "site: 3\n",
        "site:\n  max_retries: zero\n",
        "site:\n  max_retries: 0\n",
        "schedule:\n  maintenance_start_hour: 25\n",
    ],
)
def test_invalid_settings_raise_config_error(tmp_path: Path, text: str):
    with pytest.raises(ConfigError):
        load_settings(_write(tmp_path, text), env=ENV)


@pytest.mark.light
def test_maintenance_window_boundaries():
    assert not is_maintenance_window(datetime(2026, 1, 23, 3, 59))
    assert is_maintenance_window(datetime(2026, 1, 23, 4, 0))
    assert is_maintenance_window(datetime(2026, 1, 23, 6, 59))
    assert not is_maintenance_window(datetime(2026, 1, 23, 7, 0))


@pytest.mark.light
def test_maintenance_hour_wraps_midnight_and_can_be_disabled():
    assert is_maintenance_hour(23, 22, 2)
    assert is_maintenance_hour(1, 22, 2)
    assert not is_maintenance_hour(12, 22, 2)
    assert not is_maintenance_hour(4, 4, 4)


@pytest.mark.light
def test_configure_logging_writes_rotating_file(tmp_path: Path):
    package_logger = logging.getLogger(LOGGER_NAME)
    saved = list(package_logger.handlers)
    package_logger.handlers.clear()
    try:
        log_file = tmp_path / "logs" / "record_sync.log"
        configure_logging("INFO", str(log_file))
        logging.getLogger("maimai_record.sync").info("hello log")
        for handler in package_logger.handlers:
            handler.flush()

        content = log_file.read_text(encoding="utf-8")
        assert "| INFO | maimai_record.sync | hello log" in content
    finally:
        for handler in package_logger.handlers:
            handler.close()
        package_logger.handlers[:] = saved
        package_logger.propagate = True
