"""main.py の起動・停止処理のテスト。"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

import main as entrypoint
from maimai_record.logging_utils import LOGGER_NAME


class RecordingScheduler:
    instances = []

    def __init__(self, orchestrator, interval, on_result=None):
        self.interval = interval
        self.events = []
        RecordingScheduler.instances.append(self)

    def run_startup_cycle(self):
        self.events.append("startup")

    def start(self):
        self.events.append("start")

    def stop(self, timeout=None):
        self.events.append(("stop", timeout))


class InterruptedEvent:
    def wait(self, timeout=None):
        raise KeyboardInterrupt


@pytest.mark.light
def test_main_joins_poller_with_bounded_timeout_on_shutdown(tmp_path: Path, monkeypatch):
    settings_path = tmp_path / "settings.yaml"
    settings_path.write_text(
        f"storage:\n  sqlite_path: {tmp_path / 'records.sqlite'}\nlogging:\n  file: null\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SETTINGS_PATH", str(settings_path))
    monkeypatch.setenv("SEGA_ID", "player@example.com")
    monkeypatch.setenv("SEGA_PASSWORD", "s3cret-pass")
    monkeypatch.setattr(entrypoint, "SyncOrchestrator", lambda settings: object())
    monkeypatch.setattr(entrypoint, "PollingScheduler", RecordingScheduler)
    monkeypatch.setattr(entrypoint.threading, "Event", InterruptedEvent)
    RecordingScheduler.instances.clear()

    package_logger = logging.getLogger(LOGGER_NAME)
    saved = list(package_logger.handlers)
    package_logger.handlers.clear()
    try:
        entrypoint.main()
    finally:
        package_logger.handlers[:] = saved
        package_logger.propagate = True

    scheduler = RecordingScheduler.instances[0]
    assert scheduler.interval == 600.0
    assert scheduler.events == ["startup", "start", ("stop", entrypoint.SHUTDOWN_TIMEOUT_SECONDS)]
    assert entrypoint.SHUTDOWN_TIMEOUT_SECONDS is not None
    assert (tmp_path / "records.sqlite").exists()
