"""
同期サイクルの定期実行。

起動時に1回同期的に実行し、その後はバックグラウンドスレッドで一定間隔ごとに実行する。
前回のサイクルが実行中の間に来たティックは実行せずに読み飛ばす。
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from maimai_record.sync import CycleResult, SyncOrchestrator

logger = logging.getLogger(__name__)


class PollingScheduler:
    """
    SyncOrchestrator を一定間隔で実行するスケジューラ。

    Attributes:
        orchestrator: 実行対象。
        interval: 実行間隔（秒）。
        on_result: 各サイクルの結果を受け取るコールバック（通知処理など）。
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval: float,
        on_result: Optional[Callable[[CycleResult], None]] = None,
    ):
        self.orchestrator = orchestrator
        self.interval = interval
        self.on_result = on_result
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> Optional[CycleResult]:
        """
        サイクルを1回実行する。

        別のサイクルが実行中の場合は何もせず None を返す。
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("前回の同期サイクルが実行中のためスキップします")
            return None

        try:
            result = self.orchestrator.run_cycle()
        finally:
            self._cycle_lock.release()

        if self.on_result is not None:
            try:
                self.on_result(result)
            except Exception:
                logger.exception("on_result コールバックが失敗しました")
        return result

    def run_startup_cycle(self) -> Optional[CycleResult]:
        """起動時の同期を呼び出し元スレッドで実行する。"""
        logger.info("起動時の同期を実行します")
        return self.tick()

    def _loop(self) -> None:
        logger.info("定期同期を開始しました (interval=%.0fs)", self.interval)
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("定期同期の実行中に予期しないエラーが発生しました")
        logger.info("定期同期を停止しました")

    def start(self) -> None:
        """バックグラウンドスレッドで定期実行を開始する。"""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="record-sync-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        以降のティックを止める。実行中のサイクルは中断しない。

        Args:
            timeout: スレッド終了を待つ秒数。None の場合は待たない。
        """
        self._stop_event.set()
        if self._thread is not None and timeout is not None:
            self._thread.join(timeout)
