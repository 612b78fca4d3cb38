import logging
import os
import sys
import threading
import traceback

from maimai_record.bootstrap import apply_schema
from maimai_record.config import load_settings
from maimai_record.logging_utils import configure_logging
from maimai_record.scheduler import PollingScheduler
from maimai_record.sync import CycleResult, SyncOrchestrator

logger = logging.getLogger("maimai_record.main")

SHUTDOWN_TIMEOUT_SECONDS = 5.0


def log_cycle_result(result: CycleResult) -> None:
    """
    サイクル結果をログに出す。新しいプレイ履歴があれば外部通知の対象になる。
    """
    if result.new_records:
        logger.info("新しいプレイ履歴があります: %d 件", result.playlogs_inserted)
    elif result.error:
        logger.warning("同期失敗: %s", result.error)


def main():
    """
    maimai DX NET の記録同期プロセスを起動する。
    以下の処理を順序実行する:
    1. settings.yaml と環境変数から設定を読み込む
    2. ログ出力を設定する
    3. SQLiteスキーマを適用する
    4. 起動時の同期を1回実行する（失敗してもプロセスは継続する）
    5. 定期同期を開始し、Ctrl+C で停止する
    環境変数の要件:
    - SEGA_ID: SEGA ID
    - SEGA_PASSWORD: パスワード
    - SETTINGS_PATH: 設定ファイルパス(デフォルト: "settings.yaml")
    Raises:
        Exception: 起動処理（設定読み込み・スキーマ適用）でエラーが発生した場合。
    """
    try:
        settings_path = os.environ.get("SETTINGS_PATH", "settings.yaml")
        settings = load_settings(settings_path)
        configure_logging(settings.logging.level, settings.logging.file)
        apply_schema(settings.storage.sqlite_path)
    except Exception:
        print(traceback.format_exc(), file=sys.stderr)
        raise

    orchestrator = SyncOrchestrator(settings)
    scheduler = PollingScheduler(
        orchestrator,
        interval=settings.schedule.poll_interval_seconds,
        on_result=log_cycle_result,
    )

    scheduler.run_startup_cycle()
    scheduler.start()

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("停止要求を受け付けました")
    finally:
        scheduler.stop(timeout=SHUTDOWN_TIMEOUT_SECONDS)


if __name__ == "__main__":
    main()
