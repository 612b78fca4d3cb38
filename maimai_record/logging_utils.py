"""ログ出力の初期化。"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOGGER_NAME = "maimai_record"

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    パッケージのロガーにコンソール出力と（指定時は）ローテーションファイル出力を設定する。

    既にハンドラが設定済みの場合は何もしない。
    ファイルを作成できない場合はコンソール出力のみで続行する。

    Args:
        level: ログレベル名 (DEBUG/INFO/WARNING/ERROR)。
        log_file: ログファイルパス。None の場合はファイル出力しない。

    Returns:
        設定済みのパッケージロガー。
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(_FORMAT, _DATE_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                path,
                maxBytes=1_000_000,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("ログファイルを開けないためコンソールのみに出力します: %s (%s)", path, e)
        else:
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger
