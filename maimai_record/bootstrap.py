"""
SQLite スキーマの初期化（外部ブートストラップ手順）。

同期処理本体はテーブルの作成・変更を行わない。プロセス起動時に main.py から
一度だけ呼び出し、schema.sql を適用する。
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def apply_schema(sqlite_path: str) -> None:
    """
    schema.sql を適用する。CREATE ... IF NOT EXISTS のみのため何度実行してもよい。

    Args:
        sqlite_path: SQLiteファイルパス。親ディレクトリが無ければ作成する。
    """
    if sqlite_path != ":memory:":
        Path(sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    script = SCHEMA_PATH.read_text(encoding="utf-8")
    con = sqlite3.connect(sqlite_path)
    try:
        con.executescript(script)
        con.commit()
    finally:
        con.close()

    logger.debug("スキーマを適用しました: %s", sqlite_path)
