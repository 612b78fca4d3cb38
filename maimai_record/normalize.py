"""
文字列正規化と曲キー生成のユーティリティ。

サイトは曲ごとの恒久IDを提供しないため、曲名を正規化してハッシュ化した
song_key を曲の同一性判定に使う。曲名が空の場合は固定の番兵文字列を
ハッシュ化し、song_key が空にならないことを保証する。
"""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Optional

EMPTY_TITLE_SENTINEL = "__empty__"


_QUOTE_MAP = {
    "“": '"',
    "”": '"',
    "„": '"',
    "‟": '"',
    "’": "'",
    "‘": "'",
    "‚": "'",
    "‛": "'",
}


def normalize_title(s: Optional[str]) -> str:
    """
    曲名を正規化して返す。

    正規化内容:
    - Unicode正規化 (NFKC)
    - 改行/タブをスペースへ置換（全角スペースは NFKC で半角になる）
    - 引用符の統一
    - trim
    - 連続空白を単一化
    - casefold

    Args:
        s: 入力文字列。

    Returns:
        正規化済み文字列。入力が None の場合は空文字を返す。
    """
    if s is None:
        return ""

    s = unicodedata.normalize("NFKC", s)

    s = s.replace("\n", " ").replace("\r", " ").replace("\t", " ")

    for k, v in _QUOTE_MAP.items():
        s = s.replace(k, v)

    s = s.strip()
    s = re.sub(r"\s+", " ", s)

    return s.casefold()


def sha256_hex(s: str) -> str:
    """文字列を SHA-256 でハッシュ化し、16進文字列で返す。"""
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def song_key(title: Optional[str]) -> str:
    """
    曲名から song_key を生成する。

    正規化後の曲名が空でなければ "title:" を付けてハッシュ化する。
    空の場合は固定値 EMPTY_TITLE_SENTINEL をハッシュ化する。スコア一覧・プレイ履歴・
    読み取りAPIのどこから呼んでも同じ曲名なら同じキーになり、スコアや画像URLなど
    変化しうる値には依存しない。

    Args:
        title: 表示上の曲名。

    Returns:
        64文字の16進文字列。常に空でない。
    """
    normalized = normalize_title(title)
    if normalized:
        return sha256_hex(f"title:{normalized}")

    return sha256_hex(EMPTY_TITLE_SENTINEL)
