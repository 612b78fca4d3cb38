"""
HTMLパーサ。

maimai DX NET の以下3種類のページHTMLをレコード型へ変換する責務を持つ。

- playerData ページ → PlayerData
- スコア一覧ページ (record/musicGenre/search/?genre=99&diff=N) → ScoreRecord のリスト
- 最近のプレイ履歴ページ (record/) → PlayLogRecord のリスト

行単位の方針:
- 数値でない達成率、ランクアイコン欠落などの項目は None とし、行自体は失敗させない
- 曲名セルが存在しない行は識別できないためスキップし、元テキストを診断用に保持する
- 行単位の問題で例外を送出してバッチ全体を中断しない

ページ単位で必須項目（プレイヤー名、累計プレイ回数など）が無い場合のみ ParseError を送出する。
"""

from __future__ import annotations

import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from itertools import chain
from typing import Any, Dict, Optional, Tuple

from bs4 import BeautifulSoup

from maimai_record.errors import ParseError
from maimai_record.models import (
    ChartType,
    DifficultyCategory,
    FcStatus,
    ParsedRows,
    PlayerData,
    PlayLogRecord,
    ScoreRank,
    ScoreRecord,
    SkippedRow,
    SyncStatus,
)
from maimai_record.normalize import song_key

logger = logging.getLogger(__name__)

_SCORE_BACK_RE = re.compile(r"^music_\w+_score_back$")
_PLAYLOG_CONTAINER_RE = re.compile(r"^playlog_\w+_container$")
_TRACK_RE = re.compile(r"TRACK\s*(\d+)", re.IGNORECASE)
_PLAYED_AT_RE = re.compile(r"(\d{4}/\d{2}/\d{2})\s+(\d{1,2}:\d{2})")
_NUMBER_RE = re.compile(r"\d[\d,]*")

_RAW_TEXT_LIMIT = 500

# スコア一覧のアイコン: music_icon_<key>.png
_SCORE_RANK_KEYS: Dict[str, ScoreRank] = {
    "sssp": ScoreRank.SSS_PLUS,
    "sss": ScoreRank.SSS,
    "ssp": ScoreRank.SS_PLUS,
    "ss": ScoreRank.SS,
    "sp": ScoreRank.S_PLUS,
    "s": ScoreRank.S,
    "aaa": ScoreRank.AAA,
    "aa": ScoreRank.AA,
    "a": ScoreRank.A,
    "bbb": ScoreRank.BBB,
    "bb": ScoreRank.BB,
    "b": ScoreRank.B,
    "c": ScoreRank.C,
    "d": ScoreRank.D,
}

# プレイ履歴のランクアイコン: playlog/<stem>.png
_PLAYLOG_RANK_STEMS: Dict[str, ScoreRank] = {
    "sssplus": ScoreRank.SSS_PLUS,
    "sss": ScoreRank.SSS,
    "ssplus": ScoreRank.SS_PLUS,
    "ss": ScoreRank.SS,
    "splus": ScoreRank.S_PLUS,
    "s": ScoreRank.S,
    "aaa": ScoreRank.AAA,
    "aa": ScoreRank.AA,
    "a": ScoreRank.A,
    "bbb": ScoreRank.BBB,
    "bb": ScoreRank.BB,
    "b": ScoreRank.B,
    "c": ScoreRank.C,
    "d": ScoreRank.D,
}

_FC_KEYS: Dict[str, FcStatus] = {
    "app": FcStatus.AP_PLUS,
    "ap": FcStatus.AP,
    "fcp": FcStatus.FC_PLUS,
    "fc": FcStatus.FC,
}

_SYNC_KEYS: Dict[str, SyncStatus] = {
    "fdxp": SyncStatus.FDX_PLUS,
    "fdx": SyncStatus.FDX,
    "fsp": SyncStatus.FS_PLUS,
    "fs": SyncStatus.FS,
    "sync": SyncStatus.SYNC,
}

_DIFF_ICONS: Dict[str, DifficultyCategory] = {
    "diff_basic.png": DifficultyCategory.BASIC,
    "diff_advanced.png": DifficultyCategory.ADVANCED,
    "diff_expert.png": DifficultyCategory.EXPERT,
    "diff_master.png": DifficultyCategory.MASTER,
    "diff_remaster.png": DifficultyCategory.REMASTER,
}


def _icon_file(src: Optional[str]) -> str:
    """画像URLからクエリ文字列を除いたファイル名を返す。"""
    if not src:
        return ""
    return src.rsplit("/", 1)[-1].split("?", 1)[0]


def _icon_stem(src: Optional[str]) -> Optional[str]:
    file = _icon_file(src)
    if not file.endswith(".png"):
        return None
    return file[: -len(".png")].lower()


def _score_icon_key(src: Optional[str]) -> Optional[str]:
    """music_icon_<key>.png の <key> を返す。"""
    stem = _icon_stem(src)
    if stem is None or not stem.startswith("music_icon_"):
        return None
    return stem[len("music_icon_"):]


def _prefixed_key(src: Optional[str], prefix: str) -> Optional[str]:
    """fc_<key>.png / sync_<key>.png の <key> を返す。dummy は None。"""
    stem = _icon_stem(src)
    if stem is None or not stem.startswith(prefix):
        return None
    key = stem[len(prefix):]
    if key == "dummy":
        return None
    return key


def _chart_type_from_src(src: Optional[str]) -> Optional[ChartType]:
    file = _icon_file(src)
    if file == "music_dx.png":
        return ChartType.DX
    if file == "music_standard.png":
        return ChartType.STD
    return None


def _merge_sync(existing: Optional[SyncStatus], candidate: Optional[SyncStatus]) -> Optional[SyncStatus]:
    """SYNC系アイコンが複数ある場合は優先度の高い方を残す。"""
    if candidate is None:
        return existing
    if existing is None or candidate.priority > existing.priority:
        return candidate
    return existing


def _raw_text(tag: Any) -> str:
    """診断用に空白を畳んだ行テキストを返す。"""
    text = " ".join(tag.get_text(" ").split())
    return text[:_RAW_TEXT_LIMIT]


def _skip(result: ParsedRows, reason: str, raw: str) -> None:
    logger.warning("行をスキップしました: %s raw=%r", reason, raw[:200])
    result.skipped.append(SkippedRow(reason=reason, raw_text=raw))


def parse_achievement(text: Optional[str]) -> Optional[int]:
    """
    達成率の文字列 ("99.8012%") を整数 (998012) に変換する。

    % を含まない、または数値として解釈できない場合は None を返す。
    float を経由せず Decimal で計算し、四捨五入 (ROUND_HALF_UP) する。

    Args:
        text: 達成率セルの文字列。

    Returns:
        達成率 × 10000 の整数、または None。
    """
    s = (text or "").strip()
    if "%" not in s:
        return None

    s = re.sub(r"[%\s,]", "", s)
    try:
        value = Decimal(s)
    except InvalidOperation:
        return None

    if not value.is_finite():
        return None

    return int((value * 10000).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_dx_score_pair(text: Optional[str]) -> Optional[Tuple[int, int]]:
    """
    "1,234 / 1,500" 形式の DXスコアを (1234, 1500) に変換する。

    区切りの "/" が無い、または左右どちらかに数字が無い場合は None。
    """
    if not text or "/" not in text:
        return None

    left, right = text.split("/", 1)
    left_digits = re.sub(r"\D", "", left)
    right_digits = re.sub(r"\D", "", right.split("/", 1)[0])
    if not left_digits or not right_digits:
        return None

    return int(left_digits), int(right_digits)


def _number_after(haystack: str, needle: str) -> Optional[int]:
    """haystack 中の needle の直後に現れる数値を返す。"""
    pos = haystack.find(needle)
    if pos < 0:
        return None
    m = _NUMBER_RE.search(haystack, pos + len(needle))
    if not m:
        return None
    return int(m.group(0).replace(",", ""))


def parse_player_data(html: str) -> PlayerData:
    """
    playerData ページからプレイヤー情報を抽出する。

    Args:
        html: playerData ページのHTML文字列。

    Returns:
        PlayerData。

    Raises:
        ParseError: プレイヤー名・レーティング・累計プレイ回数のいずれかが取得できない場合。
    """
    soup = BeautifulSoup(html, "html.parser")

    name_tag = soup.select_one(".name_block")
    user_name = name_tag.get_text("", strip=True) if name_tag else ""
    if not user_name:
        raise ParseError("missing user name (.name_block)")

    rating_tag = soup.select_one(".rating_block")
    rating_digits = re.sub(r"\D", "", rating_tag.get_text("")) if rating_tag else ""
    if not rating_digits:
        raise ParseError("missing rating (.rating_block)")

    counts_text = ""
    for tag in soup.select("div.m_5.m_b_5.t_r.f_12"):
        text = tag.get_text(" ", strip=True)
        if "total play count" in text:
            counts_text = text
            break

    total = _number_after(counts_text, "maimaiDX total play count")
    if total is None:
        raise ParseError("missing total play count")

    return PlayerData(
        user_name=user_name,
        rating=int(rating_digits),
        total_play_count=total,
        current_version_play_count=_number_after(counts_text, "play count of current version"),
    )


def _find_chart_type(entry: Any) -> ChartType:
    """
    スコア一覧の1行について譜面種別アイコンを探す。

    アイコンは行の外側のラッパー要素に置かれるため祖先方向へ探索する。
    他の行も含む祖先まで上がった場合は誤検出になるため探索を打ち切り、STD とみなす。
    """
    for scope in chain([entry], entry.parents):
        if scope is not entry and len(scope.find_all("div", class_=_SCORE_BACK_RE)) > 1:
            break
        icon = scope.select_one("img.music_kind_icon")
        if icon is not None:
            chart_type = _chart_type_from_src(icon.get("src"))
            if chart_type is not None:
                return chart_type
    return ChartType.STD


def parse_score_list(html: str, diff: int) -> ParsedRows[ScoreRecord]:
    """
    スコア一覧ページから ScoreRecord のリストを抽出する。

    Args:
        html: スコア一覧ページのHTML文字列。
        diff: 難易度 (0:BASIC 〜 4:Re:MASTER)。

    Returns:
        ParsedRows[ScoreRecord]。曲名ブロックの無い行は skipped に入る。

    Raises:
        ParseError: diff が 0..4 の範囲外の場合。
    """
    try:
        diff_category = DifficultyCategory.from_index(diff)
    except ValueError as e:
        raise ParseError(str(e)) from e

    soup = BeautifulSoup(html, "html.parser")
    result: ParsedRows[ScoreRecord] = ParsedRows()

    for entry in soup.find_all("div", class_=_SCORE_BACK_RE):
        raw = _raw_text(entry)

        title_tag = entry.select_one(".music_name_block")
        if title_tag is None:
            _skip(result, "missing .music_name_block", raw)
            continue
        title = title_tag.get_text("").strip()

        idx_tag = entry.select_one('input[name="idx"]')
        source_idx = idx_tag.get("value") if idx_tag is not None else None

        level_tag = entry.select_one(".music_lv_block")
        level = level_tag.get_text("", strip=True) if level_tag is not None else ""

        achievement = None
        dx_pair = None
        for block in entry.select(".music_score_block"):
            text = block.get_text("", strip=True)
            if achievement is None:
                achievement = parse_achievement(text)
                if achievement is not None:
                    continue
            if dx_pair is None:
                dx_pair = parse_dx_score_pair(text)

        rank = None
        fc = None
        sync = None
        for img in entry.find_all("img"):
            key = _score_icon_key(img.get("src"))
            if key is None:
                continue
            if rank is None:
                rank = _SCORE_RANK_KEYS.get(key)
            if fc is None:
                fc = _FC_KEYS.get(key)
            sync = _merge_sync(sync, _SYNC_KEYS.get(key))

        result.rows.append(
            ScoreRecord(
                song_key=song_key(title),
                title=title,
                chart_type=_find_chart_type(entry),
                diff_category=diff_category,
                level=level or None,
                achievement=achievement,
                rank=rank,
                fc=fc,
                sync=sync,
                dx_score=dx_pair[0] if dx_pair else None,
                dx_score_max=dx_pair[1] if dx_pair else None,
                source_idx=source_idx,
            )
        )

    return result


def parse_subtitle(text: Optional[str]) -> Tuple[Optional[int], Optional[str]]:
    """
    プレイ履歴の見出し ("TRACK 01  2026/01/23 12:34") から (トラック番号, プレイ日時) を返す。

    取得できない項目は None。
    """
    s = (text or "").replace("\u00a0", " ").replace("\u3000", " ")

    track = None
    m = _TRACK_RE.search(s)
    if m:
        track = int(m.group(1))

    played_at = None
    m = _PLAYED_AT_RE.search(s)
    if m:
        hour, minute = m.group(2).split(":")
        played_at = f"{m.group(1)} {int(hour):02d}:{minute}"

    return track, played_at


def _find_playlog_entry(top: Any) -> Optional[Any]:
    """playlog_top_container を含む1プレイ分のブロック (p_10 t_l v_b) を返す。"""
    for parent in top.parents:
        classes = set(parent.get("class") or [])
        if {"p_10", "t_l", "v_b"} <= classes:
            return parent
    return None


def _title_without_level(block: Any, level_tag: Optional[Any]) -> str:
    """曲名ブロックからレベル表示部分を除いた曲名を返す。"""
    parts = []
    for s in block.find_all(string=True):
        if level_tag is not None and any(p is level_tag for p in s.parents):
            continue
        parts.append(str(s))
    return "".join(parts).strip()


def parse_recent(html: str) -> ParsedRows[PlayLogRecord]:
    """
    最近のプレイ履歴ページから PlayLogRecord のリストを抽出する。

    ページ上の並び順（新しい順）を保持する。credit_play_count と first_play は
    ここでは付与しない。

    Args:
        html: record ページのHTML文字列。

    Returns:
        ParsedRows[PlayLogRecord]。曲名ブロックの無い行は skipped に入る。
    """
    soup = BeautifulSoup(html, "html.parser")
    result: ParsedRows[PlayLogRecord] = ParsedRows()

    for top in soup.select(".playlog_top_container"):
        entry = _find_playlog_entry(top)
        if entry is None:
            _skip(result, "missing playlog entry block", _raw_text(top))
            continue
        raw = _raw_text(entry)

        diff_img = entry.select_one("img.playlog_diff")
        diff_category = _DIFF_ICONS.get(_icon_file(diff_img.get("src"))) if diff_img is not None else None

        subtitle = entry.select_one(".sub_title")
        track, played_at = parse_subtitle(subtitle.get_text(" ") if subtitle is not None else None)

        song_block = None
        for container in entry.find_all("div", class_=_PLAYLOG_CONTAINER_RE):
            song_block = container.select_one("div.basic_block")
            if song_block is not None:
                break
        if song_block is None:
            _skip(result, "missing title block (div.basic_block)", raw)
            continue

        level_tag = song_block.select_one(".playlog_level_icon")
        level = level_tag.get_text("", strip=True) if level_tag is not None else ""
        title = _title_without_level(song_block, level_tag)

        idx_tag = entry.select_one('input[name="idx"]')
        playlog_idx = (idx_tag.get("value") or "").strip() if idx_tag is not None else ""

        achievement_tag = entry.select_one(".playlog_achievement_txt")
        achievement = parse_achievement(achievement_tag.get_text("", strip=True)) if achievement_tag else None

        rank_img = entry.select_one("img.playlog_scorerank")
        rank_stem = _icon_stem(rank_img.get("src")) if rank_img is not None else None
        rank = _PLAYLOG_RANK_STEMS.get(rank_stem or "")

        dx_tag = entry.select_one(".playlog_score_block .white")
        dx_pair = parse_dx_score_pair(dx_tag.get_text("", strip=True)) if dx_tag is not None else None

        kind_img = entry.select_one("img.playlog_music_kind_icon")
        chart_type = (_chart_type_from_src(kind_img.get("src")) if kind_img is not None else None) or ChartType.STD

        fc = None
        sync = None
        new_record = entry.select_one("img.playlog_achievement_newrecord") is not None
        for img in entry.find_all("img"):
            src = img.get("src")
            if fc is None:
                fc = _FC_KEYS.get(_prefixed_key(src, "fc_") or "")
            sync = _merge_sync(sync, _SYNC_KEYS.get(_prefixed_key(src, "sync_") or ""))
            if _icon_file(src) == "newrecord.png":
                new_record = True

        result.rows.append(
            PlayLogRecord(
                playlog_idx=playlog_idx or None,
                song_key=song_key(title),
                title=title,
                chart_type=chart_type,
                diff_category=diff_category,
                level=level or None,
                track=track,
                played_at=played_at,
                achievement=achievement,
                achievement_new_record=new_record,
                rank=rank,
                fc=fc,
                sync=sync,
                dx_score=dx_pair[0] if dx_pair else None,
                dx_score_max=dx_pair[1] if dx_pair else None,
            )
        )

    return result
