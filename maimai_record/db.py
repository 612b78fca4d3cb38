"""
SQLiteへの記録保存処理と読み取りAPIを提供するモジュール。

処理方針:
- 1サイクルの書き込み（スコア・プレイ履歴・プレイヤー状態）は transaction() 内で
  まとめて実行し、途中で失敗した場合はサイクル開始前の状態に戻す
- scores は (song_key, chart_type, diff_category) を一意キーとして upsert する
- playlogs は playlog_idx を一意キーとした追記のみで、既存行は更新しない
- player_snapshot は固定キー "player" の1行を丸ごと上書きする
- WALモードで接続し、読み取り側はサイクル前後いずれかのコミット済み状態だけを見る

スキーマは bootstrap.apply_schema() で事前に作成されている前提とする。
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from maimai_record.errors import StorageError
from maimai_record.models import (
    ChartType,
    DifficultyCategory,
    FcStatus,
    PlayerSnapshot,
    PlayLogRecord,
    ScoreRank,
    ScoreRecord,
    SyncStatus,
)
from maimai_record.normalize import song_key

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "player"
DAY_BOUNDARY_HOUR = 4
RECENT_LIMIT_MAX = 500

ChartKey = Tuple[str, str, str]


def now_iso() -> str:
    """
    現在時刻(UTC)をISO 8601形式で返す。

    Returns:
        UTC時刻のISO文字列。
    """
    return datetime.now(timezone.utc).isoformat()


def connect_db(path: str) -> sqlite3.Connection:
    """
    SQLite DBへ接続する。

    トランザクションは transaction() で明示的に開始するため autocommit で開く。

    Args:
        path: SQLiteファイルパス。

    Returns:
        sqlite3.Connectionオブジェクト。

    Raises:
        StorageError: 接続に失敗した場合。
    """
    try:
        con = sqlite3.connect(path, timeout=30, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL")
        con.execute("PRAGMA synchronous=NORMAL")
    except sqlite3.Error as e:
        raise StorageError(f"connect sqlite failed: {path} ({e})") from e
    return con


@contextmanager
def transaction(con: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """
    1つの書き込みトランザクションを開始する。

    ブロック内で例外が発生した場合はロールバックし、sqlite3.Error は StorageError に変換する。

    Raises:
        StorageError: 開始・実行・コミットのいずれかで SQLite エラーが発生した場合。
    """
    try:
        con.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as e:
        raise StorageError(f"begin transaction failed: {e}") from e

    try:
        yield con
    except sqlite3.Error as e:
        con.execute("ROLLBACK")
        raise StorageError(f"transaction failed and was rolled back: {e}") from e
    except BaseException:
        con.execute("ROLLBACK")
        raise

    try:
        con.execute("COMMIT")
    except sqlite3.Error as e:
        if con.in_transaction:
            con.execute("ROLLBACK")
        raise StorageError(f"commit failed: {e}") from e


def _enum_value(value) -> Optional[str]:
    return value.value if value is not None else None


def _as_str(value: Union[str, ChartType, DifficultyCategory]) -> str:
    return value.value if isinstance(value, (ChartType, DifficultyCategory)) else str(value)


# ----------------------------------------------------------------------
# 書き込み
# ----------------------------------------------------------------------


def upsert_scores(con: sqlite3.Connection, scores: Sequence[ScoreRecord], scraped_at: str) -> int:
    """
    スコアを scores テーブルに upsert する。

    同じ一意キーの行が存在する場合は達成状態と scraped_at を上書きする。
    同じバッチを何度適用しても行数は変わらない。

    Args:
        con: SQLite接続。
        scores: ScoreRecord のリスト。
        scraped_at: 取得時刻 (ISO 8601)。

    Returns:
        処理した件数。
    """
    con.executemany(
        """
        INSERT INTO scores (
            song_key, title, chart_type, diff_category, level,
            achievement, rank, fc, sync,
            dx_score, dx_score_max, source_idx, scraped_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(song_key, chart_type, diff_category) DO UPDATE SET
            title = excluded.title,
            level = excluded.level,
            achievement = excluded.achievement,
            rank = excluded.rank,
            fc = excluded.fc,
            sync = excluded.sync,
            dx_score = excluded.dx_score,
            dx_score_max = excluded.dx_score_max,
            source_idx = excluded.source_idx,
            scraped_at = excluded.scraped_at
        """,
        [
            (
                s.song_key,
                s.title,
                s.chart_type.value,
                s.diff_category.value,
                s.level,
                s.achievement,
                _enum_value(s.rank),
                _enum_value(s.fc),
                _enum_value(s.sync),
                s.dx_score,
                s.dx_score_max,
                s.source_idx,
                scraped_at,
            )
            for s in scores
        ],
    )
    return len(scores)


def upsert_playlogs(con: sqlite3.Connection, playlogs: Iterable[PlayLogRecord], scraped_at: str) -> int:
    """
    プレイ履歴を playlogs テーブルに追加する。

    playlog_idx が既に存在する行は変更しない（追記のみ）。
    playlog_idx の無いレコードは保存できないためスキップする。

    Args:
        con: SQLite接続。
        playlogs: PlayLogRecord のリスト。
        scraped_at: 取得時刻 (ISO 8601)。

    Returns:
        新規に追加した件数。
    """
    inserted = 0
    without_idx = 0
    for p in playlogs:
        if not p.playlog_idx:
            without_idx += 1
            continue

        cur = con.execute(
            """
            INSERT INTO playlogs (
                playlog_idx, played_at, track, credit_play_count,
                song_key, title, chart_type, diff_category, level,
                achievement, achievement_new_record, first_play,
                rank, fc, sync, dx_score, dx_score_max, scraped_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(playlog_idx) DO NOTHING
            """,
            (
                p.playlog_idx,
                p.played_at,
                p.track,
                p.credit_play_count,
                p.song_key,
                p.title,
                p.chart_type.value,
                _enum_value(p.diff_category),
                p.level,
                p.achievement,
                int(p.achievement_new_record),
                int(p.first_play),
                _enum_value(p.rank),
                _enum_value(p.fc),
                _enum_value(p.sync),
                p.dx_score,
                p.dx_score_max,
                scraped_at,
            ),
        )
        inserted += cur.rowcount

    if without_idx:
        logger.warning("playlog_idx が無いプレイ履歴をスキップしました: %d 件", without_idx)
    return inserted


def persist_snapshot(con: sqlite3.Connection, snapshot: PlayerSnapshot, updated_at: Optional[str] = None) -> None:
    """
    プレイヤー状態を固定キーの1行として保存する。

    Args:
        con: SQLite接続。
        snapshot: 保存する PlayerSnapshot。
        updated_at: 更新時刻。省略時は snapshot.updated_at、それも無ければ現在時刻。
    """
    con.execute(
        """
        INSERT INTO player_snapshot (
            snapshot_key, user_name, total_play_count, rating,
            current_version_play_count, last_sync_kind, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(snapshot_key) DO UPDATE SET
            user_name = excluded.user_name,
            total_play_count = excluded.total_play_count,
            rating = excluded.rating,
            current_version_play_count = excluded.current_version_play_count,
            last_sync_kind = excluded.last_sync_kind,
            updated_at = excluded.updated_at
        """,
        (
            SNAPSHOT_KEY,
            snapshot.user_name,
            snapshot.total_play_count,
            snapshot.rating,
            snapshot.current_version_play_count,
            snapshot.last_sync_kind,
            updated_at or snapshot.updated_at or now_iso(),
        ),
    )


# ----------------------------------------------------------------------
# 読み取りAPI
# ----------------------------------------------------------------------


def get_player_snapshot(con: sqlite3.Connection) -> Optional[PlayerSnapshot]:
    """保存済みのプレイヤー状態を返す。一度も同期していなければ None。"""
    row = con.execute(
        "SELECT * FROM player_snapshot WHERE snapshot_key=?",
        (SNAPSHOT_KEY,),
    ).fetchone()
    if row is None:
        return None

    return PlayerSnapshot(
        user_name=row["user_name"],
        total_play_count=int(row["total_play_count"]),
        rating=int(row["rating"]),
        current_version_play_count=row["current_version_play_count"],
        last_sync_kind=row["last_sync_kind"],
        updated_at=row["updated_at"],
    )


def _score_from_row(row: sqlite3.Row) -> ScoreRecord:
    return ScoreRecord(
        song_key=row["song_key"],
        title=row["title"],
        chart_type=ChartType(row["chart_type"]),
        diff_category=DifficultyCategory(row["diff_category"]),
        level=row["level"],
        achievement=row["achievement"],
        rank=ScoreRank(row["rank"]) if row["rank"] else None,
        fc=FcStatus(row["fc"]) if row["fc"] else None,
        sync=SyncStatus(row["sync"]) if row["sync"] else None,
        dx_score=row["dx_score"],
        dx_score_max=row["dx_score_max"],
        source_idx=row["source_idx"],
    )


def _playlog_from_row(row: sqlite3.Row) -> PlayLogRecord:
    return PlayLogRecord(
        playlog_idx=row["playlog_idx"],
        song_key=row["song_key"],
        title=row["title"],
        chart_type=ChartType(row["chart_type"]),
        diff_category=DifficultyCategory(row["diff_category"]) if row["diff_category"] else None,
        level=row["level"],
        track=row["track"],
        played_at=row["played_at"],
        achievement=row["achievement"],
        achievement_new_record=bool(row["achievement_new_record"]),
        rank=ScoreRank(row["rank"]) if row["rank"] else None,
        fc=FcStatus(row["fc"]) if row["fc"] else None,
        sync=SyncStatus(row["sync"]) if row["sync"] else None,
        dx_score=row["dx_score"],
        dx_score_max=row["dx_score_max"],
        credit_play_count=row["credit_play_count"],
        first_play=bool(row["first_play"]),
    )


def get_score(
    con: sqlite3.Connection,
    title: str,
    chart_type: Union[str, ChartType],
    diff_category: Union[str, DifficultyCategory],
) -> Optional[ScoreRecord]:
    """
    (曲名, 譜面種別, 難易度) でスコアを1件取得する。

    曲名は song_key と同じ正規化で照合するため、大文字小文字や前後空白の違いは無視される。

    Args:
        con: SQLite接続。
        title: 曲名。
        chart_type: "STD"/"DX" または ChartType。
        diff_category: "BASIC".."Re:MASTER" または DifficultyCategory。

    Returns:
        ScoreRecord。存在しない場合は None。
    """
    row = con.execute(
        """
        SELECT * FROM scores
        WHERE song_key=? AND chart_type=? AND diff_category=?
        """,
        (song_key(title), _as_str(chart_type), _as_str(diff_category)),
    ).fetchone()
    return _score_from_row(row) if row is not None else None


def count_scores(con: sqlite3.Connection) -> int:
    return int(con.execute("SELECT COUNT(*) FROM scores").fetchone()[0])


def count_playlogs(con: sqlite3.Connection) -> int:
    return int(con.execute("SELECT COUNT(*) FROM playlogs").fetchone()[0])


def load_score_chart_keys(con: sqlite3.Connection) -> Set[ChartKey]:
    """達成率が記録済みのスコアの (song_key, chart_type, diff_category) 集合を返す。"""
    rows = con.execute(
        "SELECT song_key, chart_type, diff_category FROM scores WHERE achievement IS NOT NULL"
    ).fetchall()
    return {(r[0], r[1], r[2]) for r in rows}


def load_played_chart_keys(con: sqlite3.Connection) -> Set[ChartKey]:
    """保存済みプレイ履歴に現れる (song_key, chart_type, diff_category) 集合を返す。"""
    rows = con.execute(
        "SELECT DISTINCT song_key, chart_type, diff_category FROM playlogs WHERE diff_category IS NOT NULL"
    ).fetchall()
    return {(r[0], r[1], r[2]) for r in rows}


def list_recent_playlogs(con: sqlite3.Connection, limit: int = 50) -> List[PlayLogRecord]:
    """
    新しい順にプレイ履歴を返す。

    Args:
        con: SQLite接続。
        limit: 件数。1..500 に丸める。
    """
    limit = max(1, min(int(limit), RECENT_LIMIT_MAX))
    rows = con.execute(
        """
        SELECT * FROM playlogs
        ORDER BY played_at DESC, credit_play_count DESC, track DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return [_playlog_from_row(r) for r in rows]


def game_day(now: Optional[datetime] = None) -> date:
    """
    現在のゲーム日付を返す。04:00 より前は前日扱い。
    """
    if now is None:
        now = datetime.now()
    if now.hour < DAY_BOUNDARY_HOUR:
        return (now - timedelta(days=1)).date()
    return now.date()


def day_range(day: date) -> Tuple[str, str]:
    """ゲーム日付の範囲 [当日 04:00, 翌日 04:00) を played_at と同じ書式で返す。"""
    end = day + timedelta(days=1)
    return (
        f"{day.strftime('%Y/%m/%d')} {DAY_BOUNDARY_HOUR:02d}:00",
        f"{end.strftime('%Y/%m/%d')} {DAY_BOUNDARY_HOUR:02d}:00",
    )


def list_playlogs_for_day(
    con: sqlite3.Connection,
    day: Optional[date] = None,
    now: Optional[datetime] = None,
) -> List[PlayLogRecord]:
    """
    指定ゲーム日付のプレイ履歴を古い順に返す。

    Args:
        con: SQLite接続。
        day: 対象日付。省略時は game_day(now)。
        now: day 省略時の基準時刻。
    """
    if day is None:
        day = game_day(now)
    start, end = day_range(day)
    rows = con.execute(
        """
        SELECT * FROM playlogs
        WHERE played_at >= ? AND played_at < ?
        ORDER BY played_at ASC, credit_play_count ASC, track ASC
        """,
        (start, end),
    ).fetchall()
    return [_playlog_from_row(r) for r in rows]


@dataclass(frozen=True)
class PlaySummary:
    """
    プレイ履歴の集計。

    Attributes:
        tracks: プレイ曲数。
        credits: クレジット数 (credit_play_count の種類数)。
        first_plays: 初プレイ数。
        new_records: 初プレイを除いた自己ベスト更新数。
    """

    tracks: int
    credits: int
    first_plays: int
    new_records: int


def summarize_playlogs(playlogs: Sequence[PlayLogRecord]) -> PlaySummary:
    """プレイ履歴のリストを集計する。"""
    first_plays = sum(1 for p in playlogs if p.first_play)
    new_record_flags = sum(1 for p in playlogs if p.achievement_new_record)
    credits = {p.credit_play_count for p in playlogs if p.credit_play_count is not None}
    return PlaySummary(
        tracks=len(playlogs),
        credits=len(credits),
        first_plays=first_plays,
        new_records=max(new_record_flags - first_plays, 0),
    )
