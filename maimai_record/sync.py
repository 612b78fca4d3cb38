"""
同期処理（差分ポーリング）のオーケストレーション。

1サイクルの流れ:
    IDLE -> CHECKING_MAINTENANCE_WINDOW -> AUTHENTICATING -> FETCHING_PLAYER_DATA
    -> DECIDING_SYNC_KIND -> {FULL_SYNC | INCREMENTAL_SYNC | NO_OP}
    -> PERSISTING_SNAPSHOT -> DONE
どの状態からでも回復不能なエラーで FAILED へ遷移する。

処理方針:
- 累計プレイ回数 (total_play_count) を前回保存値と比較して取得範囲を決める
- ページ取得は逐次で、取得間に request_interval_seconds の待機を入れる
- すべての取得・パースが終わってから1トランザクションで書き込む
- run_cycle() は例外を送出せず、結果を CycleResult で返す
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Sequence, Set

from maimai_record import db
from maimai_record.config import Settings
from maimai_record.errors import MaintenanceWindowError
from maimai_record.maintenance import is_maintenance_window
from maimai_record.models import PlayerData, PlayerSnapshot, PlayLogRecord, ScoreRecord
from maimai_record.parser import parse_player_data, parse_recent, parse_score_list
from maimai_record.session import SessionManager

logger = logging.getLogger(__name__)

DIFF_INDEXES = (0, 1, 2, 3, 4)


class SyncState(Enum):
    """同期サイクルの状態。"""

    IDLE = "idle"
    CHECKING_MAINTENANCE_WINDOW = "checking_maintenance_window"
    AUTHENTICATING = "authenticating"
    FETCHING_PLAYER_DATA = "fetching_player_data"
    DECIDING_SYNC_KIND = "deciding_sync_kind"
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    NO_OP = "no_op"
    PERSISTING_SNAPSHOT = "persisting_snapshot"
    DONE = "done"
    FAILED = "failed"


class SyncKind(Enum):
    """累計プレイ回数の比較で決まる同期種別。"""

    FULL = "full"
    INCREMENTAL = "incremental"
    NO_OP = "no_op"


@dataclass(frozen=True)
class CycleResult:
    """
    1サイクルの結果。

    Attributes:
        state: 終了時の状態 (DONE / FAILED)。
        sync_kind: 判定した同期種別。判定前に終了した場合は None。
        pages_fetched: 取得したページ数（ログイン確認を除く）。
        scores_upserted: upsert したスコア件数。
        playlogs_inserted: 新規追加したプレイ履歴件数。
        skipped_rows: パーサがスキップした行数。
        new_records: 差分同期で新しいプレイ履歴を保存した場合 True。通知判定に使う。
        skipped_maintenance: メンテナンス時間帯のため何もしなかった場合 True。
        error: 失敗時のエラーメッセージ。
    """

    state: SyncState
    sync_kind: Optional[SyncKind] = None
    pages_fetched: int = 0
    scores_upserted: int = 0
    playlogs_inserted: int = 0
    skipped_rows: int = 0
    new_records: bool = False
    skipped_maintenance: bool = False
    error: Optional[str] = None


def decide_sync_kind(previous: Optional[PlayerSnapshot], current: PlayerData) -> SyncKind:
    """
    前回保存値と今回の累計プレイ回数から同期種別を決める。

    - 保存値が無い / 0 / 今回より大きい（減少） -> FULL
    - 変化あり -> INCREMENTAL
    - 変化なし -> NO_OP
    """
    if previous is None or previous.total_play_count <= 0:
        return SyncKind.FULL
    if current.total_play_count < previous.total_play_count:
        logger.warning(
            "累計プレイ回数が減少しました (stored=%d, current=%d)。未同期として全件同期します",
            previous.total_play_count,
            current.total_play_count,
        )
        return SyncKind.FULL
    if current.total_play_count != previous.total_play_count:
        return SyncKind.INCREMENTAL
    return SyncKind.NO_OP


def annotate_credit_play_counts(rows: Sequence[PlayLogRecord], total_play_count: int) -> List[PlayLogRecord]:
    """
    プレイ履歴（新しい順）にクレジット番号 (credit_play_count) を付与する。

    最新のクレジットが total_play_count、1つ前が total_play_count - 1 となる。
    一覧の末尾に TRACK 01 を含まない途中のクレジットが残る場合は切り捨てる。
    TRACK 01 が1件も無い場合は空リストを返す。

    Args:
        rows: parse_recent() の結果（新しい順）。
        total_play_count: 今回取得した累計プレイ回数。

    Returns:
        credit_play_count を設定した新しいリスト。
    """
    last_track_01 = None
    for i, row in enumerate(rows):
        if row.track == 1:
            last_track_01 = i
    if last_track_01 is None:
        if rows:
            logger.warning("TRACK 01 が見つからないためプレイ履歴を保存しません: %d 件", len(rows))
        return []

    annotated: List[PlayLogRecord] = []
    credit_idx = 0
    for row in rows[: last_track_01 + 1]:
        annotated.append(replace(row, credit_play_count=max(total_play_count - credit_idx, 0)))
        if row.track == 1:
            credit_idx += 1
    return annotated


def mark_first_plays(
    rows: Sequence[PlayLogRecord],
    score_keys: Set[tuple],
    played_keys: Set[tuple],
) -> List[PlayLogRecord]:
    """
    初プレイの譜面に first_play を付与する。

    条件:
    - 新記録バッジ (achievement_new_record) が付いている
    - (song_key, chart_type, diff_category) がサイクル開始時点のスコア表に無く、
      過去のプレイ履歴にも無い
    - 同じ譜面がバッチ内に複数ある場合は最も古いプレイのみ

    スコア表が空の場合は比較できないため何も付与しない。

    Args:
        rows: プレイ履歴（新しい順）。
        score_keys: db.load_score_chart_keys() の結果。
        played_keys: db.load_played_chart_keys() の結果。
    """
    if not score_keys:
        return list(rows)

    marked = list(rows)
    seen: Set[tuple] = set()
    for i in range(len(marked) - 1, -1, -1):
        row = marked[i]
        key = row.chart_key
        if key is None or key in seen:
            continue
        seen.add(key)
        if not row.achievement_new_record:
            continue
        if key in score_keys or key in played_keys:
            continue
        marked[i] = replace(row, first_play=True)
    return marked


class SyncOrchestrator:
    """
    セッション管理・パーサ・DB保存を組み合わせて1サイクルを実行する。

    SessionManager はサイクルをまたいで再利用し、DB接続はサイクルごとに開閉する。
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[SessionManager] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.settings = settings
        self.session = session if session is not None else SessionManager(settings, sleep=sleep, clock=clock)
        self.state = SyncState.IDLE
        self._sleep = sleep
        self._clock = clock
        self._pages_fetched = 0
        self._sync_kind: Optional[SyncKind] = None

    def _transition(self, state: SyncState) -> None:
        logger.debug("state: %s -> %s", self.state.value, state.value)
        self.state = state

    def _fetch(self, url: str) -> str:
        if self._pages_fetched > 0:
            self._sleep(self.settings.site.request_interval_seconds)
        html = self.session.fetch_html(url)
        self._pages_fetched += 1
        return html

    def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        同期を1回実行する。

        Args:
            now: メンテナンス判定に使う現在時刻。省略時は clock()。

        Returns:
            CycleResult。失敗しても例外は送出しない。
        """
        self._pages_fetched = 0
        self._sync_kind = None
        self._transition(SyncState.CHECKING_MAINTENANCE_WINDOW)

        schedule = self.settings.schedule
        current_time = now if now is not None else self._clock()
        if is_maintenance_window(current_time, schedule.maintenance_start_hour, schedule.maintenance_end_hour):
            logger.info(
                "メンテナンス時間帯 (%02d:00-%02d:00) のため同期をスキップします",
                schedule.maintenance_start_hour,
                schedule.maintenance_end_hour,
            )
            self._transition(SyncState.DONE)
            return CycleResult(state=SyncState.DONE, skipped_maintenance=True)

        con: Optional[sqlite3.Connection] = None
        try:
            con = db.connect_db(self.settings.storage.sqlite_path)
            result = self._run(con)
            self._transition(SyncState.DONE)
            return result
        except MaintenanceWindowError as e:
            logger.info("同期中にメンテナンス時間帯に入ったため中断します: %s", e)
            self._transition(SyncState.DONE)
            return CycleResult(
                state=SyncState.DONE,
                pages_fetched=self._pages_fetched,
                skipped_maintenance=True,
            )
        except Exception as e:
            failed_in = self.state
            logger.exception("同期サイクルが失敗しました (state=%s)", failed_in.value)
            self._transition(SyncState.FAILED)
            return CycleResult(
                state=SyncState.FAILED,
                sync_kind=self._sync_kind,
                pages_fetched=self._pages_fetched,
                error=f"{failed_in.value}: {type(e).__name__}: {e}",
            )
        finally:
            if con is not None:
                con.close()

    def _run(self, con: sqlite3.Connection) -> CycleResult:
        previous = db.get_player_snapshot(con)

        self._transition(SyncState.AUTHENTICATING)
        self.session.ensure_authenticated()

        self._transition(SyncState.FETCHING_PLAYER_DATA)
        player = parse_player_data(self._fetch(self.session.player_data_url))
        logger.info(
            "playerData: rating=%d total_play_count=%d",
            player.rating,
            player.total_play_count,
        )

        self._transition(SyncState.DECIDING_SYNC_KIND)
        sync_kind = decide_sync_kind(previous, player)
        self._sync_kind = sync_kind
        logger.info(
            "同期種別: %s (stored=%s, current=%d)",
            sync_kind.value,
            previous.total_play_count if previous is not None else None,
            player.total_play_count,
        )

        if sync_kind == SyncKind.NO_OP:
            self._transition(SyncState.NO_OP)
            return CycleResult(state=SyncState.DONE, sync_kind=sync_kind, pages_fetched=self._pages_fetched)

        scores: List[ScoreRecord] = []
        skipped = 0
        if sync_kind == SyncKind.FULL:
            self._transition(SyncState.FULL_SYNC)
            for diff in DIFF_INDEXES:
                parsed_scores = parse_score_list(self._fetch(self.session.scores_url(diff)), diff)
                scores.extend(parsed_scores.rows)
                skipped += len(parsed_scores.skipped)
                logger.info("スコア一覧 diff=%d: %d 件", diff, len(parsed_scores.rows))
        else:
            self._transition(SyncState.INCREMENTAL_SYNC)

        parsed_recent = parse_recent(self._fetch(self.session.record_url))
        skipped += len(parsed_recent.skipped)
        playlogs = annotate_credit_play_counts(parsed_recent.rows, player.total_play_count)

        if sync_kind == SyncKind.INCREMENTAL:
            if previous is not None and previous.last_sync_kind == SyncKind.FULL.value:
                logger.info("直前が全件同期のため初プレイ判定を行いません")
            else:
                playlogs = mark_first_plays(
                    playlogs,
                    db.load_score_chart_keys(con),
                    db.load_played_chart_keys(con),
                )

        self._transition(SyncState.PERSISTING_SNAPSHOT)
        scraped_at = db.now_iso()
        snapshot = PlayerSnapshot(
            user_name=player.user_name,
            total_play_count=player.total_play_count,
            rating=player.rating,
            current_version_play_count=player.current_version_play_count,
            last_sync_kind=sync_kind.value,
        )
        with db.transaction(con):
            scores_upserted = db.upsert_scores(con, scores, scraped_at) if scores else 0
            inserted = db.upsert_playlogs(con, playlogs, scraped_at)
            db.persist_snapshot(con, snapshot, scraped_at)

        new_records = sync_kind == SyncKind.INCREMENTAL and inserted > 0
        logger.info(
            "同期完了: kind=%s scores=%d playlogs_inserted=%d skipped=%d new_records=%s",
            sync_kind.value,
            scores_upserted,
            inserted,
            skipped,
            new_records,
        )
        return CycleResult(
            state=SyncState.DONE,
            sync_kind=sync_kind,
            pages_fetched=self._pages_fetched,
            scores_upserted=scores_upserted,
            playlogs_inserted=inserted,
            skipped_rows=skipped,
            new_records=new_records,
        )
