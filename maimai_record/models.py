"""
データモデル定義モジュール。

パース結果を同期処理・DB登録へ渡すためのレコード型と、
画面上のアイコン由来の表示値（難易度・ランク・FC/SYNC）の列挙型を定義する。

列挙型はパーサ境界で一度だけ解決し、DBにはアイコン名ではなく
正規の表示文字列（value）を保存する。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, List, Optional, TypeVar


class ChartType(Enum):
    """譜面種別。"""

    STD = "STD"
    DX = "DX"


class DifficultyCategory(Enum):
    """難易度カテゴリ。value は表示文字列。"""

    BASIC = "BASIC"
    ADVANCED = "ADVANCED"
    EXPERT = "EXPERT"
    MASTER = "MASTER"
    REMASTER = "Re:MASTER"

    @property
    def index(self) -> int:
        """スコア一覧URLの diff パラメータ (0..4) を返す。"""
        return _DIFF_ORDER.index(self)

    @classmethod
    def from_index(cls, diff: int) -> "DifficultyCategory":
        """
        diff パラメータから難易度を返す。

        Raises:
            ValueError: diff が 0..4 の範囲外の場合。
        """
        if not 0 <= diff < len(_DIFF_ORDER):
            raise ValueError(f"diff must be 0..4: {diff}")
        return _DIFF_ORDER[diff]


_DIFF_ORDER = [
    DifficultyCategory.BASIC,
    DifficultyCategory.ADVANCED,
    DifficultyCategory.EXPERT,
    DifficultyCategory.MASTER,
    DifficultyCategory.REMASTER,
]


class ScoreRank(Enum):
    """スコアランク。value は表示文字列。"""

    SSS_PLUS = "SSS+"
    SSS = "SSS"
    SS_PLUS = "SS+"
    SS = "SS"
    S_PLUS = "S+"
    S = "S"
    AAA = "AAA"
    AA = "AA"
    A = "A"
    BBB = "BBB"
    BB = "BB"
    B = "B"
    C = "C"
    D = "D"


class FcStatus(Enum):
    """フルコンボ系の達成状態。"""

    AP_PLUS = "AP+"
    AP = "AP"
    FC_PLUS = "FC+"
    FC = "FC"


class SyncStatus(Enum):
    """SYNC系 (FDX/FS) の達成状態。"""

    FDX_PLUS = "FDX+"
    FDX = "FDX"
    FS_PLUS = "FS+"
    FS = "FS"
    SYNC = "SYNC"

    @property
    def priority(self) -> int:
        """複数アイコンが並ぶ場合に上位を選ぶための優先度。"""
        return _SYNC_PRIORITY[self]


_SYNC_PRIORITY = {
    SyncStatus.FDX_PLUS: 5,
    SyncStatus.FDX: 4,
    SyncStatus.FS_PLUS: 3,
    SyncStatus.FS: 2,
    SyncStatus.SYNC: 1,
}


@dataclass(frozen=True)
class PlayerData:
    """
    playerData ページから取得したプレイヤー情報。

    Attributes:
        user_name: プレイヤー名。
        rating: レーティング。
        total_play_count: maimaiDX 累計プレイ回数。差分ポーリングの判定に使う。
        current_version_play_count: 現バージョンのプレイ回数（取得できない場合は None）。
    """

    user_name: str
    rating: int
    total_play_count: int
    current_version_play_count: Optional[int] = None


@dataclass(frozen=True)
class PlayerSnapshot:
    """
    固定キーの1行として保存されるプレイヤー状態。

    Attributes:
        user_name: プレイヤー名。
        total_play_count: 前回同期時点の累計プレイ回数。
        rating: レーティング。
        current_version_play_count: 現バージョンのプレイ回数。
        last_sync_kind: 直近で永続化した同期種別 ("full" / "incremental")。
        updated_at: 更新時刻 (ISO 8601, UTC)。
    """

    user_name: str
    total_play_count: int
    rating: int
    current_version_play_count: Optional[int] = None
    last_sync_kind: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ScoreRecord:
    """
    スコア一覧の1譜面分。

    (song_key, chart_type, diff_category) が一意キー。
    achievement は達成率(%) × 10000 を四捨五入した整数。
    """

    song_key: str
    title: str
    chart_type: ChartType
    diff_category: DifficultyCategory
    level: Optional[str] = None
    achievement: Optional[int] = None
    rank: Optional[ScoreRank] = None
    fc: Optional[FcStatus] = None
    sync: Optional[SyncStatus] = None
    dx_score: Optional[int] = None
    dx_score_max: Optional[int] = None
    source_idx: Optional[str] = None


@dataclass(frozen=True)
class PlayLogRecord:
    """
    プレイ履歴の1プレイ分。

    playlog_idx が一意かつ不変のキー。一度保存した行は更新しない。
    credit_play_count / first_play は同期処理側で付与する。
    """

    playlog_idx: Optional[str]
    song_key: str
    title: str
    chart_type: ChartType
    diff_category: Optional[DifficultyCategory] = None
    level: Optional[str] = None
    track: Optional[int] = None
    played_at: Optional[str] = None
    achievement: Optional[int] = None
    achievement_new_record: bool = False
    rank: Optional[ScoreRank] = None
    fc: Optional[FcStatus] = None
    sync: Optional[SyncStatus] = None
    dx_score: Optional[int] = None
    dx_score_max: Optional[int] = None
    credit_play_count: Optional[int] = None
    first_play: bool = False

    @property
    def chart_key(self) -> Optional[tuple]:
        """スコア表と突き合わせるキー。難易度不明の場合は None。"""
        if self.diff_category is None:
            return None
        return (self.song_key, self.chart_type.value, self.diff_category.value)


@dataclass(frozen=True)
class SkippedRow:
    """識別できずにスキップした行。診断用に元テキストを保持する。"""

    reason: str
    raw_text: str


T = TypeVar("T")


@dataclass
class ParsedRows(Generic[T]):
    """パース結果の行リストとスキップした行。"""

    rows: List[T] = field(default_factory=list)
    skipped: List[SkippedRow] = field(default_factory=list)
