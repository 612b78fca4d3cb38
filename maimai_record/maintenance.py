"""
メンテナンス時間帯の判定。

maimai DX NET は毎日 04:00〜07:00（ローカル時刻）に不安定になるため、
この時間帯は同期処理を一切行わない。起動時同期と定期同期の両方から同じ関数を呼ぶ。
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

DEFAULT_START_HOUR = 4
DEFAULT_END_HOUR = 7


def is_maintenance_hour(hour: int, start_hour: int = DEFAULT_START_HOUR, end_hour: int = DEFAULT_END_HOUR) -> bool:
    """
    時(hour)がメンテナンス時間帯 [start_hour, end_hour) に含まれるか判定する。

    start_hour > end_hour の場合は日付をまたぐ時間帯として扱う（例: 23〜2時）。
    start_hour == end_hour の場合は時間帯なしとみなす。
    """
    if start_hour == end_hour:
        return False
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def is_maintenance_window(
    now: Optional[datetime] = None,
    start_hour: int = DEFAULT_START_HOUR,
    end_hour: int = DEFAULT_END_HOUR,
) -> bool:
    """
    指定時刻がメンテナンス時間帯かどうかを返す。副作用はない。

    Args:
        now: 判定対象のローカル時刻。省略時は現在のローカル時刻。
        start_hour: 開始時（含む）。
        end_hour: 終了時（含まない）。

    Returns:
        メンテナンス時間帯であれば True。
    """
    if now is None:
        now = datetime.now()
    return is_maintenance_hour(now.hour, start_hour, end_hour)
