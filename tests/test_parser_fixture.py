"""HTMLパーサの fixture テスト。"""

from __future__ import annotations

import pytest

from conftest import read_fixture
from maimai_record.errors import ParseError
from maimai_record.models import ChartType, DifficultyCategory, FcStatus, ScoreRank, SyncStatus
from maimai_record.normalize import song_key
from maimai_record.parser import (
    parse_achievement,
    parse_dx_score_pair,
    parse_player_data,
    parse_recent,
    parse_score_list,
    parse_subtitle,
)


@pytest.mark.light
def test_parse_achievement_golden_cases():
    assert parse_achievement("99.8012%") == 998012
    assert parse_achievement("100.5000%") == 1005000
    assert parse_achievement(" 0.0000 % ") == 0
    assert parse_achievement("97.12345%") == 971235  # 四捨五入
    assert parse_achievement("abc%") is None
    assert parse_achievement("99.8012") is None
    assert parse_achievement("") is None
    assert parse_achievement(None) is None


@pytest.mark.light
def test_parse_dx_score_pair():
    assert parse_dx_score_pair("2,345 / 2,514") == (2345, 2514)
    assert parse_dx_score_pair("612/612") == (612, 612)
    assert parse_dx_score_pair("- / 2,700") is None
    assert parse_dx_score_pair("2345") is None


@pytest.mark.light
def test_parse_subtitle_track_and_played_at():
    assert parse_subtitle("TRACK 04 2026/01/23 12:52") == (4, "2026/01/23 12:52")
    assert parse_subtitle("TRACK 01 2026/01/02 9:05") == (1, "2026/01/02 09:05")
    assert parse_subtitle("no data") == (None, None)


@pytest.mark.light
def test_parse_player_data_fixture():
    player = parse_player_data(read_fixture("player_data.html"))
    assert player.user_name == "ＭＡＩＭＡＩ"
    assert player.rating == 15234
    assert player.total_play_count == 1234
    assert player.current_version_play_count == 120


@pytest.mark.light
def test_parse_player_data_raises_when_play_count_is_missing():
    html = read_fixture("player_data.html").replace("maimaiDX total play count", "something else")
    with pytest.raises(ParseError):
        parse_player_data(html)


@pytest.mark.light
def test_parse_player_data_raises_for_login_page():
    with pytest.raises(ParseError):
        parse_player_data("<html><body><form id='sidForm'></form></body></html>")


@pytest.mark.light
def test_parse_score_list_master_fixture():
    parsed = parse_score_list(read_fixture("scores_diff3.html"), 3)

    assert len(parsed.rows) == 3
    assert len(parsed.skipped) == 1
    assert "50.0000%" in parsed.skipped[0].raw_text

    alpha = parsed.rows[0]
    assert alpha.title == "Song Alpha"
    assert alpha.song_key == song_key("Song Alpha")
    assert alpha.chart_type == ChartType.DX
    assert alpha.diff_category == DifficultyCategory.MASTER
    assert alpha.level == "13+"
    assert alpha.achievement == 998012
    assert alpha.rank == ScoreRank.SS
    assert alpha.fc == FcStatus.FC
    assert alpha.sync == SyncStatus.FDX  # SYNC と FDX が並ぶ場合は上位
    assert (alpha.dx_score, alpha.dx_score_max) == (2345, 2514)
    assert alpha.source_idx == "n4o5p6"

    # 達成率が数値でない行も行自体は残す
    epsilon = parsed.rows[1]
    assert epsilon.title == "Song Epsilon"
    assert epsilon.achievement is None
    assert epsilon.dx_score is None
    assert epsilon.rank is None

    # 曲名が空の行も固定の song_key を持つ
    blank = parsed.rows[2]
    assert blank.title == ""
    assert blank.song_key
    assert blank.song_key == song_key("")
    assert blank.chart_type == ChartType.STD


@pytest.mark.light
def test_parse_score_list_unplayed_row_has_no_achievement():
    parsed = parse_score_list(read_fixture("scores_diff0.html"), 0)
    assert [r.title for r in parsed.rows] == ["Song Alpha", "Song Beta"]

    alpha, beta = parsed.rows
    assert alpha.chart_type == ChartType.STD
    assert alpha.achievement == 1000000
    assert alpha.rank == ScoreRank.SSS_PLUS
    assert alpha.fc == FcStatus.FC_PLUS
    assert alpha.sync == SyncStatus.SYNC

    assert beta.chart_type == ChartType.DX
    assert beta.achievement is None
    assert beta.rank is None
    assert beta.fc is None
    assert beta.sync is None


@pytest.mark.light
def test_parse_score_list_rejects_invalid_diff():
    with pytest.raises(ParseError):
        parse_score_list(read_fixture("scores_diff0.html"), 5)


@pytest.mark.light
def test_parse_score_list_empty_page():
    parsed = parse_score_list("<html><body></body></html>", 2)
    assert parsed.rows == []
    assert parsed.skipped == []


@pytest.mark.light
def test_parse_recent_fixture():
    parsed = parse_recent(read_fixture("record.html"))

    assert parsed.skipped == []
    assert [r.track for r in parsed.rows] == [4, 3, 2, 1]
    assert [r.playlog_idx for r in parsed.rows] == [
        "3,1769140320",
        "2,1769140020",
        "1,1769139720",
        "0,1769139420",
    ]
    assert all(r.credit_play_count is None for r in parsed.rows)
    assert not any(r.first_play for r in parsed.rows)

    latest = parsed.rows[0]
    assert latest.title == "Song Alpha"
    assert latest.song_key == song_key("Song Alpha")
    assert latest.played_at == "2026/01/23 12:52"
    assert latest.chart_type == ChartType.DX
    assert latest.diff_category == DifficultyCategory.MASTER
    assert latest.level == "13+"
    assert latest.achievement == 998012
    assert latest.achievement_new_record is True
    assert latest.rank == ScoreRank.SS
    assert latest.fc == FcStatus.FC
    assert latest.sync == SyncStatus.FS
    assert (latest.dx_score, latest.dx_score_max) == (2345, 2514)

    gamma = parsed.rows[1]
    assert gamma.chart_type == ChartType.STD
    assert gamma.diff_category == DifficultyCategory.EXPERT
    assert gamma.rank == ScoreRank.S_PLUS
    assert gamma.fc is None
    assert gamma.sync is None
    assert gamma.achievement_new_record is False

    oldest = parsed.rows[3]
    assert oldest.achievement == 1000000
    assert oldest.rank == ScoreRank.SSS_PLUS
    assert oldest.fc == FcStatus.FC_PLUS
    assert oldest.sync == SyncStatus.SYNC


@pytest.mark.light
def test_parse_recent_skips_entry_without_title_block():
    html = read_fixture("record.html").replace("basic_block", "other_block", 1)
    parsed = parse_recent(html)

    assert len(parsed.rows) == 3
    assert len(parsed.skipped) == 1
    assert "TRACK 04" in parsed.skipped[0].raw_text


@pytest.mark.light
def test_parse_recent_missing_idx_becomes_none():
    html = read_fixture("record.html").replace('value="3,1769140320"', 'value=""')
    parsed = parse_recent(html)
    assert parsed.rows[0].playlog_idx is None
