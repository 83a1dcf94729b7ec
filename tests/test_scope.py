from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from tracelens.agent import scope as scope_mod
from tracelens.agent.scope import resolve_scope, scope_from_text, scope_id_from_text


# A Monday evening
NOW = datetime(2026, 10, 19, 18, 30)


def _ts(dt: datetime) -> int:
    return int(dt.timestamp())


def test_today_runs_from_local_midnight_to_now():
    s = resolve_scope("today", now=NOW)
    assert s.start_ts == _ts(datetime(2026, 10, 19))
    assert s.end_ts == _ts(NOW)
    assert s.label == "Today"


def test_absent_scope_id_means_today():
    assert resolve_scope(None, now=NOW).id == "today"


def test_yesterday_is_the_whole_previous_day():
    s = resolve_scope("yesterday", now=NOW)
    assert s.start_ts == _ts(datetime(2026, 10, 18))
    assert s.end_ts == _ts(datetime(2026, 10, 18, 23, 59, 59))


def test_last_n_days_is_rolling():
    s = resolve_scope("last_7_days", now=NOW)
    assert s.end_ts - s.start_ts == _ts(NOW) - _ts(NOW - timedelta(days=7))
    assert s.label == "Last 7 days"


def test_this_year_and_all_time():
    year = resolve_scope("this_year", now=NOW)
    assert year.start_ts == _ts(datetime(2026, 1, 1))
    assert resolve_scope("all_time", now=NOW).start_ts == 0


def test_hours_and_days_ago():
    hours = resolve_scope("last_3_hours", now=NOW)
    assert hours.end_ts - hours.start_ts == 3 * 3600
    ago = resolve_scope("2_days_ago", now=NOW)
    assert ago.start_ts == _ts(datetime(2026, 10, 17))


def test_weekday_is_most_recent_past_occurrence():
    assert resolve_scope("friday", now=NOW).start_ts == _ts(datetime(2026, 10, 16))
    # same weekday as today means a week ago
    assert resolve_scope("monday", now=NOW).start_ts == _ts(datetime(2026, 10, 12))


def test_parts_of_day():
    s = resolve_scope("this_morning", now=NOW)
    assert s.start_ts == _ts(datetime(2026, 10, 19, 6))
    assert s.end_ts == _ts(datetime(2026, 10, 19, 11, 59, 59))


def test_unknown_scope_raises():
    with pytest.raises(ValueError):
        resolve_scope("next_tuesday", now=NOW)


def test_local_conversion_failure_falls_back_to_utc(monkeypatch):
    def boom(dt):
        raise OverflowError("out of range")

    monkeypatch.setattr(scope_mod, "_ts", boom)
    s = resolve_scope("last_7_days", now=NOW)
    assert s.end_ts - s.start_ts == 7 * 86400


@pytest.mark.parametrize("sid", ["last_1000000_days", "last_99999999999_hours", "1000000000_days_ago"])
def test_huge_windows_clamp_to_the_epoch(sid):
    s = resolve_scope(sid, now=NOW)
    assert s.start_ts == 0
    assert s.end_ts > 0


@pytest.mark.parametrize(
    "query,expected",
    [
        ("what did I do yesterday", "yesterday"),
        ("what music did I play yesteray?", "yesterday"),
        ("apps I used last week", "last_7_days"),
        ("what did I do this week", "this_week"),
        ("Summarize my whole year", "this_year"),
        ("top apps of all time", "all_time"),
        ("what did I work on in the last 3 hours", "last_3_hours"),
        ("what was on my screen 2 days ago", "2_days_ago"),
        ("what did I do on friday", "friday"),
        ("what did I watch this evening", "this_evening"),
        ("what did I do", None),
    ],
)
def test_scope_id_from_text(query, expected):
    assert scope_id_from_text(query) == expected


def test_text_without_time_phrase_defaults_to_non_fixed_today():
    s = scope_from_text("what did I do", now=NOW)
    assert s.id == "today"
    assert s.fixed is False


def test_explicit_time_phrase_is_fixed():
    s = scope_from_text("songs I played yesterday", now=NOW)
    assert s.id == "yesterday"
    assert s.fixed is True
