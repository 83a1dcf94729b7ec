"""Time scope resolution.

A query is answered inside exactly one :class:`TimeScope`. The scope is
resolved once, from an explicit scope id or from phrases in the question,
and stamped onto every tool call made while answering it.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Callable, Optional, Tuple


log = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

YESTERDAY_SPELLINGS = (
    "yesterday", "yesteray", "yeterday", "yestarday", "yesterda", "ysterday", "yesteday", "yesterdy",
)

_LAST_DAYS = re.compile(r"^last_(\d+)_days$")
_LAST_HOURS = re.compile(r"^last_(\d+)_hours$")
_DAYS_AGO = re.compile(r"^(\d+)_days_ago$")


@dataclass(frozen=True)
class TimeScope:
    id: str
    label: str
    start_ts: int
    end_ts: int
    fixed: bool = True

    @property
    def span_days(self) -> float:
        return max(0, self.end_ts - self.start_ts) / 86400.0

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "start_ts": self.start_ts,
            "end_ts": self.end_ts,
            "fixed": self.fixed,
        }


def _local_now(now: Optional[datetime]) -> datetime:
    # Naive datetimes are local wall-clock time throughout this module.
    if now is None:
        return datetime.now()
    if now.tzinfo is not None:
        return now.astimezone().replace(tzinfo=None)
    return now


def _ts(dt: datetime) -> int:
    return int(dt.timestamp())


def _safe_bounds(
    compute: Callable[[], Tuple[datetime, datetime]], now: datetime, fallback_days: float
) -> Tuple[int, int]:
    """Convert local bounds to Unix seconds, falling back to UTC arithmetic.

    Local conversions can fail around DST gaps or platform limits; the UTC
    fallback keeps the query answerable with a slightly different window.
    """
    try:
        start, end = compute()
        return _ts(start), _ts(end)
    except (OverflowError, OSError, ValueError) as e:
        log.warning("Local time conversion failed (%s); using UTC fallback", e)
        # Integer arithmetic only; a huge window clamps to the epoch.
        end_ts = int(datetime.now(timezone.utc).timestamp())
        return max(0, end_ts - int(fallback_days * 86400)), end_ts


def _midnight(d: datetime) -> datetime:
    return datetime.combine(d.date(), dtime.min)


def _day_bounds(day: datetime) -> Tuple[datetime, datetime]:
    start = _midnight(day)
    return start, datetime.combine(day.date(), dtime(23, 59, 59))


def resolve_scope(scope_id: Optional[str] = None, now: Optional[datetime] = None, fixed: bool = True) -> TimeScope:
    """Map a scope id (absent means ``today``) to concrete local bounds."""
    sid = (scope_id or "today").strip().lower()
    now = _local_now(now)

    if sid == "today":
        start, end = _safe_bounds(lambda: (_midnight(now), now), now, 1)
        return TimeScope(sid, "Today", start, end, fixed)

    if sid == "yesterday":
        start, end = _safe_bounds(lambda: _day_bounds(now - timedelta(days=1)), now, 2)
        return TimeScope(sid, "Yesterday", start, end, fixed)

    if sid == "this_week":
        monday = now - timedelta(days=now.weekday())
        start, end = _safe_bounds(lambda: (_midnight(monday), now), now, 7)
        return TimeScope(sid, "This week", start, end, fixed)

    if sid == "this_year":
        start, end = _safe_bounds(lambda: (datetime(now.year, 1, 1), now), now, 365)
        return TimeScope(sid, f"This year ({now.year})", start, end, fixed)

    if sid == "all_time":
        end = _safe_bounds(lambda: (now, now), now, 0)[1]
        return TimeScope(sid, "All time", 0, end, fixed)

    if sid in ("this_morning", "this_afternoon", "this_evening"):
        hours = {"this_morning": (6, 12), "this_afternoon": (12, 18), "this_evening": (18, 24)}[sid]

        def part_of_day() -> Tuple[datetime, datetime]:
            start_dt = _midnight(now) + timedelta(hours=hours[0])
            end_dt = _midnight(now) + timedelta(hours=hours[1]) - timedelta(seconds=1)
            return start_dt, end_dt

        start, end = _safe_bounds(part_of_day, now, 1)
        return TimeScope(sid, sid.replace("_", " ").capitalize(), start, end, fixed)

    if sid in WEEKDAYS:
        days_back = now.weekday() - WEEKDAYS.index(sid)
        if days_back <= 0:
            days_back += 7
        start, end = _safe_bounds(lambda: _day_bounds(now - timedelta(days=days_back)), now, days_back + 1)
        return TimeScope(sid, f"Last {sid.capitalize()}", start, end, fixed)

    m = _LAST_DAYS.match(sid)
    if m:
        n = max(1, int(m.group(1)))
        start, end = _safe_bounds(lambda: (now - timedelta(days=n), now), now, n)
        return TimeScope(f"last_{n}_days", f"Last {n} day{'s' if n != 1 else ''}", start, end, fixed)

    m = _LAST_HOURS.match(sid)
    if m:
        n = max(1, int(m.group(1)))
        start, end = _safe_bounds(lambda: (now - timedelta(hours=n), now), now, n / 24.0)
        return TimeScope(f"last_{n}_hours", f"Last {n} hour{'s' if n != 1 else ''}", start, end, fixed)

    m = _DAYS_AGO.match(sid)
    if m:
        n = int(m.group(1))
        start, end = _safe_bounds(lambda: _day_bounds(now - timedelta(days=n)), now, n + 1)
        return TimeScope(f"{n}_days_ago", f"{n} days ago", start, end, fixed)

    raise ValueError(f"Unknown scope id: {scope_id!r}")


def scope_id_from_text(query: str) -> Optional[str]:
    """Find an explicit time phrase in free text; None when there is none."""
    q = (query or "").lower()

    if any(s in q for s in YESTERDAY_SPELLINGS):
        return "yesterday"
    if "all time" in q or "all-time" in q or "ever since" in q or "of all time" in q:
        return "all_time"
    if re.search(r"\b(this|whole|entire|my) year\b|\byearly\b|\byear in review\b", q) or "year so far" in q:
        return "this_year"
    if "last year" in q or "past year" in q:
        return "last_365_days"
    if "last week" in q or "past week" in q:
        return "last_7_days"
    if "this week" in q:
        return "this_week"
    if "last month" in q or "past month" in q:
        return "last_30_days"
    m = re.search(r"(?:last|past)\s+(\d+)\s+days?", q)
    if m:
        return f"last_{int(m.group(1))}_days"
    m = re.search(r"(?:last|past)\s+(\d+)\s+hours?", q)
    if m:
        return f"last_{int(m.group(1))}_hours"
    if "last hour" in q or "past hour" in q:
        return "last_1_hours"
    m = re.search(r"(\d+)\s+days?\s+ago", q)
    if m:
        return f"{int(m.group(1))}_days_ago"
    for name in WEEKDAYS:
        if name in q:
            return name
    if "today" in q or "so far" in q:
        return "today"
    if "morning" in q:
        return "this_morning"
    if "afternoon" in q:
        return "this_afternoon"
    if "evening" in q or "tonight" in q:
        return "this_evening"
    return None


def scope_from_text(query: str, now: Optional[datetime] = None) -> TimeScope:
    """Resolve the scope implied by a question, defaulting to a non-fixed today."""
    sid = scope_id_from_text(query)
    if sid is None:
        return resolve_scope("today", now=now, fixed=False)
    return resolve_scope(sid, now=now, fixed=True)
