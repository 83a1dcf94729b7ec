from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..analysis import summary as db_summary
from ..config import SourceToggles
from ..database.db import ActivityMetadata, category_name, read_connection
from ..errors import QueryCancelled, ToolExecutionError
from .scope import TimeScope


log = logging.getLogger(__name__)

SCOPE_EXEMPT_TOOLS = ("parallel_search", "resolve_query_scope")
WINDOW_KEYS = ("hours", "start_ts", "end_ts", "start_time_iso", "end_time_iso", "scope_label", "scope_fixed")

SOURCE_OF_TOOL = {
    "get_music_history": "music",
    "search_ocr": "ocr",
    "get_recent_ocr": "ocr",
    "get_recent_file_changes": "files",
}

VIDEO_KEYWORDS = (
    "tutorial", "course", "how to", "guide", "lecture", "certification", "webinar",
    "walkthrough", "explained", "podcast episode",
)

CHANGE_TYPES = ("created", "modified", "deleted")

DEFAULT_LIMITS = {
    "get_music_history": 50,
    "get_recent_activities": 40,
    "query_activities": 200,
    "get_usage_stats": 20,
    "search_ocr": 20,
    "get_recent_ocr": 20,
    "get_recent_file_changes": 40,
}


@dataclass
class ToolOutput:
    text: str
    records: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ToolContext:
    db_path: Path
    sources: SourceToggles = field(default_factory=SourceToggles)
    cancel: Optional[threading.Event] = None

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise QueryCancelled("Query cancelled")


# ---- text helpers ----

def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split())


def truncate_for_token_limit(text: str, limit_chars: int) -> str:
    if len(text) <= limit_chars:
        return text
    return f"{text[:limit_chars]}... [truncated]"


def format_duration(total_seconds: Any) -> str:
    s = int(total_seconds or 0)
    if s <= 0:
        return "0s"
    hours, rem = divmod(s, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_time(ts: Any, multi_day: bool = False) -> str:
    try:
        dt = datetime.fromtimestamp(int(ts))
    except (TypeError, ValueError, OverflowError, OSError):
        return "Unknown time"
    return dt.strftime("%b %d %I:%M %p" if multi_day else "%I:%M %p")


def display_app_name(app: str) -> str:
    # Tracker app names can carry trailing binary junk (e.g. "Spotify\x008\x16")
    raw = app or ""
    if "Spotify" in raw:
        return "Spotify"
    if "youtube" in raw.lower():
        return "YouTube"
    return raw.split("\x00", 1)[0]


def looks_like_gibberish(text: str) -> bool:
    """Heuristic for OCR capture noise."""
    if not text:
        return True
    total = float(len(text))
    letters = sum(1 for c in text if c.isalpha())
    digits = sum(1 for c in text if c.isdigit())
    symbols = sum(1 for c in text if not c.isalnum() and not c.isspace())
    vowels = sum(1 for c in text if c in "aeiouAEIOU")

    symbol_ratio = symbols / total
    alpha_ratio = letters / total
    digit_ratio = digits / total
    vowel_ratio = (vowels / letters) if letters else 0.0
    return (
        symbol_ratio > 0.35
        or alpha_ratio < 0.18
        or (letters >= 10 and vowel_ratio < 0.06)
        or digit_ratio > 0.7
    )


_OCR_KEEP = set(",.;:!?()[]{}'\"/@#&+-_|")


def sanitize_ocr_for_query(text: Optional[str]) -> str:
    """Collapse whitespace and reject noisy captures; returns '' for noise."""
    compact = normalize_whitespace(text or "")
    if not compact:
        return ""
    if looks_like_gibberish(compact):
        return ""
    filtered = "".join(c for c in compact if c.isalnum() or c.isspace() or c in _OCR_KEEP)
    cleaned = normalize_whitespace(filtered)
    if len(cleaned) < 3 or looks_like_gibberish(cleaned):
        return ""
    return cleaned


def truncate_snippet(text: str, keyword: str, radius: int = 50) -> str:
    idx = text.lower().find(keyword.lower())
    if idx < 0:
        return text[: radius * 2]
    start = max(0, idx - radius)
    end = min(len(text), idx + len(keyword) + radius)
    return f"...{text[start:end]}..."


# ---- argument helpers ----

def _int_arg(tool: str, args: Dict[str, Any], name: str, default: int, lo: int, hi: int) -> int:
    raw = args.get(name, default)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ToolExecutionError(tool, f"'{name}' must be an integer, got {raw!r}")
    return max(lo, min(value, hi))


def _window(tool: str, args: Dict[str, Any]) -> Tuple[int, int]:
    try:
        return int(args["start_ts"]), int(args["end_ts"])
    except KeyError:
        raise ToolExecutionError(tool, "missing scope window (start_ts/end_ts)")
    except (TypeError, ValueError):
        raise ToolExecutionError(tool, "scope window must be integer Unix seconds")


def _multi_day(args: Dict[str, Any]) -> bool:
    try:
        return int(args["end_ts"]) - int(args["start_ts"]) > 86400 + 1
    except (KeyError, TypeError, ValueError):
        return False


def _label(args: Dict[str, Any]) -> str:
    return str(args.get("scope_label") or "the selected time range")


def stamp_args(tool: str, args: Optional[Dict[str, Any]], scope: TimeScope) -> Dict[str, Any]:
    """Inject the query's scope window, overriding anything the model proposed."""
    stamped = {k: v for k, v in dict(args or {}).items() if k not in WINDOW_KEYS}
    if tool in SCOPE_EXEMPT_TOOLS:
        return dict(args or {})
    stamped["start_ts"] = scope.start_ts
    stamped["end_ts"] = scope.end_ts
    stamped["scope_label"] = scope.label
    stamped["scope_fixed"] = scope.fixed
    return stamped


def activity_ref(
    app: str,
    title: str,
    start_time: Any,
    duration_seconds: Any,
    category_id: Any,
    kind: str = "activity",
    media: Optional[Dict[str, Any]] = None,
    **extra: Any,
) -> Dict[str, Any]:
    ref = {
        "kind": kind,
        "app": display_app_name(app),
        "title": title or "",
        "time": int(start_time or 0),
        "duration_seconds": int(duration_seconds or 0),
        "category": category_name(category_id),
        "media": media,
    }
    ref.update(extra)
    return ref


def _media_dict(meta: Optional[ActivityMetadata]) -> Optional[Dict[str, str]]:
    if meta is None or meta.media_info is None:
        return None
    m = meta.media_info
    return {"title": m.title, "artist": m.artist, "status": m.status}


# ---- tools ----

def tool_get_music_history(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "get_music_history"
    start, end = _window(name, args)
    limit = _int_arg(name, args, "limit", 50, 1, 250)
    scan_limit = max(limit * 20, 500)
    with read_connection(ctx.db_path) as conn:
        rows = conn.execute(
            """
            SELECT app_name, window_title, start_time, duration_seconds, category_id, metadata
            FROM activities
            WHERE start_time >= ? AND start_time <= ? AND metadata IS NOT NULL
            ORDER BY start_time DESC
            LIMIT ?
            """,
            (start, end, scan_limit),
        ).fetchall()

    tracks: List[Dict[str, Any]] = []
    seen = set()
    for r in rows:
        meta = ActivityMetadata.decode(r["metadata"])
        media = _media_dict(meta)
        if media is None:
            continue
        title, artist = media["title"], media["artist"]
        is_spotify = "Spotify" in (r["app_name"] or "")
        is_video = any(kw in title.lower() for kw in VIDEO_KEYWORDS)
        is_song = bool(title) and bool(artist) and len(title) < 100
        if not (is_spotify or (is_song and not is_video)):
            continue
        key = (title.lower(), artist.lower())
        if key in seen:
            continue
        seen.add(key)
        tracks.append(
            activity_ref(r["app_name"], r["window_title"], r["start_time"], r["duration_seconds"], r["category_id"], kind="music", media=media)
        )
        if len(tracks) >= limit:
            break

    if not tracks:
        return ToolOutput("No music activity found in the selected time range.", [])
    multi = _multi_day(args)
    lines = [f"Songs played ({_label(args)}):", ""]
    for i, t in enumerate(tracks, 1):
        m = t["media"] or {}
        lines.append(f"{i}. {m.get('title') or 'Unknown'} - {m.get('artist') or 'Unknown'}")
        lines.append(f"   {t['app']} | {m.get('status') or ''} | {format_time(t['time'], multi)}")
    return ToolOutput("\n".join(lines), tracks)


def tool_get_recent_activities(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "get_recent_activities"
    start, end = _window(name, args)
    limit = _int_arg(name, args, "limit", 40, 1, 250)
    category = args.get("category_id")
    sql = (
        "SELECT app_name, window_title, start_time, duration_seconds, category_id, metadata "
        "FROM activities WHERE start_time >= ? AND start_time <= ?"
    )
    params: List[Any] = [start, end]
    if category not in (None, ""):
        cat = _int_arg(name, args, "category_id", 7, 1, 7)
        sql += " AND category_id = ?"
        params.append(cat)
    sql += " ORDER BY start_time DESC LIMIT ?"
    params.append(limit)
    with read_connection(ctx.db_path) as conn:
        rows = conn.execute(sql, params).fetchall()

    events = [
        activity_ref(
            r["app_name"], r["window_title"], r["start_time"], r["duration_seconds"], r["category_id"],
            media=_media_dict(ActivityMetadata.decode(r["metadata"])),
        )
        for r in rows
    ]
    if not events:
        return ToolOutput("No activity events found in the selected time range.", [])
    multi = _multi_day(args)
    lines = [f"Activity events ({_label(args)}), newest first:", ""]
    for i, e in enumerate(events, 1):
        lines.append(
            f"{i}. {e['app'] or 'Unknown'} | {e['category']} | {format_time(e['time'], multi)} | {format_duration(e['duration_seconds'])}"
        )
        lines.append(f"   {e['title'] or '(No window title)'}")
    return ToolOutput("\n".join(lines), events)


_WRITE_WORDS = re.compile(r"\b(DELETE|UPDATE|DROP|INSERT)\b", re.IGNORECASE)
_FORBIDDEN = re.compile(r"\b(ALTER|CREATE|ATTACH|DETACH|PRAGMA|VACUUM|REINDEX)\b|\bmain\s*\.", re.IGNORECASE)


def ensure_read_only(sql: str) -> None:
    s = (sql or "").strip()
    if not s:
        raise ToolExecutionError("query_activities", "Missing 'query' argument")
    if _WRITE_WORDS.search(s):
        raise ToolExecutionError("query_activities", "Only SELECT queries are allowed.")
    head = s.lstrip("(").lower()
    if not (head.startswith("select") or head.startswith("with")):
        raise ToolExecutionError("query_activities", "Only SELECT queries are allowed.")
    if _FORBIDDEN.search(s):
        raise ToolExecutionError("query_activities", "Query contains forbidden statements")
    if ";" in s.rstrip().rstrip(";"):
        raise ToolExecutionError("query_activities", "Only a single statement is allowed")


def _scoped_reads_only(action: int, arg1: Any, arg2: Any, db_name: Any, source: Any) -> int:
    """Authorizer: once the scoped temp copies exist, nothing may read the main schema."""
    if action == sqlite3.SQLITE_READ and db_name == "main":
        return sqlite3.SQLITE_DENY
    return sqlite3.SQLITE_OK


def _plain(value: Any, column: str) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        if column == "metadata":
            meta = ActivityMetadata.decode(value)
            if meta is not None:
                return {
                    "screen_text": meta.screen_text,
                    "background_windows": meta.background_windows,
                    "media_info": _media_dict(meta),
                }
        return f"<blob {len(bytes(value))} bytes>"
    return value


def tool_query_activities(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "query_activities"
    start, end = _window(name, args)
    sql = args.get("query") or args.get("sql") or ""
    ensure_read_only(sql)
    limit = _int_arg(name, args, "limit", 200, 1, 1000)
    raw_params = args.get("params")

    with read_connection(ctx.db_path) as conn:
        # Scoped temp copies shadow the real tables; the authorizer blocks any
        # spelling of main.<table>, quoted or not.
        conn.execute(
            f"CREATE TEMP TABLE activities AS SELECT * FROM main.activities "
            f"WHERE start_time >= {int(start)} AND start_time <= {int(end)}"
        )
        conn.execute(
            f"CREATE TEMP TABLE code_file_events AS SELECT * FROM main.code_file_events "
            f"WHERE detected_at >= {int(start)} AND detected_at <= {int(end)}"
        )
        conn.execute("PRAGMA query_only = ON")
        conn.set_authorizer(_scoped_reads_only)
        if ":start_ts" in sql or ":end_ts" in sql or isinstance(raw_params, dict):
            params: Any = {"start_ts": start, "end_ts": end}
            if isinstance(raw_params, dict):
                params.update(raw_params)
        elif isinstance(raw_params, list):
            params = raw_params
        elif raw_params in (None, ""):
            params = []
        else:
            raise ToolExecutionError(name, "'params' must be a list or an object")
        try:
            cur = conn.execute(sql, params)
            cols = [d[0] for d in cur.description or []]
            fetched = cur.fetchmany(limit)
            truncated = cur.fetchone() is not None
        except sqlite3.Error as e:
            raise ToolExecutionError(name, f"SQL Error: {e}")

    rows = [{c: _plain(v, c) for c, v in zip(cols, r)} for r in fetched]
    records: List[Dict[str, Any]] = []
    for row in rows:
        if "app_name" in row and "start_time" in row:
            meta = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
            records.append(
                activity_ref(
                    row.get("app_name") or "", row.get("window_title") or "", row.get("start_time"),
                    row.get("duration_seconds"), row.get("category_id"), media=meta.get("media_info"),
                )
            )
        else:
            records.append({"kind": "row", **row})
    if not rows:
        return ToolOutput("[] (no rows)", [])
    text = json.dumps(rows, ensure_ascii=False, default=str)
    if truncated:
        text += f"\n(first {limit} rows shown)"
    return ToolOutput(text, records)


def tool_get_usage_stats(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "get_usage_stats"
    start, end = _window(name, args)
    limit = _int_arg(name, args, "limit", 20, 1, 100)
    with read_connection(ctx.db_path) as conn:
        totals = db_summary.window_totals(conn, start, end)
        apps = db_summary.usage_by_app(conn, start, end, limit=limit)
        cats = db_summary.usage_by_category(conn, start, end)
    if not apps:
        return ToolOutput("No usage recorded in the selected time range.", [])
    total = totals["total_seconds"] or 1
    lines = [
        f"Usage for {_label(args)}: {format_duration(totals['total_seconds'])} tracked across "
        f"{totals['sessions']} sessions and {totals['apps']} apps.",
        "",
        "Top apps:",
    ]
    for i, a in enumerate(apps, 1):
        pct = round(100.0 * a["total_seconds"] / total)
        lines.append(f"{i}. {display_app_name(a['app'])} - {format_duration(a['total_seconds'])} ({a['count']} sessions, {pct}%)")
    lines.append("")
    lines.append("By category:")
    for c in cats:
        pct = round(100.0 * c["total_seconds"] / total)
        lines.append(f"- {c['category']} - {format_duration(c['total_seconds'])} ({pct}%)")
    records = [
        {"kind": "usage", "app": display_app_name(a["app"]), "total_seconds": a["total_seconds"], "count": a["count"]}
        for a in apps
    ]
    return ToolOutput("\n".join(lines), records)


def _ocr_rows(conn: sqlite3.Connection, start: int, end: int, scan_limit: int) -> List[sqlite3.Row]:
    return conn.execute(
        """
        SELECT app_name, window_title, start_time, duration_seconds, category_id, metadata
        FROM activities
        WHERE start_time >= ? AND start_time <= ? AND metadata IS NOT NULL
        ORDER BY start_time DESC
        LIMIT ?
        """,
        (start, end, scan_limit),
    ).fetchall()


def tool_search_ocr(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "search_ocr"
    start, end = _window(name, args)
    keyword = str(args.get("keyword") or "").strip()
    if not keyword:
        raise ToolExecutionError(name, "Missing keyword")
    limit = _int_arg(name, args, "limit", 20, 1, 200)
    with read_connection(ctx.db_path) as conn:
        rows = _ocr_rows(conn, start, end, max(limit * 50, 2000))

    kw = keyword.lower()
    matches: List[Dict[str, Any]] = []
    for r in rows:
        meta = ActivityMetadata.decode(r["metadata"])
        cleaned = sanitize_ocr_for_query(meta.screen_text if meta else None)
        if not cleaned or kw not in cleaned.lower():
            continue
        matches.append(
            activity_ref(
                r["app_name"], r["window_title"], r["start_time"], r["duration_seconds"], r["category_id"],
                kind="ocr", snippet=truncate_snippet(cleaned, keyword),
            )
        )
        if len(matches) >= limit:
            break
    if not matches:
        return ToolOutput(f"No OCR results found for '{keyword}'.", [])
    multi = _multi_day(args)
    lines = [f"Found {len(matches)} OCR matches for '{keyword}':", ""]
    for i, m in enumerate(matches, 1):
        lines.append(f"{i}. {m['app'] or 'Unknown'} at {format_time(m['time'], multi)}")
        lines.append(f"   {m['snippet']}")
    return ToolOutput("\n".join(lines), matches)


def tool_get_recent_ocr(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "get_recent_ocr"
    start, end = _window(name, args)
    limit = _int_arg(name, args, "limit", 20, 1, 250)
    app_filter = str(args.get("app") or "").strip().lower()
    keyword = str(args.get("keyword") or "").strip().lower()
    with read_connection(ctx.db_path) as conn:
        rows = _ocr_rows(conn, start, end, max(limit * 20, 1000))

    seen = set()
    results: List[Dict[str, Any]] = []
    for r in rows:
        if app_filter and app_filter not in (r["app_name"] or "").lower():
            continue
        meta = ActivityMetadata.decode(r["metadata"])
        cleaned = sanitize_ocr_for_query(meta.screen_text if meta else None)
        if not cleaned:
            continue
        if keyword and keyword not in cleaned.lower():
            continue
        short = normalize_whitespace(cleaned[:220])
        if short in seen:
            continue
        seen.add(short)
        results.append(
            activity_ref(
                r["app_name"], r["window_title"], r["start_time"], r["duration_seconds"], r["category_id"],
                kind="ocr", snippet=short,
            )
        )
        if len(results) >= limit:
            break
    if not results:
        return ToolOutput("No OCR snippets found in the selected time range.", [])
    multi = _multi_day(args)
    lines = [f"Recent OCR snippets ({_label(args)}):", ""]
    for i, item in enumerate(results, 1):
        lines.append(f"{i}. {item['app'] or 'Unknown'} at {format_time(item['time'], multi)}")
        lines.append(f"   {item['snippet']}")
    return ToolOutput("\n".join(lines), results)


def tool_get_recent_file_changes(ctx: ToolContext, args: Dict[str, Any]) -> ToolOutput:
    name = "get_recent_file_changes"
    start, end = _window(name, args)
    limit = _int_arg(name, args, "limit", 40, 1, 250)
    project = str(args.get("project") or "").strip()
    change_type = str(args.get("change_type") or "").strip().lower()
    if change_type and change_type not in CHANGE_TYPES:
        raise ToolExecutionError(name, f"change_type must be one of {', '.join(CHANGE_TYPES)}")
    sql = (
        "SELECT path, project_root, entity_type, change_type, content_preview, detected_at "
        "FROM code_file_events WHERE detected_at >= ? AND detected_at <= ?"
    )
    params: List[Any] = [start, end]
    if project:
        sql += " AND (project_root LIKE ? OR path LIKE ?)"
        params.extend([f"%{project}%", f"%{project}%"])
    if change_type:
        sql += " AND change_type = ?"
        params.append(change_type)
    sql += " ORDER BY detected_at DESC LIMIT ?"
    params.append(limit)
    with read_connection(ctx.db_path) as conn:
        rows = conn.execute(sql, params).fetchall()

    changes = [
        {
            "kind": "file_change",
            "app": Path(r["project_root"] or "").name or (r["project_root"] or ""),
            "title": r["path"],
            "time": int(r["detected_at"]),
            "change_type": r["change_type"],
            "entity_type": r["entity_type"],
            "content_preview": (r["content_preview"] or "")[:400],
        }
        for r in rows
    ]
    if not changes:
        return ToolOutput("No file changes found in the selected time range.", [])
    multi = _multi_day(args)
    lines = [f"File changes ({_label(args)}), newest first:", ""]
    for i, c in enumerate(changes, 1):
        lines.append(f"{i}. [{c['change_type']}] {c['title']} ({c['app']}) at {format_time(c['time'], multi)}")
        if c["content_preview"]:
            lines.append(f"   {normalize_whitespace(c['content_preview'])[:200]}")
    return ToolOutput("\n".join(lines), changes)


ToolFunc = Callable[[ToolContext, Dict[str, Any]], ToolOutput]


def _limit(default: int, maximum: int = 250) -> dict:
    return {"type": "integer", "minimum": 1, "maximum": maximum, "default": default}


def _spec(name: str, description: str, properties: Dict[str, Any], required: Optional[List[str]] = None) -> dict:
    params: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        params["required"] = required
    return {"name": name, "description": description, "parameters": params}


def build_tools() -> Tuple[Dict[str, Tuple[Optional[ToolFunc], dict]], List[dict]]:
    """Tool table: name -> (function, spec). The agent loop dispatches the two
    control tools (parallel_search, resolve_query_scope) itself."""
    tools: Dict[str, Tuple[Optional[ToolFunc], dict]] = {
        "get_music_history": (
            tool_get_music_history,
            _spec("get_music_history", "Songs/music played (title, artist, app, time), deduplicated.", {"limit": _limit(50)}),
        ),
        "get_recent_activities": (
            tool_get_recent_activities,
            _spec(
                "get_recent_activities",
                "Chronological activity events (app, window title, category, duration, time), newest first.",
                {"limit": _limit(40), "category_id": {"type": "integer", "minimum": 1, "maximum": 7}},
            ),
        ),
        "query_activities": (
            tool_query_activities,
            _spec(
                "query_activities",
                "Read-only SQL SELECT over `activities(app_name, window_title, start_time, end_time, duration_seconds, "
                "category_id, metadata)` and `code_file_events(path, project_root, entity_type, change_type, "
                "content_preview, detected_at)`. Tables are already limited to the query scope; :start_ts and :end_ts are bound.",
                {
                    "query": {"type": "string", "description": "A SELECT statement."},
                    "params": {"type": ["array", "object"]},
                    "limit": _limit(200, 1000),
                },
                ["query"],
            ),
        ),
        "get_usage_stats": (
            tool_get_usage_stats,
            _spec("get_usage_stats", "Time per app and per category for the scope.", {"limit": _limit(20, 100)}),
        ),
        "search_ocr": (
            tool_search_ocr,
            _spec(
                "search_ocr",
                "Search screen text (OCR) for a keyword; returns snippets with app and time.",
                {"keyword": {"type": "string"}, "limit": _limit(20, 200)},
                ["keyword"],
            ),
        ),
        "get_recent_ocr": (
            tool_get_recent_ocr,
            _spec(
                "get_recent_ocr",
                "Browse recent OCR captures (including chats) without an exact keyword.",
                {"limit": _limit(20), "app": {"type": "string"}, "keyword": {"type": "string"}},
            ),
        ),
        "get_recent_file_changes": (
            tool_get_recent_file_changes,
            _spec(
                "get_recent_file_changes",
                "Files/folders created, modified or deleted in watched projects, with content previews.",
                {
                    "limit": _limit(40),
                    "project": {"type": "string"},
                    "change_type": {"type": "string", "enum": list(CHANGE_TYPES)},
                },
            ),
        ),
        "parallel_search": (
            None,
            _spec(
                "parallel_search",
                "Run several tool calls concurrently for broader coverage.",
                {
                    "calls": {
                        "type": "array",
                        "items": {"type": "object", "properties": {"tool": {"type": "string"}, "args": {"type": "object"}}},
                    }
                },
                ["calls"],
            ),
        ),
        "resolve_query_scope": (
            None,
            _spec(
                "resolve_query_scope",
                "Stop and ask the user to approve a wider time range and/or more sources. Use only when the current scope "
                "cannot contain the answer.",
                {
                    "suggested_time_range": {"type": "string", "description": "e.g. last_7_days, last_30_days, this_year, all_time"},
                    "enable_sources": {"type": "array", "items": {"type": "string", "enum": ["ocr", "files", "music"]}},
                    "reason": {"type": "string"},
                },
                ["suggested_time_range", "reason"],
            ),
        ),
    }
    tool_specs = [spec for _, spec in tools.values()]
    return tools, tool_specs


TOOLS, TOOL_SPECS = build_tools()


def execute_tool(ctx: ToolContext, tool: str, args: Dict[str, Any]) -> ToolOutput:
    """Run one data tool with already-stamped arguments."""
    entry = TOOLS.get(tool)
    if entry is None:
        raise ToolExecutionError(tool, f"Unknown tool: {tool}")
    func = entry[0]
    if func is None:
        raise ToolExecutionError(tool, "must be dispatched by the agent loop")
    if not isinstance(args, dict):
        raise ToolExecutionError(tool, "args must be an object")
    ctx.check_cancelled()
    source = SOURCE_OF_TOOL.get(tool)
    if source and not ctx.sources.enabled(source):
        return ToolOutput(
            f"Source '{source}' is disabled for this query. If it is needed, ask the user to enable it "
            f"with resolve_query_scope (enable_sources=['{source}']).",
            [],
        )
    try:
        return func(ctx, args)
    except sqlite3.Error as e:
        raise ToolExecutionError(tool, f"SQL Error: {e}")
