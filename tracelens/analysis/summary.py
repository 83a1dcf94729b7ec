from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Dict, List

from ..database.db import category_name


def window_totals(conn: sqlite3.Connection, start_ts: int, end_ts: int) -> Dict[str, int]:
    row = conn.execute(
        """
        SELECT COALESCE(SUM(duration_seconds), 0), COUNT(*), COUNT(DISTINCT app_name)
        FROM activities
        WHERE start_time >= ? AND start_time <= ?
        """,
        (start_ts, end_ts),
    ).fetchone()
    return {"total_seconds": int(row[0] or 0), "sessions": int(row[1] or 0), "apps": int(row[2] or 0)}


def usage_by_app(conn: sqlite3.Connection, start_ts: int, end_ts: int, limit: int = 20) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT app_name, SUM(duration_seconds) AS total, COUNT(*) AS cnt
        FROM activities
        WHERE start_time >= ? AND start_time <= ?
        GROUP BY app_name
        ORDER BY total DESC
        LIMIT ?
        """,
        (start_ts, end_ts, int(limit)),
    ).fetchall()
    return [{"app": r[0], "total_seconds": int(r[1] or 0), "count": int(r[2])} for r in rows]


def usage_by_category(conn: sqlite3.Connection, start_ts: int, end_ts: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT category_id, SUM(duration_seconds) AS total
        FROM activities
        WHERE start_time >= ? AND start_time <= ?
        GROUP BY category_id
        ORDER BY total DESC
        """,
        (start_ts, end_ts),
    ).fetchall()
    return [{"category": category_name(r[0]), "total_seconds": int(r[1] or 0)} for r in rows]


def monthly_category_rollup(conn: sqlite3.Connection, start_ts: int, end_ts: int) -> List[Dict[str, Any]]:
    """Seconds per (local calendar month, category), oldest month first."""
    rows = conn.execute(
        """
        SELECT strftime('%Y-%m', start_time, 'unixepoch', 'localtime') AS month,
               category_id,
               SUM(duration_seconds) AS total
        FROM activities
        WHERE start_time >= ? AND start_time <= ?
        GROUP BY month, category_id
        ORDER BY month ASC, total DESC
        """,
        (start_ts, end_ts),
    ).fetchall()
    return [{"month": r[0], "category": category_name(r[1]), "total_seconds": int(r[2] or 0)} for r in rows]


def summary(db_path: Path, start_ts: int, end_ts: int) -> dict:
    conn = sqlite3.connect(db_path)
    try:
        totals = window_totals(conn, start_ts, end_ts)
        files = conn.execute(
            "SELECT change_type, COUNT(*) FROM code_file_events WHERE detected_at >= ? AND detected_at <= ? GROUP BY change_type",
            (start_ts, end_ts),
        ).fetchall()
        return {
            "total_seconds": totals["total_seconds"],
            "sessions": totals["sessions"],
            "apps": totals["apps"],
            "top_apps": usage_by_app(conn, start_ts, end_ts, limit=10),
            "categories": usage_by_category(conn, start_ts, end_ts),
            "file_changes": {r[0]: int(r[1]) for r in files},
        }
    finally:
        conn.close()
