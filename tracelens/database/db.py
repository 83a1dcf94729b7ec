from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional


CATEGORY_NAMES = {
    1: "Development",
    2: "Browser",
    3: "Communication",
    4: "Entertainment",
    5: "Productivity",
    6: "System",
    7: "Other",
}


def category_name(category_id: Optional[int]) -> str:
    return CATEGORY_NAMES.get(int(category_id or 7), "Other")


@dataclass(slots=True)
class MediaInfo:
    title: str = ""
    artist: str = ""
    status: str = ""  # 'Playing', 'Paused' or 'Stopped'


@dataclass(slots=True)
class ActivityMetadata:
    screen_text: Optional[str] = None
    background_windows: List[str] = field(default_factory=list)
    media_info: Optional[MediaInfo] = None

    @staticmethod
    def decode(raw: Any) -> Optional["ActivityMetadata"]:
        """Parse the tracker's metadata column (JSON stored as text or blob)."""
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray, memoryview)):
            raw = bytes(raw).decode("utf-8", errors="replace")
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        media = data.get("media_info")
        media_info = None
        if isinstance(media, dict):
            media_info = MediaInfo(
                title=str(media.get("title") or ""),
                artist=str(media.get("artist") or ""),
                status=str(media.get("status") or ""),
            )
        bg = data.get("background_windows") or []
        return ActivityMetadata(
            screen_text=data.get("screen_text") if isinstance(data.get("screen_text"), str) else None,
            background_windows=[str(w) for w in bg if isinstance(w, str)],
            media_info=media_info,
        )


@contextmanager
def read_connection(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a short-lived connection for one tool call or worker."""
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


class Database:
    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self._conn.close()

    # --- schema management ---
    def init_schema(self) -> None:
        import importlib.resources as res

        with res.files("tracelens.database").joinpath("schema.sql").open("r", encoding="utf-8") as f:
            sql = f.read()
        self._conn.executescript(sql)

    # --- seeding (the desktop tracker owns the real write path) ---
    def insert_activity(
        self,
        app_name: str,
        window_title: str,
        start_time: int,
        duration_seconds: int,
        category_id: int = 7,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        blob = json.dumps(metadata, ensure_ascii=False).encode("utf-8") if metadata is not None else None
        cur = self._conn.execute(
            """
            INSERT INTO activities(app_name, window_title, category_id, start_time, end_time, duration_seconds, metadata)
            VALUES (?,?,?,?,?,?,?)
            """,
            (app_name, window_title, int(category_id), int(start_time), int(start_time + duration_seconds), int(duration_seconds), blob),
        )
        return int(cur.lastrowid)

    def insert_file_event(
        self,
        path: str,
        project_root: str,
        change_type: str,
        detected_at: Optional[int] = None,
        content_preview: Optional[str] = None,
        entity_type: str = "file",
    ) -> int:
        cur = self._conn.execute(
            """
            INSERT INTO code_file_events(path, project_root, entity_type, change_type, content_preview, detected_at)
            VALUES (?,?,?,?,?,?)
            """,
            (path, project_root, entity_type, change_type, content_preview, int(detected_at or time.time())),
        )
        return int(cur.lastrowid)

    def counts(self) -> Dict[str, int]:
        activities = self._conn.execute("SELECT COUNT(*) FROM activities").fetchone()[0]
        files = self._conn.execute("SELECT COUNT(*) FROM code_file_events").fetchone()[0]
        return {"activities": int(activities), "file_events": int(files)}
