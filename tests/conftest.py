from __future__ import annotations

from datetime import date, datetime, time as dtime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from tracelens.agent import AgentConfig, AgentRunner
from tracelens.agent.events import EventSink
from tracelens.agent.stream import StreamedTurn, StreamSanitizer
from tracelens.config import QuerySettings
from tracelens.database.db import Database


FIXED_NOW = datetime.combine(date.today(), dtime(18, 0))


def at(hour: int, minute: int = 0, days_ago: int = 0) -> int:
    day = FIXED_NOW.date() - timedelta(days=days_ago)
    return int(datetime.combine(day, dtime(hour, minute)).timestamp())


class FakeModel:
    """Replays scripted turns; the last response repeats once the script runs out."""

    def __init__(self, responses: List[str]) -> None:
        self.responses = list(responses)
        self.calls: List[List[Dict[str, str]]] = []

    def stream(self, messages, on_token=None, on_reasoning=None, cancel=None) -> StreamedTurn:
        self.calls.append([dict(m) for m in messages])
        text = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if on_token is not None:
            sanitizer = StreamSanitizer()
            for i in range(0, len(text), 7):
                piece = sanitizer.feed(text[i : i + 7])
                if piece:
                    on_token(piece)
            tail = sanitizer.flush()
            if tail:
                on_token(tail)
        return StreamedTurn(text=text)


class RecordingSink(EventSink):
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def emit(self, kind: str, **data: Any) -> None:
        self.events.append((kind, data))

    def kinds(self) -> List[str]:
        return [k for k, _ in self.events]


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "activity.db"
    db = Database(path)
    db.init_schema()
    db.close()
    return path


@pytest.fixture
def seeded_db(db_path: Path) -> Path:
    db = Database(db_path)
    try:
        db.insert_activity("Code", "runner.py - tracelens", at(9), 3600, category_id=1)
        db.insert_activity("Google Chrome", "sqlite3 - Python docs", at(10), 1800, category_id=2)
        db.insert_activity(
            "Spotify", "Spotify Premium", at(11), 240, category_id=4,
            metadata={"media_info": {"title": "Midnight City", "artist": "M83", "status": "Playing"}},
        )
        db.insert_activity(
            "Google Chrome", "Python tutorial for beginners - YouTube", at(11, 30), 900, category_id=4,
            metadata={"media_info": {"title": "Python tutorial for beginners", "artist": "Corey", "status": "Playing"}},
        )
        db.insert_activity(
            "WhatsApp", "WhatsApp", at(12), 600, category_id=3,
            metadata={"screen_text": "Alex: are we still on for dinner tonight?   Me: yes, see you at 8"},
        )
        db.insert_activity(
            "Terminal", "zsh", at(13), 120, category_id=1,
            metadata={"screen_text": "#@!$%^&*()_+|}{:?><~ #@!$%^&*"},
        )
        db.insert_file_event(
            "/home/me/tracelens/tracelens/agent/runner.py", "/home/me/tracelens", "modified",
            detected_at=at(9, 30), content_preview="def run_query(self, query, settings):",
        )
        db.insert_activity(
            "Spotify", "Spotify Premium", at(10, days_ago=1), 200, category_id=4,
            metadata={"media_info": {"title": "Blinding Lights", "artist": "The Weeknd", "status": "Playing"}},
        )
        db.insert_activity("Slack", "general - team", at(14, days_ago=1), 900, category_id=3)
    finally:
        db.close()
    return db_path


@pytest.fixture
def settings() -> QuerySettings:
    return QuerySettings(api_key="test-key")


@pytest.fixture
def make_runner(seeded_db: Path) -> Callable[..., tuple]:
    def _make(responses: List[str], db: Optional[Path] = None, **cfg_overrides: Any) -> tuple:
        model = FakeModel(responses)
        cfg = AgentConfig(db_path=db or seeded_db, **cfg_overrides)
        return AgentRunner(cfg, model_factory=lambda s, c: model), model

    return _make
