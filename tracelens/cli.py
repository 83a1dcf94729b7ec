from __future__ import annotations

import argparse
import logging
import os
import sys
import time
from pathlib import Path

import uvicorn

from .agent import AgentConfig, AgentRunner
from .agent.events import AgentEvent, QueueEventSink
from .agent.scope import resolve_scope
from .agent.tools import format_duration
from .analysis.summary import summary
from .api import create_app
from .config import QuerySettings, Settings, SourceToggles
from .database.db import Database
from .errors import TraceLensError


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(message)s")


def cmd_init_db(args: argparse.Namespace) -> None:
    db_path = Path(args.db).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(db_path)
    db.init_schema()
    print(f"Initialized schema at {db.path}")
    db.close()


def cmd_seed_demo(args: argparse.Namespace) -> None:
    db_path = Path(args.db).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = Database(db_path)
    try:
        db.init_schema()
        now = int(time.time())
        for day in range(args.days):
            base = now - day * 86400 - 3 * 3600
            db.insert_activity("Code", "runner.py - tracelens", base, 2400, category_id=1)
            db.insert_activity("Google Chrome", "sqlite3 - Python docs", base + 2400, 900, category_id=2)
            db.insert_activity(
                "Spotify", "Spotify Premium", base + 3300, 240, category_id=4,
                metadata={"media_info": {"title": "Midnight City", "artist": "M83", "status": "Playing"}},
            )
            db.insert_activity(
                "WhatsApp", "WhatsApp", base + 3600, 600, category_id=3,
                metadata={"screen_text": "Alex: are we still on for dinner tonight? Me: yes, see you at 8"},
            )
            db.insert_file_event(
                "/home/demo/tracelens/tracelens/agent/runner.py", "/home/demo/tracelens", "modified",
                detected_at=base + 600, content_preview="def run_query(self, query, settings):",
            )
        counts = db.counts()
        print(f"Seeded {counts['activities']} activities and {counts['file_events']} file events into {db.path}")
    finally:
        db.close()


def cmd_analyze(args: argparse.Namespace) -> None:
    scope = resolve_scope(args.scope)
    info = summary(Path(args.db).expanduser(), scope.start_ts, scope.end_ts)
    print(f"Scope:\t\t{scope.label}")
    print("Tracked:\t", format_duration(info["total_seconds"]))
    print("Sessions:\t", info["sessions"])
    print("Apps:\t\t", info["apps"])
    print("Top apps (by time):")
    for a in info["top_apps"]:
        print(f"  {a['app'][:30]:30s} {format_duration(a['total_seconds']):>12s}")
    print("Categories:")
    for c in info["categories"]:
        print(f"  {c['category']:30s} {format_duration(c['total_seconds']):>12s}")
    if info["file_changes"]:
        print("File changes:", ", ".join(f"{k}={v}" for k, v in info["file_changes"].items()))


def rerun_hint(request: dict, sources: SourceToggles) -> str:
    hint = f"--scope {request['suggested_time_range']}"
    if request.get("enable_sources"):
        widened = sources.with_enabled(request["enable_sources"])
        hint += " --sources " + ",".join(s for s in ("ocr", "files", "music") if widened.enabled(s))
    return f"(re-run with {hint} to widen the search)"


def cmd_ask(args: argparse.Namespace) -> None:
    env = Settings.from_env()
    sources = SourceToggles()
    if args.sources is not None:
        wanted = {s.strip() for s in args.sources.split(",") if s.strip()}
        sources = SourceToggles(ocr="ocr" in wanted, files="files" in wanted, music="music" in wanted)
    settings = QuerySettings(
        api_key=args.api_key or env.openai_api_key or "",
        model_id=args.model or env.openai_model,
        base_url=env.openai_base_url,
        sources=sources,
    )
    runner = AgentRunner(AgentConfig(db_path=Path(args.db).expanduser()))

    def on_event(ev: AgentEvent) -> None:
        if ev.kind == "token":
            sys.stdout.write(ev.data.get("text", ""))
            sys.stdout.flush()
        elif ev.kind == "status":
            logging.getLogger(__name__).info("%s", ev.data.get("message"))

    sink = QueueEventSink(on_event).start() if args.stream else None
    try:
        result = runner.run_query(args.question, settings, explicit_scope=args.scope, sink=sink)
    except (TraceLensError, ValueError) as e:
        raise SystemExit(f"Error: {e}")
    finally:
        if sink is not None:
            sink.stop()

    if args.stream:
        print()
    print(result.answer)
    if args.show_steps:
        print()
        for s in result.steps:
            print(f"[turn {s.turn}] {s.tool_name} {s.tool_args}")
    if result.scope_request:
        print()
        print(rerun_hint(result.scope_request, sources))


def main() -> None:
    p = argparse.ArgumentParser(prog="tracelens", description="TraceLens: ask questions about your recorded activity")
    p.add_argument("--log-level", default=Settings.from_env().log_level, help="Logging level (DEBUG, INFO, ...)")
    sub = p.add_subparsers(dest="cmd", required=True)
    default_db = str(Settings.from_env().db_path)

    p_init = sub.add_parser("init-db", help="Create the activity tables if missing")
    p_init.add_argument("--db", default=default_db, help="Path to SQLite database file")
    p_init.set_defaults(func=cmd_init_db)

    p_seed = sub.add_parser("seed-demo", help="Insert demo activity and file-change records into the DB")
    p_seed.add_argument("--db", default=default_db, help="Path to SQLite database file")
    p_seed.add_argument("--days", type=int, default=3, help="Number of days of demo data")
    p_seed.set_defaults(func=cmd_seed_demo)

    p_an = sub.add_parser("analyze", help="Usage summary for a time scope")
    p_an.add_argument("--db", default=default_db, help="Path to SQLite database file")
    p_an.add_argument("--scope", default="today", help="Scope id (today, yesterday, last_7_days, this_year, ...)")
    p_an.set_defaults(func=cmd_analyze)

    p_ask = sub.add_parser("ask", help="Ask the agent a question about your activity")
    p_ask.add_argument("question")
    p_ask.add_argument("--db", default=default_db, help="Path to SQLite database file")
    p_ask.add_argument("--scope", default=None, help="Explicit scope id; otherwise inferred from the question")
    p_ask.add_argument("--model", default=None, help="Override the model id")
    p_ask.add_argument("--api-key", default=None, help="Override OPENAI_API_KEY")
    p_ask.add_argument("--sources", default=None, help="Comma-separated enabled sources (ocr,files,music)")
    p_ask.add_argument("--stream", action="store_true", help="Print answer tokens as they arrive")
    p_ask.add_argument("--show-steps", action="store_true", help="Print the tool-call log")
    p_ask.set_defaults(func=cmd_ask)

    p_srv = sub.add_parser("serve", help="Run the FastAPI insights server")
    p_srv.add_argument("--db", default=default_db, help="Path to SQLite database file")
    p_srv.add_argument("--host", default="127.0.0.1")
    p_srv.add_argument("--port", type=int, default=8000)
    p_srv.add_argument("--reload", action="store_true", help="Enable auto-reload (dev)")

    def cmd_serve(args: argparse.Namespace) -> None:
        db_path = str(Path(args.db).expanduser())
        if args.reload:
            # Use import string + factory so uvicorn can reload workers properly
            os.environ["TRACELENS_DB_PATH"] = db_path
            uvicorn.run("tracelens.api:app_factory", host=args.host, port=args.port, reload=True, factory=True)
        else:
            app = create_app(Path(db_path))
            uvicorn.run(app, host=args.host, port=args.port, reload=False)

    p_srv.set_defaults(func=cmd_serve)

    args = p.parse_args()
    _setup_logging(args.log_level)
    try:
        args.func(args)
    except ValueError as e:
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
