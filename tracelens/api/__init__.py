from __future__ import annotations

import json
import logging
import os
import queue
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ..agent import AgentConfig, AgentRunner
from ..agent.events import AgentEvent, QueueEventSink
from ..agent.runner import ModelFactory
from ..agent.scope import resolve_scope
from ..analysis import summary as db_summary
from ..config import QuerySettings, Settings, SourceToggles, get_openai_api_key
from ..database.db import Database
from ..errors import ConfigurationError, NetworkError, TraceLensError


log = logging.getLogger(__name__)


class InsightRequest(BaseModel):
    question: str
    model: Optional[str] = None
    api_key: Optional[str] = None  # optional override
    base_url: Optional[str] = None
    scope: Optional[str] = None
    history: List[Dict[str, str]] = Field(default_factory=list)
    sources: Optional[List[str]] = None  # enabled sources; omitted means all


class InsightResponse(BaseModel):
    answer: str
    steps: List[Dict[str, Any]]
    activities_referenced: List[Dict[str, Any]]
    scope: Dict[str, Any]
    scope_request: Optional[Dict[str, Any]] = None


def _sources(names: Optional[List[str]]) -> SourceToggles:
    if names is None:
        return SourceToggles()
    wanted = {n.strip().lower() for n in names}
    return SourceToggles(ocr="ocr" in wanted, files="files" in wanted, music="music" in wanted)


def _sse(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def create_app(db_path: Path, model_factory: Optional[ModelFactory] = None) -> FastAPI:
    app = FastAPI(title="TraceLens Insights API", version="0.1.0")
    # Enable CORS for frontend apps (handles OPTIONS preflight requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Ensure the tables exist so a fresh install answers instead of erroring
    try:
        db = Database(db_path)
        db.init_schema()
        db.close()
    except Exception as e:  # noqa: BLE001 - endpoints report the real error later
        log.warning("Could not prepare database at %s: %s", db_path, e)

    runner = AgentRunner(AgentConfig(db_path=db_path), model_factory=model_factory)

    def query_settings(req: InsightRequest, header_key: Optional[str]) -> QuerySettings:
        try:
            key = get_openai_api_key(req.api_key or header_key)
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=str(e))
        env = Settings.from_env()
        return QuerySettings(
            api_key=key,
            model_id=req.model or env.openai_model,
            base_url=req.base_url or env.openai_base_url,
            sources=_sources(req.sources),
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/summary")
    def summary(scope: str = "today") -> dict:
        try:
            ts = resolve_scope(scope)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"scope": ts.as_dict(), **db_summary.summary(db_path, ts.start_ts, ts.end_ts)}

    @app.post("/insights", response_model=InsightResponse)
    def insights(req: InsightRequest, x_openai_key: Optional[str] = Header(default=None)) -> InsightResponse:
        settings = query_settings(req, x_openai_key)
        try:
            result = runner.run_query(req.question, settings, prior_turns=req.history, explicit_scope=req.scope)
        except ConfigurationError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except NetworkError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return InsightResponse(**result.to_dict())

    @app.post("/insights/stream")
    def insights_stream(req: InsightRequest, x_openai_key: Optional[str] = Header(default=None)) -> StreamingResponse:
        settings = query_settings(req, x_openai_key)
        if req.scope:
            try:
                resolve_scope(req.scope)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        def events() -> Iterator[str]:
            out: "queue.Queue[Optional[AgentEvent]]" = queue.Queue()
            sink = QueueEventSink(out.put).start()
            cancel = threading.Event()
            outcome: Dict[str, Any] = {}

            def work() -> None:
                try:
                    outcome["result"] = runner.run_query(
                        req.question, settings, prior_turns=req.history, explicit_scope=req.scope, sink=sink, cancel=cancel
                    )
                except TraceLensError as e:
                    outcome["error"] = str(e)
                except Exception as e:  # noqa: BLE001 - reported to the client as an error event
                    log.exception("Streaming query failed")
                    outcome["error"] = f"Internal error: {e}"
                finally:
                    sink.stop()
                    out.put(None)

            threading.Thread(target=work, daemon=True, name="tracelens-query").start()
            try:
                while True:
                    ev = out.get()
                    if ev is None:
                        break
                    yield _sse(ev.kind, ev.data)
                if "result" in outcome:
                    yield _sse("result", outcome["result"].to_dict())
                else:
                    yield _sse("error", {"detail": outcome.get("error", "unknown error")})
            finally:
                # client went away or stream finished
                cancel.set()

        return StreamingResponse(events(), media_type="text/event-stream")

    return app


# Uvicorn reload/workers require an importable factory with no args.
# The CLI sets TRACELENS_DB_PATH before running with --reload.
def app_factory() -> FastAPI:  # pragma: no cover
    db_env = os.getenv("TRACELENS_DB_PATH")
    if not db_env:
        raise RuntimeError("TRACELENS_DB_PATH is not set; cannot create app")
    return create_app(Path(db_env).expanduser())
