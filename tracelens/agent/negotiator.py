"""Scope-change proposals that need the user's confirmation.

The agent never widens its own scope. It can only propose a wider range or
extra sources, and the host re-runs the query once the user agrees.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from ..config import SourceToggles
from .scope import TimeScope, resolve_scope


log = logging.getLogger(__name__)

ACTION_KIND = "confirm_scope_or_sources"
ACTION_PATTERN = re.compile(r"\[\[IF_ACTION:(\{.*?\})\]\]", re.DOTALL)
WIDEN_LADDER = ("last_7_days", "last_30_days", "this_year", "all_time")
KNOWN_SOURCES = ("ocr", "files", "music")


def widen_suggestion(scope: TimeScope) -> Optional[str]:
    """Next wider scope id, or None when the scope is already all_time."""
    sid = scope.id
    if sid == "all_time":
        return None
    if sid == "this_year":
        return "all_time"
    days = scope.span_days
    if days < 7 - 1e-6 or sid in ("today", "yesterday", "this_week") or sid.endswith("_hours"):
        return "last_7_days"
    if days < 30:
        return "last_30_days"
    if days < 365:
        return "this_year"
    return "all_time"


def build_scope_request(
    args: Dict[str, Any], scope: TimeScope, query: str, sources: Optional[SourceToggles] = None
) -> Dict[str, Any]:
    """Validate a resolve_query_scope call into the confirmation payload."""
    suggested = str(args.get("suggested_time_range") or "").strip().lower()
    try:
        if not suggested:
            raise ValueError("no suggested_time_range")
        resolve_scope(suggested)
    except ValueError:
        fallback = widen_suggestion(scope) or "all_time"
        log.info("Model proposed unknown scope %r; suggesting %s", suggested, fallback)
        suggested = fallback
    raw_sources = args.get("enable_sources") or []
    if isinstance(raw_sources, str):
        raw_sources = [raw_sources]
    enable: List[str] = []
    for s in raw_sources:
        name = str(s).strip().lower()
        if name in KNOWN_SOURCES and name not in enable:
            if sources is None or not sources.enabled(name):
                enable.append(name)
    return {
        "suggested_time_range": suggested,
        "enable_sources": enable,
        "reason": str(args.get("reason") or "").strip(),
        "original_query": query,
        "current_scope": scope.id,
    }


def embed_action(answer: str, request: Dict[str, Any]) -> str:
    payload = dict(request)
    payload["kind"] = ACTION_KIND
    return f"{answer}\n\n[[IF_ACTION:{json.dumps(payload, ensure_ascii=False)}]]"


def extract_action(answer: str) -> Optional[Dict[str, Any]]:
    m = ACTION_PATTERN.search(answer or "")
    if m is None:
        return None
    try:
        payload = json.loads(m.group(1))
    except ValueError:
        return None
    if not isinstance(payload, dict) or payload.get("kind") != ACTION_KIND:
        return None
    return payload


def describe_request(request: Dict[str, Any]) -> str:
    parts = [f"I can look at {request['suggested_time_range'].replace('_', ' ')} instead"]
    if request.get("enable_sources"):
        parts.append(f"with {', '.join(request['enable_sources'])} enabled")
    text = " ".join(parts) + "."
    if request.get("reason"):
        text = f"{request['reason']} {text}"
    return f"{text} Do you want me to widen the search?"
