"""Fixed aggregation pass for wide time ranges.

Year-scale questions cannot be answered from a few dozen raw events, so
before the model gets a turn we run a set of rollups and hand it one
digest line per step.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..analysis import summary as db_summary
from ..database.db import read_connection
from .intent import QueryIntent
from .models import AgentStep
from .scope import TimeScope
from .tools import ToolContext, ToolOutput, display_app_name, execute_tool, format_duration, stamp_args


log = logging.getLogger(__name__)

LONG_RANGE_SCOPES = ("this_year", "all_time")
RECAP_WORDS = ("year", "recap", "wrapped")


@dataclass
class LongRangeResult:
    steps: List[AgentStep] = field(default_factory=list)
    outputs: List[tuple] = field(default_factory=list)  # (tool, ToolOutput)
    digest: List[str] = field(default_factory=list)

    def message(self, scope: TimeScope) -> str:
        lines = [f"Long-range digest for {scope.label} (precomputed before your first turn):"]
        lines.extend(f"- {d}" for d in self.digest)
        lines.append("Use these aggregates as evidence; call tools only for details they do not cover.")
        return "\n".join(lines)


def should_run(scope: TimeScope, intent: QueryIntent, query: str, threshold_days: int = 90) -> bool:
    if scope.id in LONG_RANGE_SCOPES or scope.span_days >= threshold_days:
        return True
    q = (query or "").lower()
    return intent.broad_summary and any(w in q for w in RECAP_WORDS)


def _monthly_rollup(ctx: ToolContext, scope: TimeScope) -> ToolOutput:
    with read_connection(ctx.db_path) as conn:
        rows = db_summary.monthly_category_rollup(conn, scope.start_ts, scope.end_ts)
    if not rows:
        return ToolOutput("No usage recorded in the selected time range.", [])
    by_month: Dict[str, List[Dict[str, Any]]] = {}
    for r in rows:
        by_month.setdefault(r["month"], []).append(r)
    lines = ["Monthly time by category:"]
    for month, cats in by_month.items():
        parts = ", ".join(f"{c['category']} {format_duration(c['total_seconds'])}" for c in cats)
        lines.append(f"{month}: {parts}")
    records = [{"kind": "rollup", "title": r["month"], "category": r["category"], "total_seconds": r["total_seconds"]} for r in rows]
    return ToolOutput("\n".join(lines), records)


def _top_apps_rollup(ctx: ToolContext, scope: TimeScope) -> ToolOutput:
    with read_connection(ctx.db_path) as conn:
        rows = db_summary.usage_by_app(conn, scope.start_ts, scope.end_ts, limit=40)
    if not rows:
        return ToolOutput("No usage recorded in the selected time range.", [])
    lines = ["Top apps over the range:"]
    for i, r in enumerate(rows, 1):
        lines.append(f"{i}. {display_app_name(r['app'])} - {format_duration(r['total_seconds'])} ({r['count']} sessions)")
    records = [
        {"kind": "usage", "app": display_app_name(r["app"]), "total_seconds": r["total_seconds"], "count": r["count"]}
        for r in rows
    ]
    return ToolOutput("\n".join(lines), records)


def _digest(tool: str, output: ToolOutput) -> str:
    if not output.records:
        first = output.text.splitlines()[0] if output.text else "no data"
        return f"{tool}: {first}"
    recs = output.records
    if tool == "get_usage_stats":
        return f"{tool}: {output.text.splitlines()[0]}"
    if tool == "monthly_rollup":
        months: Dict[str, Dict[str, Any]] = {}
        for r in recs:
            # rows arrive sorted by total within each month
            months.setdefault(r["title"], r)
        parts = "; ".join(f"{m} mostly {r['category']} ({format_duration(r['total_seconds'])})" for m, r in months.items())
        return f"{tool}: {parts}"
    if tool == "top_apps_rollup":
        parts = ", ".join(f"{r['app']} {format_duration(r['total_seconds'])}" for r in recs[:10])
        return f"{tool}: {parts}"
    if tool == "get_music_history":
        parts = ", ".join(f"{(r.get('media') or {}).get('title')} - {(r.get('media') or {}).get('artist')}" for r in recs[:5])
        return f"{tool}: {len(recs)} tracks, e.g. {parts}"
    if tool == "get_recent_file_changes":
        parts = ", ".join(str(r.get("title")) for r in recs[:5])
        return f"{tool}: {len(recs)} changes, e.g. {parts}"
    if tool == "get_recent_ocr":
        return f"{tool}: {len(recs)} screen-text snippets, latest from {recs[0].get('app')}"
    latest = recs[0]
    return f"{tool}: {len(recs)} events, latest {latest.get('app')} - {str(latest.get('title'))[:80]}"


def run_long_range(ctx: ToolContext, scope: TimeScope, intent: QueryIntent) -> LongRangeResult:
    """Run the fixed rollup sequence and record each step with turn 0."""
    plan: List[tuple] = [
        ("get_usage_stats", {"limit": 20}),
        ("monthly_rollup", None),
        ("top_apps_rollup", None),
        ("get_recent_activities", {"limit": 30}),
    ]
    if intent.wants_files or intent.query_kind == "project":
        plan.append(("get_recent_file_changes", {"limit": 40}))
    if intent.wants_ocr:
        plan.append(("get_recent_ocr", {"limit": 20}))
    if intent.wants_music:
        plan.append(("get_music_history", {"limit": 50}))

    result = LongRangeResult()
    for tool, args in plan:
        ctx.check_cancelled()
        if tool == "monthly_rollup":
            stamped = {"start_ts": scope.start_ts, "end_ts": scope.end_ts, "scope_label": scope.label}
            output = _monthly_rollup(ctx, scope)
        elif tool == "top_apps_rollup":
            stamped = {"start_ts": scope.start_ts, "end_ts": scope.end_ts, "scope_label": scope.label, "limit": 40}
            output = _top_apps_rollup(ctx, scope)
        else:
            stamped = stamp_args(tool, args, scope)
            output = execute_tool(ctx, tool, stamped)
        result.steps.append(
            AgentStep(turn=0, tool_name=tool, tool_args=stamped, tool_result=output.text, reasoning="long-range prefetch")
        )
        result.outputs.append((tool, output))
        result.digest.append(_digest(tool, output))
    log.info("Long-range prefetch ran %d steps for %s", len(plan), scope.id)
    return result
