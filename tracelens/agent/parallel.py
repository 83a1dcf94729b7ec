from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..errors import QueryCancelled, ToolExecutionError
from .retry import RetryOutcome, run_with_retry
from .scope import TimeScope
from .tools import SCOPE_EXEMPT_TOOLS, ToolContext, normalize_whitespace, stamp_args


log = logging.getLogger(__name__)

SNIPPET_CHARS = 1500


@dataclass
class ParallelResult:
    text: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    sub_results: List[RetryOutcome] = field(default_factory=list)


def record_key(record: Dict[str, Any]) -> Tuple[Any, ...]:
    return (record.get("app"), record.get("title"), record.get("time"))


def dedupe_records(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    seen = set()
    out = []
    for r in records:
        key = record_key(r) if "time" in r else (r.get("kind"), r.get("app"), r.get("title"))
        if key in seen:
            continue
        seen.add(key)
        out.append(r)
    return out


def _validate_calls(calls: Any) -> List[Tuple[str, Dict[str, Any]]]:
    if not isinstance(calls, list) or not calls:
        raise ToolExecutionError("parallel_search", "'calls' must be a non-empty list")
    parsed = []
    for i, call in enumerate(calls):
        if not isinstance(call, dict) or not isinstance(call.get("tool"), str):
            raise ToolExecutionError("parallel_search", f"call {i} must be an object with a 'tool' name")
        tool = call["tool"]
        if tool in SCOPE_EXEMPT_TOOLS:
            raise ToolExecutionError("parallel_search", f"'{tool}' cannot be nested inside parallel_search")
        args = call.get("args") or {}
        if not isinstance(args, dict):
            raise ToolExecutionError("parallel_search", f"call {i} args must be an object")
        parsed.append((tool, args))
    return parsed


def run_parallel(
    ctx: ToolContext,
    calls: Any,
    scope: TimeScope,
    max_workers: int = 6,
    max_attempts: int = 3,
) -> ParallelResult:
    """Fan out tool calls on a bounded pool; one failure fails the batch."""
    parsed = _validate_calls(calls)
    stamped = [(tool, stamp_args(tool, args, scope)) for tool, args in parsed]
    ctx.check_cancelled()

    workers = max(1, min(len(stamped), max_workers))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tracelens-parallel") as pool:
        futures = [pool.submit(run_with_retry, ctx, tool, args, max_attempts) for tool, args in stamped]
        outcomes: List[RetryOutcome] = []
        for i, fut in enumerate(futures):
            tool = stamped[i][0]
            try:
                outcomes.append(fut.result())
            except (ToolExecutionError, QueryCancelled) as e:
                for other in futures:
                    other.cancel()
                if isinstance(e, QueryCancelled):
                    raise
                raise ToolExecutionError("parallel_search", f"call {i + 1} ({tool}) failed: {e}") from e

    lines = [f"Parallel search executed {len(outcomes)} tool calls:"]
    records: List[Dict[str, Any]] = []
    for o in outcomes:
        lines.append(f"- {o.tool} (attempts: {o.attempts})")
        lines.append(f"  {normalize_whitespace(o.observation())[:SNIPPET_CHARS]}")
        records.extend(o.output.records)
    log.info("parallel_search ran %d calls on %d workers", len(outcomes), workers)
    return ParallelResult(text="\n".join(lines), records=dedupe_records(records), sub_results=outcomes)
