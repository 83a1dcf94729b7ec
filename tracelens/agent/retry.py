from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .tools import DEFAULT_LIMITS, ToolContext, ToolOutput, execute_tool


log = logging.getLogger(__name__)

MAX_LOOKBACK_HOURS = 168

# Empty records plus one of these phrases marks a low-signal result.
LOW_SIGNAL_PHRASES = {
    "get_music_history": ("no music activity found",),
    "get_recent_activities": ("no activity events found",),
    "search_ocr": ("no ocr", "no matches"),
    "get_recent_ocr": ("no ocr",),
    "get_recent_file_changes": ("no file changes found",),
    "query_activities": ("[]", "no rows"),
    "get_usage_stats": ("no usage recorded",),
}


@dataclass
class RetryOutcome:
    tool: str
    output: ToolOutput
    retries: int = 0
    args: Dict[str, Any] = field(default_factory=dict)

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def observation(self) -> str:
        if self.retries > 0:
            return f"Auto-retried with broader search {self.retries} time(s).\n{self.output.text}"
        return self.output.text


def is_low_signal(tool: str, output: ToolOutput) -> bool:
    if output.records:
        return False
    text = (output.text or "").strip().lower()
    if not text:
        return True
    return any(p in text for p in LOW_SIGNAL_PHRASES.get(tool, ()))


def limit_cap(tool: str) -> int:
    return 200 if tool == "search_ocr" else 250


def broaden_args(tool: str, args: Dict[str, Any], attempt: int) -> Dict[str, Any]:
    """Arguments for ``attempt`` (2-based) after a low-signal result.

    Limits grow by 20 up to the tool cap. The lookback only doubles when the
    scope was not fixed by the caller or the question.
    """
    new = dict(args)
    try:
        current = int(args.get("limit") or DEFAULT_LIMITS.get(tool, 20))
    except (TypeError, ValueError):
        current = DEFAULT_LIMITS.get(tool, 20)
    new["limit"] = min(current + 20, limit_cap(tool))

    if not args.get("scope_fixed", True) and "start_ts" in args and "end_ts" in args:
        start, end = int(args["start_ts"]), int(args["end_ts"])
        hours = int(args.get("hours") or max(1, math.ceil((end - start) / 3600)))
        hours = max(hours, min(hours * 2, MAX_LOOKBACK_HOURS))
        new["hours"] = hours
        new["start_ts"] = min(start, end - hours * 3600)

    keyword = str(args.get("keyword") or "").strip()
    if attempt == 2 and tool in ("search_ocr", "get_recent_ocr") and len(keyword.split()) > 1:
        new["keyword"] = keyword.split()[0]
    return new


def run_with_retry(
    ctx: ToolContext,
    tool: str,
    args: Dict[str, Any],
    max_attempts: int = 3,
    on_retry: Optional[Callable[[str, int], None]] = None,
) -> RetryOutcome:
    """Execute a tool, broadening and re-running on low-signal results.

    ToolExecutionError from any attempt propagates to the caller.
    """
    current = dict(args)
    output = execute_tool(ctx, tool, current)
    retries = 0
    while retries + 1 < max_attempts and is_low_signal(tool, output):
        retries += 1
        current = broaden_args(tool, current, retries + 1)
        log.info("Low-signal result from %s; retry %d with limit=%s", tool, retries, current.get("limit"))
        if on_retry is not None:
            on_retry(tool, retries)
        output = execute_tool(ctx, tool, current)
    return RetryOutcome(tool=tool, output=output, retries=retries, args=current)
