"""Turn parsing for the JSON-in-text tool protocol.

The model answers each turn either with a tool call object
``{"tool": ..., "args": {...}, "reasoning": ...}`` or with plain prose.
Streaming models wrap, fence and half-break that JSON often enough that
a single ``json.loads`` is not sufficient.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from ..errors import ParseError


THINK_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
OPEN_THINK = re.compile(r"<think>.*\Z", re.DOTALL | re.IGNORECASE)
SPECIAL_TOKEN = re.compile(r"<\|[^|>]*\|>")
FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
TOOL_WRAPPERS = re.compile(r"</?tool_call>|\[TOOL_CALLS\]", re.IGNORECASE)
# A "reasoning" string the model forgot to escape properly.
REASONING_FIELD = re.compile(r',?\s*"reasoning"\s*:\s*".*?"\s*(?=[,}])', re.DOTALL)


@dataclass
class ToolCall:
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)
    reasoning: Optional[str] = None


@dataclass
class FinalAnswer:
    text: str


Turn = Union[ToolCall, FinalAnswer]


def strip_delimiters(text: str) -> str:
    out = THINK_BLOCK.sub("", text or "")
    out = OPEN_THINK.sub("", out)
    out = SPECIAL_TOKEN.sub("", out)
    return TOOL_WRAPPERS.sub("", out).strip()


def _unfence(text: str) -> str:
    return FENCE.sub("", text.strip()).strip()


def parse_tool_json(text: str) -> ToolCall:
    """Strict stage: the whole text must be one tool-call object."""
    try:
        obj = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError(f"not JSON: {e}")
    if not isinstance(obj, dict) or not isinstance(obj.get("tool"), str):
        raise ParseError("JSON has no 'tool' name")
    args = obj.get("args")
    if args is None:
        args = {}
    if not isinstance(args, dict):
        raise ParseError("'args' is not an object")
    reasoning = obj.get("reasoning")
    return ToolCall(tool=obj["tool"].strip(), args=args, reasoning=reasoning if isinstance(reasoning, str) else None)


def _outermost_object(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start : end + 1]


def parse_turn(raw: str) -> Turn:
    cleaned = _unfence(strip_delimiters(raw))
    if not cleaned:
        return FinalAnswer("")
    try:
        return parse_tool_json(cleaned)
    except ParseError:
        pass

    if '"tool"' in cleaned and '"args"' in cleaned:
        candidate = _outermost_object(cleaned)
        if candidate is not None:
            try:
                return parse_tool_json(candidate)
            except ParseError:
                pass
            excised = re.sub(r"\{\s*,", "{", REASONING_FIELD.sub("", candidate))
            try:
                return parse_tool_json(excised)
            except ParseError:
                pass
    return FinalAnswer(cleaned)
