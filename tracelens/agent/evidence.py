from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from .config import EvidencePolicy
from .intent import CHAT_APPS, QueryIntent
from .parallel import dedupe_records
from .parsing import strip_delimiters
from .tools import ToolOutput


log = logging.getLogger(__name__)

NOT_ENOUGH_EVIDENCE = (
    "I couldn't find enough evidence in your activity for {label} to answer that reliably, "
    "so I'd rather not guess."
)
IDENTITY_CAVEAT = (
    "Note: I couldn't find chat messages confirming this. It is inferred from other activity "
    "and may be wrong."
)

INTERNAL_PLANNING = re.compile(
    r"^\s*(?:(?:i|we)\s+(?:will|should|need to|am going to|'ll)\s+(?:now\s+)?(?:call|use|run|query|check)\b"
    r"|let me (?:call|use|run|query|check)\b"
    r"|next,? i(?:'ll| will)\b"
    r"|calling (?:the )?tool\b"
    r"|tool output:"
    r"|thought:"
    r"|action:)",
    re.IGNORECASE,
)
COMMUNICATION_CLAIM = re.compile(
    r"\b(texted|texting|chatted|chatting|messaged|messaging|dm'?d|talked to|talking to)\b", re.IGNORECASE
)


def _is_chat_record(r: Dict[str, Any]) -> bool:
    if r.get("kind") not in ("ocr", "activity"):
        return False
    if r.get("category") == "Communication":
        return True
    hay = f"{r.get('app') or ''} {r.get('title') or ''}".lower()
    return any(app in hay for app in CHAT_APPS)


@dataclass
class EvidenceEntry:
    tool: str
    records: List[Dict[str, Any]]


@dataclass
class EvidenceLedger:
    entries: List[EvidenceEntry] = field(default_factory=list)

    def add(self, tool: str, output: ToolOutput) -> None:
        self.entries.append(EvidenceEntry(tool, list(output.records)))

    @property
    def non_empty(self) -> List[EvidenceEntry]:
        return [e for e in self.entries if e.records]

    @property
    def is_empty(self) -> bool:
        return not self.non_empty

    def distinct_tools(self) -> int:
        return len({e.tool for e in self.non_empty})

    def has_chat_evidence(self) -> bool:
        return any(_is_chat_record(r) for e in self.entries for r in e.records)

    def non_chat_signal_tools(self) -> int:
        return len({e.tool for e in self.non_empty if any(not _is_chat_record(r) for r in e.records)})

    def file_records_with_content(self) -> int:
        return sum(
            1
            for e in self.entries
            for r in e.records
            if r.get("kind") == "file_change" and (r.get("content_preview") or "").strip()
        )

    def referenced(self) -> List[Dict[str, Any]]:
        timed = [r for e in self.entries for r in e.records if "time" in r]
        return dedupe_records(timed)


@dataclass
class GateDecision:
    action: str  # accept | force_search | reject | give_up
    message: str = ""
    calls: List[Dict[str, Any]] = field(default_factory=list)


def broad_search_calls(intent: QueryIntent) -> List[Dict[str, Any]]:
    """Intent-driven call set for a forced parallel_search."""
    calls: List[Dict[str, Any]] = [
        {"tool": "get_usage_stats", "args": {"limit": 20}},
        {"tool": "get_recent_activities", "args": {"limit": 60}},
    ]
    if intent.wants_music:
        calls.append({"tool": "get_music_history", "args": {"limit": 50}})
    if intent.wants_ocr or intent.query_kind in ("identity", "multi_faceted"):
        calls.append({"tool": "get_recent_ocr", "args": {"limit": 30}})
    if intent.wants_files or intent.query_kind == "project":
        calls.append({"tool": "get_recent_file_changes", "args": {"limit": 60}})
    return calls


class EvidenceGate:
    def __init__(self, policy: EvidencePolicy, intent: QueryIntent) -> None:
        self.policy = policy
        self.intent = intent
        self.forced_searches = 0
        self.rejections = 0

    def sufficient(self, ledger: EvidenceLedger) -> Tuple[bool, str]:
        p = self.policy
        kind = self.intent.query_kind
        if kind == "identity":
            if ledger.has_chat_evidence() or ledger.non_chat_signal_tools() >= p.identity_min_signals:
                return True, ""
            return False, (
                "identity questions need chat evidence (get_recent_ocr / search_ocr on chat apps) "
                f"or at least {p.identity_min_signals} corroborating signals from different tools"
            )
        if kind == "project":
            if ledger.file_records_with_content() >= p.project_min_file_records:
                return True, ""
            return False, "project questions need at least one file change with content (get_recent_file_changes)"
        if kind == "multi_faceted":
            if ledger.distinct_tools() >= p.multi_min_tools:
                return True, ""
            return False, f"this question needs results from at least {p.multi_min_tools} different tools"
        if len(ledger.non_empty) >= p.general_min_results:
            return True, ""
        return False, "no tool has returned any data yet"

    def review(self, ledger: EvidenceLedger) -> GateDecision:
        if self.intent.small_talk:
            return GateDecision("accept")
        if ledger.is_empty and self.forced_searches < self.policy.max_forced_searches:
            self.forced_searches += 1
            return GateDecision(
                "force_search",
                "You answered without any evidence. A broad search was run; answer only from its results.",
                broad_search_calls(self.intent),
            )
        ok, reason = self.sufficient(ledger)
        if ok:
            return GateDecision("accept")
        self.rejections += 1
        log.info("Evidence gate rejected answer (%d/%d): %s", self.rejections, self.policy.max_rejections, reason)
        if self.rejections >= self.policy.max_rejections:
            return GateDecision("give_up", reason)
        return GateDecision(
            "reject",
            f"Your answer was rejected: not enough evidence ({reason}). Gather more with tools, "
            "or call resolve_query_scope if the current scope cannot contain the answer.",
        )


def _normalize_markdown(text: str) -> str:
    out = text.replace("**", "")
    out = re.sub(r"^\s*[•●▪*]\s+", "- ", out, flags=re.MULTILINE)
    return re.sub(r"\n{3,}", "\n\n", out).strip()


def scrub_answer(text: str) -> str:
    """Remove leaked delimiters, tool-call JSON and planning lines."""
    cleaned = strip_delimiters(text)
    kept = []
    for line in cleaned.splitlines():
        stripped = line.strip()
        if '"tool"' in stripped and '"args"' in stripped:
            continue
        if stripped.startswith('"reasoning"') or stripped.startswith("{\"reasoning\""):
            continue
        if INTERNAL_PLANNING.match(stripped):
            continue
        kept.append(line)
    return _normalize_markdown("\n".join(kept))


def finalize_answer(text: str, intent: QueryIntent, ledger: EvidenceLedger) -> str:
    answer = scrub_answer(text)
    if intent.query_kind != "identity" or ledger.has_chat_evidence():
        return answer
    lowered = answer.lower()
    claims = bool(COMMUNICATION_CLAIM.search(answer)) or any(
        re.search(rf"\b{re.escape(app)}\b", lowered) for app in CHAT_APPS
    )
    if claims:
        log.info("Identity answer claims communication without chat evidence; adding caveat")
        return f"{answer}\n\n{IDENTITY_CAVEAT}"
    return answer
