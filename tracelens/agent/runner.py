from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import QuerySettings, Settings
from ..errors import QueryCancelled, ToolExecutionError
from . import longrange
from .config import AgentConfig
from .events import EventSink, NullEventSink
from .evidence import NOT_ENOUGH_EVIDENCE, EvidenceGate, EvidenceLedger, finalize_answer
from .intent import QueryIntent, classify_intent
from .models import AgentResult, AgentStep
from .negotiator import build_scope_request, describe_request, embed_action, widen_suggestion
from .parallel import run_parallel
from .parsing import FinalAnswer, ToolCall, parse_turn
from .prompt import SYNTHESIS_PROMPT, system_prompt
from .retry import run_with_retry
from .scope import TimeScope, resolve_scope, scope_from_text
from .stream import ChatModel
from .tools import ToolContext, build_tools, stamp_args, truncate_for_token_limit


log = logging.getLogger(__name__)

ModelFactory = Callable[[QuerySettings, AgentConfig], Any]

EMPTY_ANSWER = "I couldn't put together an answer from the activity data."


def default_model_factory(settings: QuerySettings, cfg: AgentConfig) -> ChatModel:
    return ChatModel(
        api_key=settings.api_key,
        model=settings.model_id,
        base_url=settings.base_url,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        timeout=cfg.request_timeout,
    )


@dataclass
class _QueryState:
    query: str
    scope: TimeScope
    intent: QueryIntent
    ctx: ToolContext
    sink: EventSink
    gate: EvidenceGate
    messages: List[Dict[str, str]] = field(default_factory=list)
    steps: List[AgentStep] = field(default_factory=list)
    ledger: EvidenceLedger = field(default_factory=EvidenceLedger)


def replay_history(prior_turns: Optional[List[Dict[str, Any]]], keep: int = 12, max_chars: int = 1200) -> List[Dict[str, str]]:
    turns = []
    for t in prior_turns or []:
        content = str(t.get("content") or "").strip()
        if not content:
            continue
        role = "assistant" if str(t.get("role") or "").lower() in ("assistant", "ai", "model", "bot") else "user"
        turns.append({"role": role, "content": content[:max_chars]})
    return turns[-keep:] if keep > 0 else []


def _fmt_ts(ts: int) -> str:
    try:
        return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")
    except (OverflowError, OSError, ValueError):
        return str(ts)


def user_message(query: str, scope: TimeScope, intent: QueryIntent, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    window = f"{scope.label} ({_fmt_ts(scope.start_ts)} to {_fmt_ts(scope.end_ts)})"
    if not scope.fixed:
        window += ", default because the question names no time range"
    lines = [
        f"Question: {query}",
        f"Current local time: {now:%Y-%m-%d %H:%M} ({now:%A})",
        f"Time scope: {window}",
        f"Question type: {intent.query_kind}",
    ]
    hints = intent.hints()
    if hints:
        lines.append(f"Likely relevant data: {', '.join(hints)}")
    return "\n".join(lines)


class AgentRunner:
    def __init__(self, cfg: AgentConfig, model_factory: Optional[ModelFactory] = None) -> None:
        self.cfg = cfg
        self.tools, self.tool_specs = build_tools()
        self.model_factory = model_factory or default_model_factory

    def run_query(
        self,
        query: str,
        settings: QuerySettings,
        prior_turns: Optional[List[Dict[str, Any]]] = None,
        explicit_scope: Optional[str] = None,
        sink: Optional[EventSink] = None,
        cancel: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> AgentResult:
        settings.validate()
        sink = sink or NullEventSink()
        scope = resolve_scope(explicit_scope, now=now) if explicit_scope else scope_from_text(query, now=now)
        intent = classify_intent(query)
        log.info("Query scope=%s kind=%s hints=%s", scope.id, intent.query_kind, intent.hints())

        state = _QueryState(
            query=query,
            scope=scope,
            intent=intent,
            ctx=ToolContext(Path(self.cfg.db_path), settings.sources, cancel),
            sink=sink,
            gate=EvidenceGate(self.cfg.evidence, intent),
        )
        state.messages.append({"role": "system", "content": system_prompt(self.tool_specs)})
        state.messages.extend(replay_history(prior_turns, self.cfg.prior_turns_kept, self.cfg.prior_turn_chars))
        state.messages.append({"role": "user", "content": user_message(query, scope, intent, now)})

        model = self.model_factory(settings, self.cfg)
        try:
            result = self._run(state, model)
        except QueryCancelled:
            log.info("Query cancelled after %d steps", len(state.steps))
            sink.done(cancelled=True)
            raise
        except Exception as e:
            log.warning("Query failed after %d steps: %s", len(state.steps), e)
            sink.done(error=str(e))
            raise
        sink.done(answer=result.answer, steps=len(result.steps))
        return result

    def _run(self, state: _QueryState, model: Any) -> AgentResult:
        if longrange.should_run(state.scope, state.intent, state.query, self.cfg.long_range_days):
            state.sink.status(f"Aggregating activity for {state.scope.label}...")
            lr = longrange.run_long_range(state.ctx, state.scope, state.intent)
            state.steps.extend(lr.steps)
            for tool, output in lr.outputs:
                state.ledger.add(tool, output)
            state.messages.append({"role": "user", "content": lr.message(state.scope)})

        for turn in range(1, self.cfg.max_turns + 1):
            state.ctx.check_cancelled()
            state.sink.status("Thinking..." if turn == 1 else f"Working (step {turn})...")
            streamed = model.stream(
                state.messages, on_token=state.sink.token, on_reasoning=state.sink.reasoning, cancel=state.ctx.cancel
            )
            # Reasoning stays in the transcript; parse_turn and finalize_answer strip it.
            state.messages.append({"role": "assistant", "content": streamed.transcript})
            parsed = parse_turn(streamed.transcript)

            if isinstance(parsed, ToolCall):
                reasoning = parsed.reasoning or (streamed.reasoning[:500] if streamed.reasoning else None)
                if parsed.tool == "resolve_query_scope":
                    return self._scope_request(state, turn, parsed.args, reasoning)
                observation = self._call_tool(state, turn, parsed.tool, parsed.args, reasoning)
                state.messages.append({"role": "user", "content": f"Tool Output: {observation}"})
                continue

            result = self._review_answer(state, turn, parsed)
            if result is not None:
                return result

        log.info("Turn budget exhausted after %d turns", self.cfg.max_turns)
        return self._synthesize(state, model)

    # --- tool dispatch ---
    def _call_tool(
        self, state: _QueryState, turn: int, tool: str, args: Dict[str, Any], reasoning: Optional[str]
    ) -> str:
        state.ctx.check_cancelled()
        state.sink.status(f"Running {tool}...")
        recorded_args: Dict[str, Any] = args
        try:
            if tool == "parallel_search":
                res = run_parallel(
                    state.ctx, args.get("calls"), state.scope, self.cfg.max_parallel_workers, self.cfg.retry_attempts
                )
                recorded_args = {"calls": [{"tool": o.tool, "args": o.args} for o in res.sub_results]}
                for o in res.sub_results:
                    state.ledger.add(o.tool, o.output)
                observation = res.text
            else:
                recorded_args = stamp_args(tool, args, state.scope)
                outcome = run_with_retry(
                    state.ctx,
                    tool,
                    recorded_args,
                    self.cfg.retry_attempts,
                    on_retry=lambda t, n: state.sink.status(f"Broadening {t} (retry {n})..."),
                )
                state.ledger.add(tool, outcome.output)
                observation = outcome.observation()
        except ToolExecutionError as e:
            log.warning("Tool call failed: %s", e)
            observation = f"Error: {e}"

        observation = truncate_for_token_limit(observation, self.cfg.observation_limit)
        state.steps.append(AgentStep(turn, tool, recorded_args, observation, reasoning))
        return observation

    def _scope_request(self, state: _QueryState, turn: int, args: Dict[str, Any], reasoning: Optional[str]) -> AgentResult:
        request = build_scope_request(args, state.scope, state.query, state.ctx.sources)
        state.steps.append(AgentStep(turn, "resolve_query_scope", dict(args), describe_request(request), reasoning))
        log.info("Halting for scope confirmation: %s", request["suggested_time_range"])
        return self._result(state, embed_action(describe_request(request), request), request)

    # --- answer handling ---
    def _review_answer(self, state: _QueryState, turn: int, parsed: FinalAnswer) -> Optional[AgentResult]:
        decision = state.gate.review(state.ledger)
        if decision.action == "accept":
            answer = finalize_answer(parsed.text, state.intent, state.ledger) or EMPTY_ANSWER
            return self._result(state, answer)
        if decision.action == "give_up":
            return self._not_enough(state)
        if decision.action == "force_search":
            state.sink.status("Searching your activity before answering...")
            observation = self._call_tool(state, turn, "parallel_search", {"calls": decision.calls}, "forced broad search")
            state.messages.append({"role": "user", "content": f"{decision.message}\nTool Output: {observation}"})
            return None
        state.messages.append({"role": "user", "content": decision.message})
        return None

    def _synthesize(self, state: _QueryState, model: Any) -> AgentResult:
        ok, _ = state.gate.sufficient(state.ledger)
        if not ok or state.ledger.is_empty:
            return self._not_enough(state)
        state.sink.status("Summarizing the evidence...")
        evidence = "\n\n".join(f"[{s.tool_name}] {s.tool_result[:1500]}" for s in state.steps)
        prompt = SYNTHESIS_PROMPT.format(query=state.query, scope=state.scope.label, evidence=evidence)
        streamed = model.stream(
            [{"role": "user", "content": prompt}], on_token=state.sink.token, cancel=state.ctx.cancel
        )
        parsed = parse_turn(streamed.transcript)
        if not isinstance(parsed, FinalAnswer) or not parsed.text:
            return self._not_enough(state)
        return self._result(state, finalize_answer(parsed.text, state.intent, state.ledger))

    def _not_enough(self, state: _QueryState) -> AgentResult:
        answer = NOT_ENOUGH_EVIDENCE.format(label=state.scope.label)
        wider = widen_suggestion(state.scope)
        if wider is None:
            return self._result(state, answer)
        request = {
            "suggested_time_range": wider,
            "enable_sources": [],
            "reason": f"Nothing conclusive in {state.scope.label}.",
            "original_query": state.query,
            "current_scope": state.scope.id,
        }
        prompt = describe_request(dict(request, reason=""))
        return self._result(state, embed_action(f"{answer} {prompt}", request), request)

    def _result(self, state: _QueryState, answer: str, scope_request: Optional[Dict[str, Any]] = None) -> AgentResult:
        return AgentResult(
            answer=answer,
            steps=list(state.steps),
            activities_referenced=state.ledger.referenced(),
            scope=state.scope.as_dict(),
            scope_request=scope_request,
        )


def run_query(
    query: str,
    settings: QuerySettings,
    prior_turns: Optional[List[Dict[str, Any]]] = None,
    explicit_scope: Optional[str] = None,
    sink: Optional[EventSink] = None,
    cancel: Optional[threading.Event] = None,
    db_path: Optional[Path] = None,
) -> AgentResult:
    cfg = AgentConfig(db_path=Path(db_path) if db_path else Settings.from_env().db_path)
    return AgentRunner(cfg).run_query(query, settings, prior_turns, explicit_scope, sink, cancel)
