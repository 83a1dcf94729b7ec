from __future__ import annotations

import json
import threading

import pytest

from conftest import FIXED_NOW, RecordingSink, at
from tracelens.agent import AgentConfig, AgentRunner
from tracelens.agent.evidence import IDENTITY_CAVEAT
from tracelens.agent.negotiator import extract_action
from tracelens.agent.scope import resolve_scope
from tracelens.agent.stream import StreamedTurn
from tracelens.config import QuerySettings
from tracelens.database.db import Database
from tracelens.errors import ConfigurationError, NetworkError, QueryCancelled


def call(tool, **args):
    return json.dumps({"tool": tool, "args": args, "reasoning": f"need {tool}"})


REF_KEYS = {"kind", "app", "title", "time", "duration_seconds", "category"}


def test_every_tool_step_carries_the_query_scope(make_runner, settings):
    runner, _ = make_runner(
        [
            call("get_recent_activities", hours=999, start_ts=0, limit=5),
            call("get_usage_stats", start_time_iso="2001-01-01T00:00:00"),
            call("search_ocr", keyword="dinner"),
            "You coded in Code and chatted on WhatsApp about dinner.",
        ]
    )
    result = runner.run_query("what apps did I use yesterday", settings, now=FIXED_NOW)
    scope = resolve_scope("yesterday", now=FIXED_NOW)
    assert result.scope["id"] == "yesterday"
    tool_steps = [s for s in result.steps if s.tool_name != "parallel_search"]
    assert len(tool_steps) == 3
    for step in tool_steps:
        assert step.tool_args["start_ts"] == scope.start_ts
        assert step.tool_args["end_ts"] == scope.end_ts
        assert "hours" not in step.tool_args
        assert "start_time_iso" not in step.tool_args
    assert tool_steps[0].reasoning == "need get_recent_activities"


def test_referenced_records_have_a_stable_shape(make_runner, settings):
    runner, _ = make_runner(
        [
            call("parallel_search", calls=[
                {"tool": "get_recent_activities", "args": {}},
                {"tool": "get_recent_ocr", "args": {}},
                {"tool": "get_music_history", "args": {}},
            ]),
            "Mostly Code, some music and a WhatsApp chat.",
        ]
    )
    result = runner.run_query("what did I do", settings, now=FIXED_NOW)
    assert result.activities_referenced
    for ref in result.activities_referenced:
        assert REF_KEYS <= set(ref)
    keys = [(r["app"], r["title"], r["time"]) for r in result.activities_referenced]
    assert len(keys) == len(set(keys))


def test_what_did_i_do_defaults_to_today(make_runner, settings):
    runner, model = make_runner(
        [
            call("parallel_search", calls=[
                {"tool": "get_usage_stats", "args": {}},
                {"tool": "get_recent_activities", "args": {}},
            ]),
            "You spent the morning in Code.",
        ]
    )
    result = runner.run_query("what did I do", settings, now=FIXED_NOW)
    assert result.scope["id"] == "today"
    assert result.scope["fixed"] is False
    assert result.answer == "You spent the morning in Code."
    assert "Time scope: Today" in model.calls[0][-1]["content"]


def test_zero_evidence_answer_forces_a_search(make_runner, settings):
    runner, model = make_runner(["You used lots of apps.", "Mostly Code and Chrome."])
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assert [s.tool_name for s in result.steps] == ["parallel_search"]
    assert result.steps[0].reasoning == "forced broad search"
    assert result.answer == "Mostly Code and Chrome."
    assert len(model.calls) == 2
    assert "Parallel search executed" in model.calls[1][-1]["content"]


def test_music_yesterday_routes_without_scope_negotiation(make_runner, settings):
    runner, _ = make_runner([call("get_music_history", limit=10), "Yesterday you played Blinding Lights by The Weeknd."])
    result = runner.run_query("what songs did I listen to yesterday?", settings, now=FIXED_NOW)
    assert [s.tool_name for s in result.steps] == ["get_music_history"]
    assert result.scope_request is None
    assert result.scope["id"] == "yesterday"
    assert [r["media"]["title"] for r in result.activities_referenced] == ["Blinding Lights"]


@pytest.fixture
def quiet_db(tmp_path):
    db_path = tmp_path / "quiet.db"
    db = Database(db_path)
    db.init_schema()

    db.insert_activity("Code", "notes.md", at(9), 1800, category_id=1)
    db.insert_activity("Spotify", "Spotify", at(10), 200, category_id=4,
                       metadata={"media_info": {"title": "Intro", "artist": "The xx", "status": "Playing"}})
    db.close()
    return db_path


def test_identity_claim_without_chat_evidence_is_caveated(make_runner, settings, quiet_db):
    runner, _ = make_runner(
        [call("get_recent_activities"), call("get_music_history"), "You've been texting Sam on WhatsApp."],
        db=quiet_db,
    )
    result = runner.run_query("who is my crush?", settings, now=FIXED_NOW)
    assert result.answer.endswith(IDENTITY_CAVEAT)


def test_identity_without_enough_signals_is_widened(make_runner, settings, quiet_db):
    runner, _ = make_runner([call("get_usage_stats"), "You texted Sam."], db=quiet_db)
    result = runner.run_query("who is my crush?", settings, now=FIXED_NOW)
    assert "enough evidence" in result.answer
    assert result.scope_request["suggested_time_range"] == "last_7_days"
    assert extract_action(result.answer)["suggested_time_range"] == "last_7_days"


def test_whole_year_summary_prefetches_aggregates(make_runner, settings):
    runner, model = make_runner(["This year you mostly coded."])
    result = runner.run_query("Summarize my whole year", settings, now=FIXED_NOW)
    names = [s.tool_name for s in result.steps]
    assert names[:2] == ["get_usage_stats", "monthly_rollup"]
    assert all(s.turn == 0 for s in result.steps)
    assert result.scope["id"] == "this_year"
    assert any("Long-range digest" in m["content"] for m in model.calls[0])
    assert result.answer == "This year you mostly coded."


def test_scope_negotiation_halts_the_loop(make_runner, settings):
    runner, model = make_runner(
        [call("resolve_query_scope", suggested_time_range="last_30_days", enable_sources=["ocr"], reason="Nothing today.")]
    )
    result = runner.run_query("who did I chat with", settings, now=FIXED_NOW)
    assert len(model.calls) == 1
    assert result.scope_request["suggested_time_range"] == "last_30_days"
    assert result.scope_request["original_query"] == "who did I chat with"
    assert extract_action(result.answer)["kind"] == "confirm_scope_or_sources"


def test_confirmed_rerun_uses_the_explicit_scope(make_runner, settings):
    runner, _ = make_runner([call("get_music_history"), "You played Blinding Lights and Midnight City."])
    result = runner.run_query("what songs did I play", settings, explicit_scope="last_7_days", now=FIXED_NOW)
    assert result.scope["id"] == "last_7_days"
    assert result.steps[0].turn == 1
    assert len(result.activities_referenced) == 2


def test_tool_errors_are_fed_back_to_the_model(make_runner, settings):
    runner, model = make_runner([call("drop_everything"), call("get_usage_stats"), "Code was your top app."])
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assert result.steps[0].tool_result.startswith("Error: Tool 'drop_everything' error")
    assert model.calls[1][-1]["content"].startswith("Tool Output: Error:")
    assert result.answer == "Code was your top app."


def test_bad_sql_is_an_error_observation(make_runner, settings):
    runner, _ = make_runner([call("query_activities", query="DELETE FROM activities"), call("get_usage_stats"), "Done."])
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assert "Only SELECT" in result.steps[0].tool_result


def test_long_observations_are_truncated(make_runner, settings):
    runner, _ = make_runner([call("get_recent_activities"), "Busy day."], observation_limit=100)
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assert result.steps[0].tool_result.endswith("... [truncated]")
    assert len(result.steps[0].tool_result) == 100 + len("... [truncated]")


def test_turn_budget_falls_back_to_synthesis(make_runner, settings):
    runner, model = make_runner(
        [call("get_usage_stats"), call("get_usage_stats"), call("get_usage_stats"), "Code led the day."],
        max_turns=3,
    )
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assert len(model.calls) == 4
    assert "run out of tool calls" in model.calls[-1][0]["content"]
    assert result.answer == "Code led the day."


def test_turn_budget_without_evidence_is_not_enough(make_runner, settings, db_path):
    runner, _ = make_runner([call("get_usage_stats")], db=db_path, max_turns=2)
    result = runner.run_query("what apps did I use yesterday", settings, now=FIXED_NOW)
    assert "enough evidence" in result.answer
    assert result.scope_request["suggested_time_range"] == "last_7_days"


def test_history_is_capped_and_truncated(make_runner, settings):
    runner, model = make_runner(["Hi there!"])
    history = [{"role": "user" if i % 2 else "assistant", "content": f"turn {i} " + "x" * 2000} for i in range(20)]
    history.append({"role": "user", "content": "   "})
    runner.run_query("hello", settings, prior_turns=history, now=FIXED_NOW)
    replayed = model.calls[0][1:-1]
    assert len(replayed) == 12
    assert replayed[0]["content"].startswith("turn 8 ")
    assert all(len(m["content"]) == 1200 for m in replayed)
    assert {m["role"] for m in replayed} == {"user", "assistant"}


def test_small_talk_needs_no_evidence(make_runner, settings):
    runner, _ = make_runner(["Hi! Ask me about your day."])
    result = runner.run_query("hi", settings, now=FIXED_NOW)
    assert result.steps == []
    assert result.answer == "Hi! Ask me about your day."


def test_missing_key_or_disabled_ai_is_a_configuration_error(make_runner):
    runner, model = make_runner(["unused"])
    with pytest.raises(ConfigurationError):
        runner.run_query("what did I do", QuerySettings(api_key=""))
    with pytest.raises(ConfigurationError):
        runner.run_query("what did I do", QuerySettings(api_key="k", enabled=False))
    assert model.calls == []


def test_cancellation_raises_and_emits_done(make_runner, settings):
    runner, model = make_runner(["unused"])
    cancel = threading.Event()
    cancel.set()
    sink = RecordingSink()
    with pytest.raises(QueryCancelled):
        runner.run_query("what did I do", settings, sink=sink, cancel=cancel, now=FIXED_NOW)
    assert model.calls == []
    assert sink.events[-1] == ("done", {"cancelled": True})


def test_events_stream_status_tokens_and_done(make_runner, settings):
    runner, _ = make_runner([call("get_usage_stats"), "Code was your top app today, by a wide margin over Chrome."])
    sink = RecordingSink()
    result = runner.run_query("what apps did I use today", settings, sink=sink, now=FIXED_NOW)
    kinds = sink.kinds()
    assert kinds[0] == "status"
    assert kinds[-1] == "done"
    streamed = "".join(d["text"] for k, d in sink.events if k == "token")
    assert streamed == result.answer
    assert '"tool"' not in streamed


@pytest.mark.parametrize("query", ["highlights from today", "history today?", "his name?"])
def test_short_questions_starting_like_greetings_still_need_evidence(make_runner, settings, query):
    runner, _ = make_runner(["You spent 9 hours in Photoshop.", "Mostly Code and Chrome."])
    result = runner.run_query(query, settings, now=FIXED_NOW)
    assert result.steps
    assert result.steps[0].reasoning == "forced broad search"
    assert result.answer != "You spent 9 hours in Photoshop."


class ThinkingModel:
    def __init__(self, turns):
        self.turns = list(turns)
        self.calls = []

    def stream(self, messages, on_token=None, on_reasoning=None, cancel=None):
        self.calls.append([dict(m) for m in messages])
        reasoning, text = self.turns.pop(0)
        if on_reasoning is not None:
            on_reasoning(reasoning)
        return StreamedTurn(text=text, reasoning=reasoning)


def test_reasoning_is_kept_in_the_transcript_but_not_the_answer(seeded_db, settings):
    model = ThinkingModel(
        [
            ("Usage stats will show the top app.", call("get_usage_stats")),
            ("I will call nothing else. The answer is Code.", "Code was your top app today."),
        ]
    )
    runner = AgentRunner(AgentConfig(db_path=seeded_db), model_factory=lambda s, c: model)
    result = runner.run_query("what apps did I use today", settings, now=FIXED_NOW)
    assistant = [m for m in model.calls[1] if m["role"] == "assistant"]
    assert assistant[-1]["content"].startswith("<think>Usage stats will show the top app.</think>{")
    assert result.steps[0].tool_name == "get_usage_stats"
    assert result.answer == "Code was your top app today."


def test_same_query_twice_references_the_same_records(make_runner, settings):
    script = [
        call("parallel_search", calls=[
            {"tool": "get_recent_activities", "args": {}},
            {"tool": "get_recent_ocr", "args": {}},
            {"tool": "get_music_history", "args": {}},
        ]),
        "Mostly Code, some music and a WhatsApp chat.",
    ]
    keys = []
    for _ in range(2):
        runner, _ = make_runner(list(script))
        result = runner.run_query("what did I do", settings, now=FIXED_NOW)
        keys.append({(r["app"], r["title"], r["time"]) for r in result.activities_referenced})
    assert keys[0]
    assert keys[0] == keys[1]


class BrokenModel:
    def stream(self, messages, on_token=None, on_reasoning=None, cancel=None):
        raise NetworkError("API Error 503: overloaded", status=503)


def test_failed_query_still_emits_done(seeded_db, settings):
    runner = AgentRunner(AgentConfig(db_path=seeded_db), model_factory=lambda s, c: BrokenModel())
    sink = RecordingSink()
    with pytest.raises(NetworkError):
        runner.run_query("what did I do", settings, sink=sink, now=FIXED_NOW)
    assert sink.events[-1] == ("done", {"error": "API Error 503: overloaded"})
