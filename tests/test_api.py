from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from conftest import FakeModel
from tracelens.api import create_app
from tracelens.errors import NetworkError


class FailingModel:
    def stream(self, messages, on_token=None, on_reasoning=None, cancel=None):
        raise NetworkError("API Error 500: upstream exploded", status=500)


def client_for(db_path, model) -> TestClient:
    return TestClient(create_app(db_path, model_factory=lambda s, c: model))


@pytest.fixture
def client(seeded_db):
    return client_for(seeded_db, FakeModel(["Hi! Ask me about your day."]))


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_summary_for_yesterday(client):
    r = client.get("/summary", params={"scope": "yesterday"})
    assert r.status_code == 200
    body = r.json()
    assert body["scope"]["id"] == "yesterday"
    assert body["total_seconds"] == 1100
    assert {a["app"] for a in body["top_apps"]} == {"Spotify", "Slack"}


def test_summary_rejects_unknown_scope(client):
    r = client.get("/summary", params={"scope": "next_tuesday"})
    assert r.status_code == 400
    assert "Unknown scope" in r.json()["detail"]


def test_summary_with_huge_scope_is_clamped(client):
    r = client.get("/summary", params={"scope": "last_1000000_days"})
    assert r.status_code == 200
    assert r.json()["scope"]["start_ts"] == 0
    assert r.json()["total_seconds"] > 0


def test_insights_without_key_is_503(client, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    r = client.post("/insights", json={"question": "hi"})
    assert r.status_code == 503


def test_insights_with_header_key(client):
    r = client.post("/insights", json={"question": "hi"}, headers={"X-OpenAI-Key": "sk-test"})
    assert r.status_code == 200
    body = r.json()
    assert body["answer"] == "Hi! Ask me about your day."
    assert body["steps"] == []
    assert body["scope"]["id"] == "today"
    assert body["scope_request"] is None


def test_insights_rejects_unknown_explicit_scope(client):
    r = client.post("/insights", json={"question": "what did I do", "api_key": "k", "scope": "someday"})
    assert r.status_code == 400


def test_model_failure_is_bad_gateway(seeded_db):
    client = client_for(seeded_db, FailingModel())
    r = client.post("/insights", json={"question": "what did I do", "api_key": "k"})
    assert r.status_code == 502
    assert "upstream exploded" in r.json()["detail"]


def _events(body: str):
    out = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        out.append((lines["event"], json.loads(lines["data"])))
    return out


def test_stream_ends_with_result(client):
    with client.stream("POST", "/insights/stream", json={"question": "hi", "api_key": "k"}) as r:
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        body = "".join(r.iter_text())
    events = _events(body)
    kinds = [k for k, _ in events]
    assert "token" in kinds
    assert kinds[-2:] == ["done", "result"]
    assert events[-1][1]["answer"] == "Hi! Ask me about your day."


def test_stream_reports_errors_as_events(seeded_db):
    client = client_for(seeded_db, FailingModel())
    with client.stream("POST", "/insights/stream", json={"question": "what did I do", "api_key": "k"}) as r:
        body = "".join(r.iter_text())
    kind, data = _events(body)[-1]
    assert kind == "error"
    assert "upstream exploded" in data["detail"]
