from __future__ import annotations

import logging
import threading

from tracelens.agent.events import NullEventSink, QueueEventSink


def test_events_are_delivered_in_order():
    seen = []
    done = threading.Event()

    def on_event(ev):
        seen.append((ev.kind, ev.data))
        if ev.kind == "done":
            done.set()

    with QueueEventSink(on_event) as sink:
        sink.status("Thinking...")
        sink.token("Hel")
        sink.token("lo")
        sink.done(answer="Hello")
        assert done.wait(2)
    assert [k for k, _ in seen] == ["status", "token", "token", "done"]
    assert seen[-1][1] == {"answer": "Hello"}


def test_failing_consumer_is_logged_not_raised(caplog):
    seen = []

    def on_event(ev):
        if ev.kind == "status":
            raise RuntimeError("consumer broke")
        seen.append(ev.kind)

    with caplog.at_level(logging.ERROR):
        sink = QueueEventSink(on_event).start()
        sink.status("x")
        sink.token("y")
        sink.stop()
    assert seen == ["token"]
    assert "Event callback failed" in caplog.text


def test_full_queue_drops_events():
    sink = QueueEventSink(lambda ev: None, maxsize=1)
    sink.token("a")
    sink.token("b")
    assert sink.dropped == 1


def test_null_sink_accepts_everything():
    NullEventSink().done(answer="x")
