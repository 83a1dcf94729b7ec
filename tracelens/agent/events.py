from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


log = logging.getLogger(__name__)


@dataclass
class AgentEvent:
    kind: str  # status | token | reasoning | done
    data: Dict[str, Any] = field(default_factory=dict)


class EventSink:
    def emit(self, kind: str, **data: Any) -> None:
        raise NotImplementedError

    def status(self, message: str) -> None:
        self.emit("status", message=message)

    def token(self, text: str) -> None:
        self.emit("token", text=text)

    def reasoning(self, text: str) -> None:
        self.emit("reasoning", text=text)

    def done(self, **data: Any) -> None:
        self.emit("done", **data)


class NullEventSink(EventSink):
    def emit(self, kind: str, **data: Any) -> None:
        return None


class QueueEventSink(EventSink):
    """Fire-and-forget delivery to a callback on a daemon thread.

    The agent loop never blocks on a slow consumer: a full queue drops the
    event, and callback failures are logged.
    """

    def __init__(self, callback: Callable[[AgentEvent], None], maxsize: int = 1000) -> None:
        self.callback = callback
        self.q: "queue.Queue[AgentEvent]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "QueueEventSink":
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True, name="tracelens-events")
        self._thread.start()
        return self

    def stop(self, timeout: float = 2.0) -> None:
        self._running = False
        if self._thread:
            self._thread.join(timeout=timeout)

    def emit(self, kind: str, **data: Any) -> None:
        try:
            self.q.put_nowait(AgentEvent(kind, data))
        except queue.Full:
            self.dropped += 1

    def _run(self) -> None:
        while self._running or not self.q.empty():
            try:
                ev = self.q.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.callback(ev)
            except Exception:  # noqa: BLE001 - consumer errors never reach the agent
                log.exception("Event callback failed for %s event", ev.kind)

    def __enter__(self) -> "QueueEventSink":
        return self.start()

    def __exit__(self, *exc: Any) -> None:
        self.stop()
