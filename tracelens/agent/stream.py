from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import openai
from openai import OpenAI

from ..errors import NetworkError, QueryCancelled
from .parsing import OPEN_THINK, SPECIAL_TOKEN, THINK_BLOCK


log = logging.getLogger(__name__)

TokenCallback = Callable[[str], None]

TOOL_DELIMITERS = ("<tool_call>", "[TOOL_CALLS]")


class StreamSanitizer:
    """Decides which streamed characters are safe to show the user.

    The cleaned text is recomputed from the raw buffer on every delta, so
    delimiters split across chunks are still removed. The last
    ``lookahead`` characters are held back until more text (or the end of
    the stream) shows what they belong to.
    """

    def __init__(self, lookahead: int = 64) -> None:
        self.lookahead = lookahead
        self.raw = ""
        self.emitted = 0
        self.suppressed = False

    @staticmethod
    def clean(text: str) -> str:
        out = THINK_BLOCK.sub("", text)
        out = OPEN_THINK.sub("", out)
        return SPECIAL_TOKEN.sub("", out)

    def _is_tool_shaped(self, cleaned: str) -> bool:
        if any(d in self.raw for d in TOOL_DELIMITERS):
            return True
        if '"reasoning"' in cleaned:
            return True
        return '"tool"' in cleaned and '"args"' in cleaned

    def feed(self, delta: str) -> str:
        self.raw += delta or ""
        if self.suppressed:
            return ""
        cleaned = self.clean(self.raw)
        if self._is_tool_shaped(cleaned):
            self.suppressed = True
            return ""
        head = cleaned.lstrip()
        if head.startswith("{") or head.startswith("```"):
            return ""
        safe_end = max(self.emitted, len(cleaned) - self.lookahead)
        out = cleaned[self.emitted : safe_end]
        self.emitted = safe_end
        return out

    def flush(self) -> str:
        if self.suppressed:
            return ""
        cleaned = self.clean(self.raw)
        if self._is_tool_shaped(cleaned):
            self.suppressed = True
            return ""
        out = cleaned[self.emitted :]
        self.emitted = len(cleaned)
        return out


@dataclass
class StreamedTurn:
    text: str
    reasoning: str = ""

    @property
    def transcript(self) -> str:
        if self.reasoning:
            return f"<think>{self.reasoning}</think>{self.text}"
        return self.text


class ChatModel:
    """Streaming chat client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1200,
        timeout: float = 60.0,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.client = client or OpenAI(api_key=api_key, base_url=base_url or None, timeout=timeout)

    def stream(
        self,
        messages: List[Dict[str, str]],
        on_token: Optional[TokenCallback] = None,
        on_reasoning: Optional[TokenCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> StreamedTurn:
        deadline = time.monotonic() + self.timeout
        sanitizer = StreamSanitizer()
        content: List[str] = []
        reasoning: List[str] = []
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
            try:
                for chunk in resp:
                    if cancel is not None and cancel.is_set():
                        raise QueryCancelled("Query cancelled")
                    if time.monotonic() > deadline:
                        raise NetworkError(f"Model stream timed out after {self.timeout:.0f}s")
                    if not chunk.choices:
                        continue
                    delta = chunk.choices[0].delta
                    piece = getattr(delta, "reasoning_content", None)
                    if piece:
                        reasoning.append(piece)
                        if on_reasoning is not None:
                            on_reasoning(piece)
                    if delta.content:
                        content.append(delta.content)
                        safe = sanitizer.feed(delta.content)
                        if safe and on_token is not None:
                            on_token(safe)
            finally:
                close = getattr(resp, "close", None)
                if callable(close):
                    close()
        except openai.APIStatusError as e:
            body = _response_body(e)
            raise NetworkError(f"API Error {e.status_code}: {body}", status=e.status_code, body=body) from e
        except openai.APITimeoutError as e:
            raise NetworkError(f"Model request timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise NetworkError(f"Connection error: {e}") from e

        tail = sanitizer.flush()
        if tail and on_token is not None:
            on_token(tail)
        log.debug("Model turn: %d content chars, %d reasoning chars", sum(map(len, content)), sum(map(len, reasoning)))
        return StreamedTurn(text="".join(content), reasoning="".join(reasoning))


def _response_body(e: "openai.APIStatusError") -> str:
    try:
        return e.response.text
    except Exception:  # noqa: BLE001 - body is best effort
        return str(e.message)
