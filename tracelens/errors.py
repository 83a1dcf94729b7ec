from __future__ import annotations

from typing import Optional


class TraceLensError(Exception):
    """Base class for errors raised by the agent runtime."""


class ConfigurationError(TraceLensError, RuntimeError):
    pass


class NetworkError(TraceLensError):
    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ToolExecutionError(TraceLensError, ValueError):
    def __init__(self, tool: str, message: str) -> None:
        super().__init__(f"Tool '{tool}' error: {message}")
        self.tool = tool


class ParseError(TraceLensError, ValueError):
    pass


class QueryCancelled(TraceLensError):
    pass
