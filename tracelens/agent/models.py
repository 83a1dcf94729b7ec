from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class AgentStep:
    turn: int
    tool_name: str
    tool_args: Dict[str, Any]
    tool_result: str
    reasoning: Optional[str] = None


@dataclass(frozen=True)
class AgentResult:
    answer: str
    steps: List[AgentStep] = field(default_factory=list)
    activities_referenced: List[Dict[str, Any]] = field(default_factory=list)
    scope: Dict[str, Any] = field(default_factory=dict)
    scope_request: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return asdict(self)
