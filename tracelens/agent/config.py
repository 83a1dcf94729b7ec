from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class EvidencePolicy:
    """Thresholds the answer gate applies before accepting a final answer."""

    identity_min_signals: int = 2
    project_min_file_records: int = 1
    multi_min_tools: int = 2
    general_min_results: int = 1
    max_forced_searches: int = 2
    max_rejections: int = 3


@dataclass
class AgentConfig:
    db_path: Path
    max_turns: int = 20
    retry_attempts: int = 3
    temperature: float = 0.2
    max_tokens: int = 1200
    request_timeout: float = 60.0
    observation_limit: int = 10_000
    prior_turns_kept: int = 12
    prior_turn_chars: int = 1200
    max_parallel_workers: int = 6
    long_range_days: int = 90
    evidence: EvidencePolicy = field(default_factory=EvidencePolicy)
