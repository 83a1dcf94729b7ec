from .config import AgentConfig, EvidencePolicy
from .models import AgentResult, AgentStep
from .runner import AgentRunner, run_query

__all__ = ["AgentConfig", "AgentResult", "AgentRunner", "AgentStep", "EvidencePolicy", "run_query"]
