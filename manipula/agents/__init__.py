"""
Pipeline agents, one per stage. build_agents() wires the closed set used
by the Orchestrator; dispatch is by Stage, never by reflection.
"""
from __future__ import annotations

from ..models import Stage
from .backend import REPAIR_HINT, BackendAgent
from .base import BaseAgent, ProviderClient, parse_json_output
from .frontend import FrontendAgent
from .idea import IdeaAgent
from .qa import QAAgent, verdict_passed

AGENT_CLASSES: dict[Stage, type[BaseAgent]] = {
    Stage.IDEA: IdeaAgent,
    Stage.BACKEND: BackendAgent,
    Stage.FRONTEND: FrontendAgent,
    Stage.QA: QAAgent,
}


def build_agents(client: ProviderClient, max_output_tokens: int = 4096) -> dict[Stage, BaseAgent]:
    return {
        stage: cls(client, max_output_tokens=max_output_tokens)
        for stage, cls in AGENT_CLASSES.items()
    }


__all__ = [
    "AGENT_CLASSES", "BaseAgent", "BackendAgent", "FrontendAgent", "IdeaAgent",
    "QAAgent", "ProviderClient", "REPAIR_HINT", "build_agents",
    "parse_json_output", "verdict_passed",
]
