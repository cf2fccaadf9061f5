"""
Manipula
========
Multi-agent software-generation pipeline. A project brief flows through
four agents (idea, backend, frontend, qa), each backed by an LLM chosen per
stage, with every stage's output committed as a new version of the
project's state and all provider spend held under a hard budget.

Basic usage:
    from manipula import Orchestrator, load_config

    orch = Orchestrator(load_config(cost_limit_usd=5.0))
    await orch.create_project("todo-app", "A collaborative todo list")
    run = await orch.run("todo-app")
    print(run.status.value, orch.status(run.run_id)["committed_stages"])
"""

from .models import (
    AgentInvocation, Artifact, ArtifactDelta, Budget, InvocationOutcome,
    ModelSelection, PIPELINE_ORDER, PipelineRun, ProjectState, RunStatus,
    Stage, StageTransition, Usage,
)
from .exceptions import (
    AgentTimeoutError, BudgetExceededError, MalformedOutputError, ManipulaError,
    ProjectNotFoundError, ProviderError, QAVerdictFailedError, RunCancelledError,
    RunNotFoundError, StateConflictError, ValidationError,
)
from .config import OrchestratorConfig, load_config
from .cost import CostTracker, ReservationToken, estimate_stage_cost
from .router import ModelRouter
from .retry import RetryAction, RetryDecision, StageAttempts
from .state_store import ProjectStateStore, VersionHistory
from .api_clients import ProviderResponse, UnifiedClient
from .agents import (
    BackendAgent, BaseAgent, FrontendAgent, IdeaAgent, QAAgent, build_agents,
)
from .hooks import EventType, HookRegistry
from .tracing import TracingConfig, configure_tracing
from .engine import Orchestrator

__version__ = "0.1.0"

__all__ = [
    # ── Engine ───────────────────────────────────────────────────────────────
    "Orchestrator", "OrchestratorConfig", "load_config",
    # ── Data model ───────────────────────────────────────────────────────────
    "AgentInvocation", "Artifact", "ArtifactDelta", "Budget", "InvocationOutcome",
    "ModelSelection", "PIPELINE_ORDER", "PipelineRun", "ProjectState",
    "RunStatus", "Stage", "StageTransition", "Usage",
    # ── Errors ───────────────────────────────────────────────────────────────
    "AgentTimeoutError", "BudgetExceededError", "MalformedOutputError",
    "ManipulaError", "ProjectNotFoundError", "ProviderError",
    "QAVerdictFailedError", "RunCancelledError", "RunNotFoundError",
    "StateConflictError", "ValidationError",
    # ── Components ───────────────────────────────────────────────────────────
    "CostTracker", "ReservationToken", "estimate_stage_cost", "ModelRouter",
    "RetryAction", "RetryDecision", "StageAttempts", "ProjectStateStore",
    "VersionHistory", "ProviderResponse", "UnifiedClient", "BaseAgent",
    "IdeaAgent", "BackendAgent", "FrontendAgent", "QAAgent", "build_agents",
    "EventType", "HookRegistry", "TracingConfig", "configure_tracing",
]
