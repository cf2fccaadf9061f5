"""
Manipula — Core Models & Types
==============================
All data structures, enums, cost tables and provider detection shared by
the orchestration engine, the agents and the state store.

Artifacts are free-form JSON documents. Each stage slot in a ProjectState
is an append-only list of revisions, so a repair pass adds a new backend
revision instead of overwriting the old one.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterator, Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class Stage(str, Enum):
    IDEA = "idea"
    BACKEND = "backend"
    FRONTEND = "frontend"
    QA = "qa"


PIPELINE_ORDER: tuple[Stage, ...] = (
    Stage.IDEA, Stage.BACKEND, Stage.FRONTEND, Stage.QA,
)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    HALTED_BUDGET = "halted_budget"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.HALTED_BUDGET)


class InvocationOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


# ─────────────────────────────────────────────
# Provider detection
# ─────────────────────────────────────────────

def get_provider(model: str) -> str:
    if model.startswith("claude"):
        return "anthropic"
    elif model.startswith(("gpt", "o1", "o3", "o4")):
        return "openai"
    elif model.startswith("gemini"):
        return "google"
    return "unknown"


# ─────────────────────────────────────────────
# Cost table (per 1M tokens, USD)
# ─────────────────────────────────────────────

COST_TABLE: dict[str, dict[str, float]] = {
    "gpt-4":             {"input": 30.0,  "output": 60.0},
    "gpt-4o":            {"input": 2.50,  "output": 10.0},
    "gpt-4o-mini":       {"input": 0.15,  "output": 0.60},
    "claude-opus-4-1":   {"input": 15.0,  "output": 75.0},
    "claude-sonnet-4-5": {"input": 3.0,   "output": 15.0},
    "claude-haiku-4-5":  {"input": 1.0,   "output": 5.0},
    "gemini-2.5-pro":    {"input": 1.25,  "output": 10.0},
    "gemini-2.5-flash":  {"input": 0.30,  "output": 2.50},
}

# Unknown models are priced pessimistically so reservations over-estimate.
_DEFAULT_RATES = {"input": 30.0, "output": 60.0}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    costs = COST_TABLE.get(model, _DEFAULT_RATES)
    return (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ─────────────────────────────────────────────
# Project state
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Artifact:
    """One committed revision of a stage's output."""
    stage: Stage
    content: dict
    version: int
    model: str = ""
    metadata: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "content": self.content,
            "version": self.version,
            "model": self.model,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Artifact":
        return cls(
            stage=Stage(d["stage"]),
            content=d["content"],
            version=d["version"],
            model=d.get("model", ""),
            metadata=d.get("metadata", {}),
            created_at=d.get("created_at", 0.0),
        )


@dataclass(frozen=True)
class ArtifactDelta:
    """Proposed change from one agent invocation. Targets exactly one stage slot."""
    stage: Stage
    content: dict
    metadata: dict = field(default_factory=dict)


@dataclass
class ProjectState:
    """Versioned mapping stage → committed artifact revisions."""
    project_id: str
    brief: str
    version: int = 0
    artifacts: dict[str, list[Artifact]] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def latest(self, stage: Stage) -> Optional[Artifact]:
        revisions = self.artifacts.get(stage.value)
        return revisions[-1] if revisions else None

    def revisions(self, stage: Stage) -> list[Artifact]:
        return list(self.artifacts.get(stage.value, []))

    def committed_stages(self) -> list[Stage]:
        return [s for s in Stage if self.artifacts.get(s.value)]

    def all_artifacts(self) -> Iterator[Artifact]:
        for stage in Stage:
            yield from self.artifacts.get(stage.value, [])

    def with_artifact(self, artifact: Artifact) -> "ProjectState":
        """Return the next version with `artifact` appended to its stage slot."""
        artifacts = {k: list(v) for k, v in self.artifacts.items()}
        artifacts.setdefault(artifact.stage.value, []).append(artifact)
        return replace(self, version=artifact.version, artifacts=artifacts)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "brief": self.brief,
            "version": self.version,
            "artifacts": {
                stage: [a.to_dict() for a in revs]
                for stage, revs in self.artifacts.items()
            },
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ProjectState":
        return cls(
            project_id=d["project_id"],
            brief=d["brief"],
            version=d["version"],
            artifacts={
                stage: [Artifact.from_dict(a) for a in revs]
                for stage, revs in d.get("artifacts", {}).items()
            },
            created_at=d.get("created_at", 0.0),
        )


# ─────────────────────────────────────────────
# Model selection & usage
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ModelSelection:
    stage: Stage
    primary: str
    fallbacks: tuple[str, ...] = ()
    active: Optional[str] = None

    @property
    def model(self) -> str:
        """Model to use for the current attempt."""
        return self.active or self.primary

    def candidates(self) -> list[str]:
        return [self.primary, *self.fallbacks]

    def pinned(self, model: str) -> "ModelSelection":
        if model not in self.candidates():
            raise ValueError(f"{model!r} is not a candidate for {self.stage.value}")
        return replace(self, active=model)


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    model: str = ""

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": round(self.cost_usd, 6),
            "model": self.model,
        }


# ─────────────────────────────────────────────
# Run bookkeeping
# ─────────────────────────────────────────────

@dataclass
class AgentInvocation:
    run_id: str
    seq: int
    stage: Stage
    model: str
    input_version: int
    attempt: int = 1
    task_hint: str = ""
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    outcome: InvocationOutcome = InvocationOutcome.PENDING
    usage: Usage = field(default_factory=Usage)
    output: Optional[dict] = None
    error_type: str = ""
    error_message: str = ""

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    def finalize(self, outcome: InvocationOutcome, usage: Optional[Usage] = None,
                 output: Optional[dict] = None,
                 error: Optional[BaseException] = None) -> None:
        if self.finalized:
            raise RuntimeError(f"Invocation {self.run_id}#{self.seq} already finalized")
        self.finished_at = time.time()
        self.outcome = outcome
        if usage is not None:
            self.usage = usage
        self.output = output
        if error is not None:
            self.error_type = getattr(error, "taxonomy", type(error).__name__)
            self.error_message = str(error)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "seq": self.seq,
            "stage": self.stage.value,
            "model": self.model,
            "input_version": self.input_version,
            "attempt": self.attempt,
            "task_hint": self.task_hint,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome.value,
            "usage": self.usage.to_dict(),
            "output": self.output,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AgentInvocation":
        u = d.get("usage", {})
        return cls(
            run_id=d["run_id"],
            seq=d["seq"],
            stage=Stage(d["stage"]),
            model=d["model"],
            input_version=d["input_version"],
            attempt=d.get("attempt", 1),
            task_hint=d.get("task_hint", ""),
            started_at=d["started_at"],
            finished_at=d.get("finished_at"),
            outcome=InvocationOutcome(d.get("outcome", "pending")),
            usage=Usage(
                input_tokens=u.get("input_tokens", 0),
                output_tokens=u.get("output_tokens", 0),
                cost_usd=u.get("cost_usd", 0.0),
                model=u.get("model", ""),
            ),
            output=d.get("output"),
            error_type=d.get("error_type", ""),
            error_message=d.get("error_message", ""),
        )


@dataclass
class StageTransition:
    stage: Stage
    started_at: float
    finished_at: Optional[float] = None
    outcome: str = "running"
    cost_usd: float = 0.0
    version: Optional[int] = None
    attempts: int = 0
    task_hint: str = ""

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "cost_usd": round(self.cost_usd, 6),
            "version": self.version,
            "attempts": self.attempts,
            "task_hint": self.task_hint,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StageTransition":
        return cls(
            stage=Stage(d["stage"]),
            started_at=d["started_at"],
            finished_at=d.get("finished_at"),
            outcome=d.get("outcome", "running"),
            cost_usd=d.get("cost_usd", 0.0),
            version=d.get("version"),
            attempts=d.get("attempts", 0),
            task_hint=d.get("task_hint", ""),
        )


@dataclass
class PipelineRun:
    """One execution of the stage sequence for a project."""
    run_id: str
    project_id: str
    status: RunStatus = RunStatus.PENDING
    current_stage: Optional[Stage] = None
    base_version: int = 0
    final_version: Optional[int] = None
    transitions: list[StageTransition] = field(default_factory=list)
    invocations: list[AgentInvocation] = field(default_factory=list)
    spent_usd: float = 0.0
    qa_rounds: int = 0
    error_type: str = ""
    error_message: str = ""
    failure_reason: str = ""
    created_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    def committed_stages(self) -> list[Stage]:
        return [t.stage for t in self.transitions if t.outcome == "committed"]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "base_version": self.base_version,
            "final_version": self.final_version,
            "transitions": [t.to_dict() for t in self.transitions],
            "invocations": [i.to_dict() for i in self.invocations],
            "spent_usd": round(self.spent_usd, 6),
            "qa_rounds": self.qa_rounds,
            "error_type": self.error_type,
            "error_message": self.error_message,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "PipelineRun":
        stage = d.get("current_stage")
        return cls(
            run_id=d["run_id"],
            project_id=d["project_id"],
            status=RunStatus(d["status"]),
            current_stage=Stage(stage) if stage else None,
            base_version=d.get("base_version", 0),
            final_version=d.get("final_version"),
            transitions=[StageTransition.from_dict(t) for t in d.get("transitions", [])],
            invocations=[AgentInvocation.from_dict(i) for i in d.get("invocations", [])],
            spent_usd=d.get("spent_usd", 0.0),
            qa_rounds=d.get("qa_rounds", 0),
            error_type=d.get("error_type", ""),
            error_message=d.get("error_message", ""),
            failure_reason=d.get("failure_reason", ""),
            created_at=d.get("created_at", 0.0),
            finished_at=d.get("finished_at"),
        )


# ─────────────────────────────────────────────
# Budget
# ─────────────────────────────────────────────

@dataclass
class Budget:
    """Ceiling plus running totals. Mutated only through CostTracker."""
    max_usd: float = 100.0
    spent_usd: float = 0.0
    reserved_usd: float = 0.0
    overrun_usd: float = 0.0

    @property
    def remaining_usd(self) -> float:
        return max(0.0, self.max_usd - self.spent_usd - self.reserved_usd)

    def to_dict(self) -> dict:
        return {
            "max_usd": self.max_usd,
            "spent_usd": round(self.spent_usd, 6),
            "reserved_usd": round(self.reserved_usd, 6),
            "remaining_usd": round(self.remaining_usd, 6),
            "overrun_usd": round(self.overrun_usd, 6),
        }
