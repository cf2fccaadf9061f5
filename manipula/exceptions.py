"""
Error taxonomy shared by agents, providers, the state store and the engine.

Only the Orchestrator decides retry vs fallback vs halt; everything else
raises one of these and lets it propagate. `taxonomy` is the stable name
reported in a run's status.
"""
from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Usage


class ManipulaError(Exception):
    taxonomy = "ManipulaError"


class ProviderError(ManipulaError):
    """Network, auth or rate-limit failure talking to a model provider."""
    taxonomy = "ProviderError"

    def __init__(self, message: str, retriable: bool = True,
                 usage: Optional["Usage"] = None):
        super().__init__(message)
        self.retriable = retriable
        self.usage = usage


class MalformedOutputError(ManipulaError):
    """Provider answered, but the answer failed parsing or schema validation."""
    taxonomy = "MalformedOutputError"

    def __init__(self, message: str, usage: Optional["Usage"] = None,
                 raw_text: str = ""):
        super().__init__(message)
        self.usage = usage
        self.raw_text = raw_text


class AgentTimeoutError(ManipulaError, TimeoutError):
    taxonomy = "TimeoutError"


class BudgetExceededError(ManipulaError):
    taxonomy = "BudgetExceededError"

    def __init__(self, requested: float, remaining: float):
        super().__init__(
            f"Reservation of ${requested:.4f} exceeds remaining budget ${remaining:.4f}"
        )
        self.requested = requested
        self.remaining = remaining


class StateConflictError(ManipulaError):
    taxonomy = "StateConflictError"


class ValidationError(ManipulaError):
    """A delta failed the well-formedness check."""
    taxonomy = "ValidationError"


class ProjectNotFoundError(ManipulaError, KeyError):
    taxonomy = "ProjectNotFoundError"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class RunNotFoundError(ManipulaError, KeyError):
    taxonomy = "RunNotFoundError"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class RunCancelledError(ManipulaError):
    taxonomy = "RunCancelledError"


class QAVerdictFailedError(ManipulaError):
    """QA kept failing after the allowed number of repair rounds."""
    taxonomy = "QAVerdictFailed"
