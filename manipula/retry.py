"""
Stage retry policy as an explicit state machine.

StageAttempts tracks the attempt count and the model in use for one stage
execution. After each failure, record_failure() returns the next action:

  RETRY     — same model again after `delay` seconds
  FALLBACK  — next model in the selection's fallback chain, no wait
  FAIL      — stop; the run is marked failed

Malformed output and non-retriable provider errors fall back at once.
Retriable provider errors back off on the same model until that model has
failed `model_retry_limit` times in a row, then fall back.

The machine never sleeps or calls anything itself, so it works the same
under asyncio, threads or callbacks.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .exceptions import AgentTimeoutError, MalformedOutputError, ProviderError
from .models import ModelSelection
from .router import ModelRouter


class RetryAction(str, Enum):
    RETRY    = "retry"
    FALLBACK = "fallback"
    FAIL     = "fail"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    model: str
    delay: float = 0.0
    attempt: int = 0          # number of the attempt this decision leads to


class StageAttempts:

    def __init__(self, selection: ModelSelection, retry_limit: int,
                 backoff_base: float = 1.0, backoff_max: float = 30.0,
                 model_retry_limit: int = 2):
        if retry_limit < 1:
            raise ValueError(f"retry_limit must be >= 1, got {retry_limit}")
        if model_retry_limit < 1:
            raise ValueError(f"model_retry_limit must be >= 1, got {model_retry_limit}")
        self.selection = selection
        self.retry_limit = retry_limit
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.model_retry_limit = model_retry_limit
        self.attempt = 1
        self.model = selection.primary
        self.history: list[tuple[str, str]] = []   # (model, error taxonomy)
        self._model_failures = 0                   # consecutive, on self.model

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.retry_limit

    def current_selection(self) -> ModelSelection:
        return self.selection.pinned(self.model)

    def backoff(self) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (self.attempt - 1)))

    def record_failure(self, error: BaseException) -> RetryDecision:
        self.history.append((self.model, getattr(error, "taxonomy", type(error).__name__)))

        if not isinstance(error, (ProviderError, MalformedOutputError, AgentTimeoutError)):
            return RetryDecision(RetryAction.FAIL, self.model, attempt=self.attempt)
        if self.exhausted:
            return RetryDecision(RetryAction.FAIL, self.model, attempt=self.attempt)

        delay = self.backoff()
        self.attempt += 1
        self._model_failures += 1

        wants_fallback = (
            isinstance(error, MalformedOutputError)
            or (isinstance(error, ProviderError)
                and (not error.retriable or self._model_failures >= self.model_retry_limit))
        )
        if wants_fallback:
            nxt = ModelRouter.next_model(self.selection, self.model)
            if nxt is not None:
                self.model = nxt
                self._model_failures = 0
                # a model switch skips the backoff
                return RetryDecision(RetryAction.FALLBACK, nxt, 0.0, self.attempt)

        return RetryDecision(RetryAction.RETRY, self.model, delay, self.attempt)
