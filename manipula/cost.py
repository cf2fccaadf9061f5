"""
Cost Layer — budget reservations and stage cost estimation
==========================================================
CostTracker is the single source of truth for spend. Agents only report
usage; the engine turns that usage into a commit against a reservation.

Pessimistic reservation: the estimated cost of a stage is claimed before
the provider is called, so two runs sharing a process-scoped Budget can
never both pass the check and then jointly overspend.

    tracker = CostTracker(Budget(max_usd=1.0))
    token = tracker.reserve(0.40)        # may raise BudgetExceededError
    ...call the provider...
    tracker.commit(token, actual_cost)   # or tracker.release(token)
"""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .exceptions import BudgetExceededError
from .models import Budget, Stage, estimate_cost

if TYPE_CHECKING:
    from .config import OrchestratorConfig

logger = logging.getLogger("manipula.cost")

# Typical prompt sizes per stage; later stages carry more upstream context.
_TYPICAL_INPUT_TOKENS: dict[Stage, int] = {
    Stage.IDEA:     600,
    Stage.BACKEND:  1500,
    Stage.FRONTEND: 3000,
    Stage.QA:       5000,
}

_EPSILON = 1e-9


@dataclass(frozen=True)
class ReservationToken:
    id: int
    amount: float
    label: str = ""


class CostTracker:
    """Reserve → commit/release accounting against a Budget handle."""

    _ids = itertools.count(1)

    def __init__(self, budget: Budget):
        self.budget = budget
        self._lock = threading.Lock()
        self._open: dict[int, ReservationToken] = {}

    def reserve(self, estimated_cost: float, label: str = "") -> ReservationToken:
        if estimated_cost < 0:
            raise ValueError(f"estimated_cost must be >= 0, got {estimated_cost}")
        with self._lock:
            committed = self.budget.spent_usd + self.budget.reserved_usd
            if committed + estimated_cost > self.budget.max_usd + _EPSILON:
                remaining = max(0.0, self.budget.max_usd - committed)
                logger.warning(
                    f"Reservation rejected{f' for {label}' if label else ''}: "
                    f"requested ${estimated_cost:.4f}, remaining ${remaining:.4f}"
                )
                raise BudgetExceededError(estimated_cost, remaining)
            token = ReservationToken(next(self._ids), estimated_cost, label)
            self.budget.reserved_usd += estimated_cost
            self._open[token.id] = token
        logger.debug(f"Reserved ${estimated_cost:.4f} ({label or token.id})")
        return token

    def commit(self, token: ReservationToken, actual_cost: float) -> float:
        """
        Settle a reservation with the actual cost. Returns the amount charged.

        The charge never pushes spent_usd past the ceiling; any excess is
        tracked in budget.overrun_usd.
        """
        if actual_cost < 0:
            raise ValueError(f"actual_cost must be >= 0, got {actual_cost}")
        with self._lock:
            if self._open.pop(token.id, None) is None:
                raise ValueError(f"Reservation {token.id} is not open")
            self.budget.reserved_usd = max(0.0, self.budget.reserved_usd - token.amount)
            headroom = max(0.0, self.budget.max_usd - self.budget.spent_usd
                           - self.budget.reserved_usd)
            charged = min(actual_cost, headroom)
            if actual_cost > headroom + _EPSILON:
                overrun = actual_cost - headroom
                self.budget.overrun_usd += overrun
                logger.error(
                    f"Actual cost ${actual_cost:.4f} exceeded reservation "
                    f"${token.amount:.4f} and remaining headroom; "
                    f"${overrun:.4f} recorded as overrun"
                )
            self.budget.spent_usd += charged
        return charged

    def release(self, token: ReservationToken) -> None:
        """Free a reservation without spending. Releasing twice is a no-op."""
        with self._lock:
            if self._open.pop(token.id, None) is None:
                return
            self.budget.reserved_usd = max(0.0, self.budget.reserved_usd - token.amount)
        logger.debug(f"Released reservation {token.label or token.id}")

    def release_all(self) -> None:
        with self._lock:
            for token in self._open.values():
                self.budget.reserved_usd = max(0.0, self.budget.reserved_usd - token.amount)
            self._open.clear()

    def remaining(self) -> float:
        with self._lock:
            return self.budget.remaining_usd

    def can_start_stage(self, min_cost: float) -> bool:
        return self.remaining() + _EPSILON >= min_cost

    @property
    def open_reservations(self) -> int:
        return len(self._open)


def estimate_stage_cost(stage: Stage, model: str, config: "OrchestratorConfig") -> float:
    """Configured per-stage estimate, else a worst-case estimate from the cost table."""
    configured = config.stage_cost_estimates.get(stage.value)
    if configured is not None:
        return configured
    return estimate_cost(model, _TYPICAL_INPUT_TOKENS[stage], config.max_output_tokens)
