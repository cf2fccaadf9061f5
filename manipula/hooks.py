"""
HookRegistry — lightweight event hook system for the pipeline lifecycle.
=======================================================================
Provides a simple pub-sub mechanism for observing engine events without
modifying core orchestration logic. Callbacks are synchronous (fire-and-forget);
async callers can wrap with asyncio.create_task() if needed.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("manipula.hooks")


class EventType(str, Enum):
    """
    Lifecycle events fired by Orchestrator.

    Callback signatures (all kwargs):
      RUN_STARTED      — run_id: str, project_id: str, base_version: int
      STAGE_STARTED    — run_id: str, stage: str, task_hint: str
      MODEL_SELECTED   — run_id: str, stage: str, model: str, fallbacks: list[str]
      STAGE_RETRY      — run_id: str, stage: str, attempt: int, action: str,
                         model: str, delay: float, error: str
      STAGE_COMMITTED  — run_id: str, stage: str, version: int, cost_usd: float
      BUDGET_HALTED    — run_id: str, stage: str, remaining_usd: float
      RUN_FINISHED     — run_id: str, status: str, error_type: str
    """
    RUN_STARTED     = "run_started"
    STAGE_STARTED   = "stage_started"
    MODEL_SELECTED  = "model_selected"
    STAGE_RETRY     = "stage_retry"
    STAGE_COMMITTED = "stage_committed"
    BUDGET_HALTED   = "budget_halted"
    RUN_FINISHED    = "run_finished"


class HookRegistry:
    """
    Maps event names to lists of callback functions.

    Usage:
        registry = HookRegistry()
        registry.add(EventType.STAGE_COMMITTED, lambda stage, version, **_: print(stage, version))

    Exceptions thrown by individual callbacks are caught and logged, so one bad
    hook never prevents subsequent hooks or engine logic from running.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    def add(self, event: str | EventType, callback: Callable) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        self._hooks[key].append(callback)

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = event.value if isinstance(event, EventType) else str(event)
        for cb in self._hooks.get(key, []):
            try:
                cb(**kwargs)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "Hook callback %r raised for event %r: %s",
                    cb, key, exc,
                )

    def clear(self, event: Optional[str | EventType] = None) -> None:
        if event is None:
            self._hooks.clear()
        else:
            key = event.value if isinstance(event, EventType) else str(event)
            self._hooks.pop(key, None)

    def registered_events(self) -> list[str]:
        return [k for k, v in self._hooks.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
