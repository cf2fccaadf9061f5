"""
Model Router — per-stage primary model plus ordered fallback chain.

Selection is a pure function of configuration: same config, same stage,
same hint → same ModelSelection. Runtime health is not consulted here;
the engine walks the fallback list when an attempt fails.
"""
from __future__ import annotations

import logging
from typing import Optional

from .config import OrchestratorConfig
from .models import ModelSelection, Stage

logger = logging.getLogger("manipula.router")


class ModelRouter:

    def __init__(self, config: OrchestratorConfig):
        self._config = config

    def select(self, stage: Stage, task_hint: str = "") -> ModelSelection:
        primary = self._config.model_for(stage)
        fallbacks: list[str] = []
        for model in self._config.fallback_models:
            if model != primary and model not in fallbacks:
                fallbacks.append(model)
        selection = ModelSelection(stage=stage, primary=primary, fallbacks=tuple(fallbacks))
        logger.debug(
            f"Routing {stage.value}{f' ({task_hint})' if task_hint else ''}: "
            f"primary={primary}, fallbacks={fallbacks}"
        )
        return selection

    @staticmethod
    def next_model(selection: ModelSelection, current: str) -> Optional[str]:
        """Return the candidate after `current`, or None when the chain is exhausted."""
        candidates = selection.candidates()
        try:
            idx = candidates.index(current)
        except ValueError:
            return selection.primary
        return candidates[idx + 1] if idx + 1 < len(candidates) else None
