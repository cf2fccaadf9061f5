"""BackendAgent — generates backend code from the idea specification.

With task_hint="repair" it also receives the latest QA findings and is
asked to produce a corrected backend revision.
"""
from __future__ import annotations

import json

from ..models import ProjectState, Stage
from .base import FILES_SCHEMA, BaseAgent, render_artifact

REPAIR_HINT = "repair"


class BackendAgent(BaseAgent):
    stage = Stage.BACKEND
    system_prompt = (
        "You are a senior backend engineer. Produce complete, runnable backend "
        "code. Output only valid JSON."
    )
    schema = {
        "type": "object",
        "required": ["summary", "files"],
        "properties": {
            "summary": {"type": "string", "minLength": 1},
            "files": {**FILES_SCHEMA, "minItems": 1},
            "endpoints": {"type": "array", "items": {"type": "string"}},
        },
    }

    def build_prompt(self, state: ProjectState, task_hint: str = "") -> str:
        prompt = (
            "Implement the backend for this specification.\n\n"
            f"--- SPECIFICATION ---\n{render_artifact(state, Stage.IDEA)}\n"
        )
        if task_hint == REPAIR_HINT:
            qa = state.latest(Stage.QA)
            findings = qa.content.get("findings", []) if qa else []
            prompt += (
                "\n--- CURRENT BACKEND (failed QA) ---\n"
                f"{render_artifact(state, Stage.BACKEND)}\n"
                "\n--- QA FINDINGS TO FIX ---\n"
                f"{json.dumps(findings, indent=2, ensure_ascii=False)}\n"
                "\nProduce the complete corrected backend, addressing every finding.\n"
            )
        return f"{prompt}\n{self.output_contract()}"
