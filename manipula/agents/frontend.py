"""FrontendAgent — generates the frontend against the idea artifact and backend API."""
from __future__ import annotations

from ..models import ProjectState, Stage
from .base import FILES_SCHEMA, BaseAgent, render_artifact


class FrontendAgent(BaseAgent):
    stage = Stage.FRONTEND
    system_prompt = (
        "You are a senior frontend engineer. Produce complete frontend code that "
        "talks to the given backend. Output only valid JSON."
    )
    schema = {
        "type": "object",
        "required": ["summary", "files"],
        "properties": {
            "summary": {"type": "string", "minLength": 1},
            "files": {**FILES_SCHEMA, "minItems": 1},
            "components": {"type": "array", "items": {"type": "string"}},
        },
    }

    def build_prompt(self, state: ProjectState, task_hint: str = "") -> str:
        return (
            "Implement the frontend for this specification.\n\n"
            f"--- SPECIFICATION ---\n{render_artifact(state, Stage.IDEA)}\n\n"
            f"--- BACKEND ---\n{render_artifact(state, Stage.BACKEND)}\n\n"
            "Use only endpoints the backend actually exposes.\n\n"
            f"{self.output_contract()}"
        )
