"""IdeaAgent — turns the project brief into a structured specification."""
from __future__ import annotations

from ..models import ProjectState, Stage
from .base import BaseAgent


class IdeaAgent(BaseAgent):
    stage = Stage.IDEA
    system_prompt = (
        "You are a product architect. Turn rough project briefs into precise, "
        "buildable specifications. Output only valid JSON."
    )
    schema = {
        "type": "object",
        "required": ["title", "summary", "requirements", "features"],
        "properties": {
            "title": {"type": "string", "minLength": 1},
            "summary": {"type": "string", "minLength": 1},
            "requirements": {"type": "array", "items": {"type": "string"}, "minItems": 1},
            "features": {"type": "array", "items": {"type": "string"}},
        },
    }

    def build_prompt(self, state: ProjectState, task_hint: str = "") -> str:
        return (
            "Write a specification for the following project.\n\n"
            f"PROJECT BRIEF:\n{state.brief}\n\n"
            "List concrete functional requirements and user-facing features. "
            "Keep scope to what the brief asks for.\n\n"
            f"{self.output_contract()}"
        )
