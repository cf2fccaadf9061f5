"""QAAgent — evaluates all prior artifacts and returns a pass/fail verdict.

The QA artifact is an evaluation record only; it never contains product
code.
"""
from __future__ import annotations

from ..models import Artifact, ProjectState, Stage
from .base import BaseAgent, render_artifact

PASS = "pass"
FAIL = "fail"


def verdict_passed(artifact: Artifact) -> bool:
    return artifact.content.get("verdict") == PASS


class QAAgent(BaseAgent):
    stage = Stage.QA
    system_prompt = (
        "You are a strict QA engineer. Review generated software for correctness, "
        "completeness and consistency with its specification. Output only valid JSON."
    )
    schema = {
        "type": "object",
        "required": ["verdict", "findings", "summary"],
        "properties": {
            "verdict": {"type": "string", "enum": [PASS, FAIL]},
            "summary": {"type": "string"},
            "findings": {
                "type": "array",
                "items": {
                    "type": "object",
                    "required": ["severity", "message"],
                    "properties": {
                        "severity": {"type": "string",
                                     "enum": ["low", "medium", "high", "critical"]},
                        "message": {"type": "string", "minLength": 1},
                        "path": {"type": "string"},
                    },
                },
            },
        },
    }

    def __init__(self, client, max_output_tokens: int = 4096, temperature: float = 0.1):
        super().__init__(client, max_output_tokens, temperature)

    def build_prompt(self, state: ProjectState, task_hint: str = "") -> str:
        return (
            "Review the generated project below.\n\n"
            f"--- SPECIFICATION ---\n{render_artifact(state, Stage.IDEA)}\n\n"
            f"--- BACKEND ---\n{render_artifact(state, Stage.BACKEND)}\n\n"
            f"--- FRONTEND ---\n{render_artifact(state, Stage.FRONTEND)}\n\n"
            f'Return verdict "{FAIL}" if any high or critical finding exists, '
            f'otherwise "{PASS}".\n\n'
            f"{self.output_contract()}"
        )
