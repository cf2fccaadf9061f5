"""
BaseAgent — shared execute() contract for the four pipeline agents.

    delta, usage = await agent.execute(state_snapshot, model_selection)

An agent builds a prompt from the committed ProjectState, asks the
provider client for a JSON document, validates it against the stage's
JSON Schema and returns it as an ArtifactDelta for its own stage slot.

Agents never touch the budget and never swallow errors: ProviderError and
AgentTimeoutError come straight from the client, MalformedOutputError is
raised here when parsing or validation fails.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional, Protocol

import jsonschema

from ..exceptions import MalformedOutputError
from ..models import ArtifactDelta, ModelSelection, ProjectState, Stage, Usage

logger = logging.getLogger("manipula.agents")

# Upstream artifacts are embedded in prompts; cap each one.
CONTEXT_CHAR_LIMIT = 40000


class ProviderClient(Protocol):
    async def invoke(self, model: str, payload: dict) -> Any: ...


def parse_json_output(text: str) -> Any:
    """
    Parse LLM output as JSON, tolerating markdown fences, trailing commas,
    stray control characters and prose around the outermost object.
    Returns None when nothing parseable is found.
    """
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*\n?", "", text)
        text = re.sub(r"\n?```\s*$", "", text)
        text = text.strip()

    def _try_parse(s: str):
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            pass
        cleaned = re.sub(r",\s*([}\]])", r"\1", s)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
        cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", cleaned)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            return None

    parsed = _try_parse(text)
    if parsed is None:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if match:
            parsed = _try_parse(match.group())
    return parsed


def render_artifact(state: ProjectState, stage: Stage) -> str:
    artifact = state.latest(stage)
    if artifact is None:
        return "(none)"
    body = json.dumps(artifact.content, indent=2, ensure_ascii=False)
    if len(body) > CONTEXT_CHAR_LIMIT:
        logger.warning(
            f"{stage.value} artifact truncated from {len(body)} to "
            f"{CONTEXT_CHAR_LIMIT} chars for prompt context"
        )
        body = body[:CONTEXT_CHAR_LIMIT] + "\n... (truncated)"
    return body


FILES_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["path", "content"],
        "properties": {
            "path": {"type": "string", "minLength": 1},
            "content": {"type": "string"},
        },
    },
}


class BaseAgent(ABC):
    stage: Stage
    schema: dict
    system_prompt: str = "You are a senior software engineer. Output only valid JSON."

    def __init__(self, client: ProviderClient, max_output_tokens: int = 4096,
                 temperature: float = 0.3):
        self.client = client
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    @abstractmethod
    def build_prompt(self, state: ProjectState, task_hint: str = "") -> str:
        """Render the user prompt from the committed state snapshot."""

    def build_payload(self, state: ProjectState, task_hint: str = "") -> dict:
        return {
            "system": self.system_prompt,
            "prompt": self.build_prompt(state, task_hint),
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
        }

    def output_contract(self) -> str:
        return (
            "Return ONLY a JSON object matching this JSON Schema, "
            "no markdown fences, no explanation:\n"
            + json.dumps(self.schema, indent=2)
        )

    async def execute(self, state: ProjectState, selection: ModelSelection,
                      task_hint: str = "") -> tuple[ArtifactDelta, Usage]:
        model = selection.model
        logger.info(
            f"{self.stage.value}: invoking {model} on v{state.version}"
            f"{f' [{task_hint}]' if task_hint else ''}"
        )
        response = await self.client.invoke(model, self.build_payload(state, task_hint))
        content = self.parse(response.text, response.usage)
        delta = ArtifactDelta(
            stage=self.stage,
            content=content,
            metadata={"model": model, "task_hint": task_hint,
                      "input_version": state.version},
        )
        return delta, response.usage

    def parse(self, text: str, usage: Optional[Usage] = None) -> dict:
        data = parse_json_output(text)
        if not isinstance(data, dict):
            raise MalformedOutputError(
                f"{self.stage.value}: response is not a JSON object "
                f"(first 200 chars: {text[:200]!r})",
                usage=usage, raw_text=text,
            )
        try:
            jsonschema.validate(instance=data, schema=self.schema)
        except jsonschema.ValidationError as e:
            raise MalformedOutputError(
                f"{self.stage.value}: schema validation failed: {e.message}",
                usage=usage, raw_text=text,
            ) from e
        return data
