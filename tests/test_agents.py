"""
Tests for the four pipeline agents and the shared BaseAgent contract.
Covers: JSON extraction, schema validation → MalformedOutputError (with
usage attached), prompt contents per stage, repair prompt, provider error
propagation, and a full engine run through real agents on a fake client.

No external async plugin required — all async tests use asyncio.run() wrappers.
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from manipula.agents import (
    AGENT_CLASSES, BackendAgent, FrontendAgent, IdeaAgent, QAAgent, build_agents,
    parse_json_output, verdict_passed,
)
from manipula.agents.base import CONTEXT_CHAR_LIMIT, render_artifact
from manipula.api_clients import ProviderResponse
from manipula.config import OrchestratorConfig
from manipula.engine import Orchestrator
from manipula.exceptions import MalformedOutputError, ProviderError
from manipula.models import (
    Artifact, ModelSelection, PIPELINE_ORDER, ProjectState, RunStatus, Stage, Usage,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def run(coro):
    """Run a coroutine synchronously — no pytest-asyncio needed."""
    return asyncio.run(coro)


IDEA = {"title": "Todo", "summary": "A todo app", "requirements": ["CRUD todos"],
        "features": ["due dates"]}
BACKEND = {"summary": "FastAPI app", "files": [{"path": "app.py", "content": "app = 1"}],
           "endpoints": ["GET /todos"]}
FRONTEND = {"summary": "React UI", "files": [{"path": "App.tsx", "content": "<App/>"}]}
QA_PASS = {"verdict": "pass", "findings": [], "summary": "ok"}
QA_FAIL = {"verdict": "fail", "summary": "broken",
           "findings": [{"severity": "critical", "message": "no auth", "path": "app.py"}]}


def _response(payload, model: str = "gpt-4o", cost: float = 0.02) -> ProviderResponse:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return ProviderResponse(text=text, usage=Usage(100, 200, cost, model))


def _client(*responses) -> AsyncMock:
    client = AsyncMock()
    client.invoke = AsyncMock(side_effect=list(responses))
    return client


def _selection(stage: Stage, model: str = "gpt-4o") -> ModelSelection:
    return ModelSelection(stage, model, ("claude-sonnet-4-5",))


def _state(**stages) -> ProjectState:
    state = ProjectState(project_id="p1", brief="Build a todo app")
    version = 0
    for name, content in stages.items():
        version += 1
        state = state.with_artifact(Artifact(Stage(name), content, version, "gpt-4o"))
    return state


# ─────────────────────────────────────────────────────────────────────────────
# JSON extraction
# ─────────────────────────────────────────────────────────────────────────────

class TestParseJsonOutput:

    def test_plain_json(self):
        assert parse_json_output('{"a": 1}') == {"a": 1}

    def test_markdown_fence(self):
        assert parse_json_output('```json\n{"a": 1}\n```') == {"a": 1}

    def test_trailing_comma(self):
        assert parse_json_output('{"a": [1, 2,],}') == {"a": [1, 2]}

    def test_prose_around_object(self):
        assert parse_json_output('Sure! Here it is: {"a": 1} Hope that helps.') == {"a": 1}

    def test_garbage(self):
        assert parse_json_output("I cannot help with that.") is None


# ─────────────────────────────────────────────────────────────────────────────
# execute()
# ─────────────────────────────────────────────────────────────────────────────

class TestExecute:

    def test_returns_delta_for_own_stage_and_usage(self):
        client = _client(_response(IDEA, cost=0.03))
        agent = IdeaAgent(client)
        delta, usage = run(agent.execute(_state(), _selection(Stage.IDEA)))
        assert delta.stage == Stage.IDEA
        assert delta.content == IDEA
        assert delta.metadata == {"model": "gpt-4o", "task_hint": "", "input_version": 0}
        assert usage.cost_usd == pytest.approx(0.03)

    def test_uses_active_model(self):
        client = _client(_response(IDEA, model="claude-sonnet-4-5"))
        agent = IdeaAgent(client)
        selection = _selection(Stage.IDEA).pinned("claude-sonnet-4-5")
        delta, _ = run(agent.execute(_state(), selection))
        assert client.invoke.call_args.args[0] == "claude-sonnet-4-5"
        assert delta.metadata["model"] == "claude-sonnet-4-5"

    def test_non_json_raises_malformed_with_usage(self):
        client = _client(_response("Here is your app: it's great."))
        with pytest.raises(MalformedOutputError) as exc:
            run(IdeaAgent(client).execute(_state(), _selection(Stage.IDEA)))
        assert exc.value.usage.cost_usd == pytest.approx(0.02)
        assert "great" in exc.value.raw_text

    def test_schema_violation_raises_malformed(self):
        bad = {"summary": "no files here"}
        client = _client(_response(bad))
        with pytest.raises(MalformedOutputError, match="schema validation failed"):
            run(BackendAgent(client).execute(_state(idea=IDEA), _selection(Stage.BACKEND)))

    def test_invalid_verdict_rejected(self):
        client = _client(_response({**QA_PASS, "verdict": "maybe"}))
        with pytest.raises(MalformedOutputError):
            run(QAAgent(client).execute(_state(), _selection(Stage.QA)))

    def test_provider_error_propagates_untouched(self):
        err = ProviderError("HTTP 503", retriable=True)
        client = AsyncMock()
        client.invoke = AsyncMock(side_effect=err)
        with pytest.raises(ProviderError) as exc:
            run(FrontendAgent(client).execute(_state(), _selection(Stage.FRONTEND)))
        assert exc.value is err

    def test_payload_carries_limits(self):
        client = _client(_response(QA_PASS))
        run(QAAgent(client, max_output_tokens=512).execute(_state(), _selection(Stage.QA)))
        payload = client.invoke.call_args.args[1]
        assert payload["max_tokens"] == 512
        assert payload["temperature"] == pytest.approx(0.1)
        assert "strict QA engineer" in payload["system"]


# ─────────────────────────────────────────────────────────────────────────────
# Prompts
# ─────────────────────────────────────────────────────────────────────────────

class TestPrompts:

    def test_idea_prompt_contains_brief(self):
        prompt = IdeaAgent(AsyncMock()).build_prompt(_state())
        assert "Build a todo app" in prompt
        assert '"requirements"' in prompt

    def test_backend_reads_idea(self):
        prompt = BackendAgent(AsyncMock()).build_prompt(_state(idea=IDEA))
        assert "CRUD todos" in prompt
        assert "QA FINDINGS" not in prompt

    def test_repair_prompt_includes_findings_and_current_backend(self):
        state = _state(idea=IDEA, backend=BACKEND, frontend=FRONTEND, qa=QA_FAIL)
        prompt = BackendAgent(AsyncMock()).build_prompt(state, "repair")
        assert "no auth" in prompt
        assert "FastAPI app" in prompt

    def test_frontend_reads_spec_and_backend(self):
        prompt = FrontendAgent(AsyncMock()).build_prompt(_state(idea=IDEA, backend=BACKEND))
        assert "GET /todos" in prompt
        assert "A todo app" in prompt

    def test_missing_upstream_rendered_as_none(self):
        prompt = QAAgent(AsyncMock()).build_prompt(_state(idea=IDEA))
        assert "(none)" in prompt

    def test_large_artifact_truncated(self, caplog):
        huge = {**BACKEND, "files": [{"path": "big.py", "content": "x" * (CONTEXT_CHAR_LIMIT + 10)}]}
        body = render_artifact(_state(idea=IDEA, backend=huge), Stage.BACKEND)
        assert body.endswith("(truncated)")
        assert "truncated" in caplog.text


def test_verdict_passed():
    assert verdict_passed(Artifact(Stage.QA, QA_PASS, 4)) is True
    assert verdict_passed(Artifact(Stage.QA, QA_FAIL, 4)) is False


def test_build_agents_covers_every_stage():
    agents = build_agents(AsyncMock(), max_output_tokens=1024)
    assert set(agents) == set(PIPELINE_ORDER) == set(AGENT_CLASSES)
    assert all(a.stage == s for s, a in agents.items())
    assert agents[Stage.IDEA].max_output_tokens == 1024


# ─────────────────────────────────────────────────────────────────────────────
# Real agents through the engine
# ─────────────────────────────────────────────────────────────────────────────

def test_engine_runs_real_agents_with_repair(tmp_path):
    responses = [
        _response(IDEA), _response(BACKEND), _response(FRONTEND),
        _response(QA_FAIL),
        _response("```json\n" + json.dumps(BACKEND) + "\n```"),
        _response(QA_PASS),
    ]
    client = _client(*responses)
    cfg = OrchestratorConfig(
        primary_model="gpt-4o",
        stage_cost_estimates={s.value: 0.05 for s in PIPELINE_ORDER},
        state_db_path=tmp_path / "state.db",
    )

    async def _scenario():
        orch = Orchestrator(cfg, agents=build_agents(client, cfg.max_output_tokens))
        try:
            await orch.create_project("p1", "Build a todo app")
            result = await orch.run("p1")
            return result, await orch.get("p1")
        finally:
            await orch.close()

    result, state = run(_scenario())
    assert result.status == RunStatus.SUCCEEDED
    assert client.invoke.await_count == 6
    repair_prompt = client.invoke.await_args_list[4].args[1]["prompt"]
    assert "no auth" in repair_prompt
    assert state.version == 6
    assert state.latest(Stage.QA).content["verdict"] == "pass"
    assert result.spent_usd == pytest.approx(0.12)
