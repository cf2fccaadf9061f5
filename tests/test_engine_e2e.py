"""
E2E Integration Tests — Orchestrator Engine
============================================
Drives the full idea → backend → frontend → qa pipeline with scripted
agents (no real API calls) and a real ProjectStateStore in tmp_path.
Covers:

  - Happy path: four committed versions, each stage reading the previous one
  - Budget halt before a stage whose reservation does not fit
  - Retry bound, malformed-output fallback, non-retriable fallback
  - QA repair loop and repair cap
  - Cancellation at a stage boundary and during backoff
  - Timeout releases the reservation
  - Validation failure and commit conflict handling
  - status() idempotence, start()/wait(), process-scoped budget
"""
from __future__ import annotations

import asyncio
import contextlib

import pytest

from manipula.config import OrchestratorConfig
from manipula.engine import Orchestrator
from manipula.exceptions import (
    MalformedOutputError, ProjectNotFoundError, ProviderError, RunNotFoundError,
)
from manipula.hooks import EventType
from manipula.models import (
    ArtifactDelta, InvocationOutcome, PIPELINE_ORDER, RunStatus, Stage, Usage,
)

BRIEF = "A collaborative todo list with due dates"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _default_content(stage: Stage) -> dict:
    if stage == Stage.QA:
        return {"verdict": "pass", "findings": [], "summary": "looks good"}
    return {"summary": f"{stage.value} output"}


QA_FAIL = {
    "verdict": "fail",
    "findings": [{"severity": "high", "message": "POST /todos returns 500"}],
    "summary": "backend broken",
}


class ScriptedAgent:
    """
    Stand-in for a pipeline agent. Each call consumes the next script step:
    an exception is raised, a dict is returned as content, an async callable
    is awaited with the state snapshot and its result used as content.
    An empty script yields the stage's default content.
    """

    def __init__(self, stage: Stage, script=None, cost: float = 0.10):
        self.stage = stage
        self.script = list(script or [])
        self.cost = cost
        self.calls: list[tuple[str, int, str]] = []   # (model, input version, hint)

    async def execute(self, state, selection, task_hint=""):
        self.calls.append((selection.model, state.version, task_hint))
        step = self.script.pop(0) if self.script else None
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = await step(state)
        content = _default_content(self.stage) if step is None else step
        delta = ArtifactDelta(self.stage, content, {"model": selection.model,
                                                    "task_hint": task_hint})
        return delta, Usage(100, 200, self.cost, selection.model)


def _agents(**scripts) -> dict[Stage, ScriptedAgent]:
    return {s: ScriptedAgent(s, scripts.get(s.value)) for s in PIPELINE_ORDER}


def _config(tmp_path, **overrides) -> OrchestratorConfig:
    values = dict(
        primary_model="gpt-4o",
        fallback_models=("claude-sonnet-4-5", "gemini-2.5-pro"),
        cost_limit_usd=10.0,
        stage_cost_estimates={s.value: 0.10 for s in PIPELINE_ORDER},
        backoff_base_seconds=0.0,
        state_db_path=tmp_path / "state.db",
    )
    values.update(overrides)
    return OrchestratorConfig(**values)


@contextlib.asynccontextmanager
async def _orchestrator(tmp_path, agents, **overrides):
    orch = Orchestrator(_config(tmp_path, **overrides), agents=agents)
    await orch.create_project("p1", BRIEF)
    try:
        yield orch
    finally:
        await orch.close()


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

class TestHappyPath:

    @pytest.mark.asyncio
    async def test_all_stages_commit_in_order(self, tmp_path):
        agents = _agents()
        async with _orchestrator(tmp_path, agents) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")
            logged = await orch.store.invocations(run.run_id)

        assert run.status == RunStatus.SUCCEEDED
        assert run.base_version == 0
        assert run.final_version == 4
        assert run.committed_stages() == list(PIPELINE_ORDER)
        assert state.version == 4
        assert [a.version for a in state.all_artifacts()] == [1, 2, 3, 4]
        assert run.spent_usd == pytest.approx(0.40)
        assert run.qa_rounds == 1
        assert len(logged) == 4
        assert all(i.outcome == InvocationOutcome.SUCCESS for i in logged)

    @pytest.mark.asyncio
    async def test_each_stage_reads_previous_commit(self, tmp_path):
        agents = _agents()
        async with _orchestrator(tmp_path, agents) as orch:
            await orch.run("p1")

        seen = [agents[s].calls[0][1] for s in PIPELINE_ORDER]
        assert seen == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_committed_artifact_records_model(self, tmp_path):
        agents = _agents()
        async with _orchestrator(tmp_path, agents,
                                 stage_models={"qa": "claude-sonnet-4-5"}) as orch:
            await orch.run("p1")
            state = await orch.get("p1")

        assert state.latest(Stage.IDEA).model == "gpt-4o"
        assert state.latest(Stage.QA).model == "claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_hooks_fire_in_lifecycle_order(self, tmp_path):
        events: list[str] = []
        async with _orchestrator(tmp_path, _agents()) as orch:
            for ev in (EventType.RUN_STARTED, EventType.STAGE_COMMITTED,
                       EventType.RUN_FINISHED):
                orch.add_hook(ev, lambda _ev=ev, **kw: events.append(_ev.value))
            await orch.run("p1")

        assert events[0] == "run_started"
        assert events[1:5] == ["stage_committed"] * 4
        assert events[-1] == "run_finished"

    @pytest.mark.asyncio
    async def test_second_run_starts_from_latest_version(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            first = await orch.run("p1")
            second = await orch.run("p1")
            with pytest.raises(ValueError):
                await orch.run("p1", run_id=first.run_id)
            state = await orch.get("p1")

        assert second.base_version == 4
        assert second.final_version == 8
        assert len(state.revisions(Stage.IDEA)) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Budget
# ─────────────────────────────────────────────────────────────────────────────

class TestBudget:

    @pytest.mark.asyncio
    async def test_halts_when_next_reservation_does_not_fit(self, tmp_path):
        """$1.00 ceiling, every stage $0.40: idea and backend fit, frontend does not."""
        agents = _agents()
        for agent in agents.values():
            agent.cost = 0.40
        halted: list[dict] = []
        async with _orchestrator(
            tmp_path, agents, cost_limit_usd=1.0,
            stage_cost_estimates={s.value: 0.40 for s in PIPELINE_ORDER},
        ) as orch:
            orch.add_hook(EventType.BUDGET_HALTED, lambda **kw: halted.append(kw))
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert run.status == RunStatus.HALTED_BUDGET
        assert run.error_type == "BudgetExceededError"
        assert run.committed_stages() == [Stage.IDEA, Stage.BACKEND]
        assert state.version == 2
        assert state.committed_stages() == [Stage.IDEA, Stage.BACKEND]
        assert agents[Stage.FRONTEND].calls == []
        assert run.spent_usd == pytest.approx(0.80)
        assert halted and halted[0]["stage"] == "frontend"

    @pytest.mark.asyncio
    async def test_halts_before_stage_below_min_cost(self, tmp_path):
        agents = _agents()
        agents[Stage.IDEA].cost = 0.95
        async with _orchestrator(
            tmp_path, agents, cost_limit_usd=1.0, min_stage_cost_usd=0.10,
            stage_cost_estimates={"idea": 1.0},
        ) as orch:
            run = await orch.run("p1")

        assert run.status == RunStatus.HALTED_BUDGET
        assert run.committed_stages() == [Stage.IDEA]
        assert agents[Stage.BACKEND].calls == []

    @pytest.mark.asyncio
    async def test_spend_never_exceeds_ceiling_when_actual_exceeds_estimate(self, tmp_path):
        agents = _agents()
        agents[Stage.IDEA].cost = 5.0
        async with _orchestrator(tmp_path, agents, cost_limit_usd=1.0,
                                 budget_scope="process") as orch:
            run = await orch.run("p1")
            budget = orch.shared_budget

        assert budget.spent_usd <= budget.max_usd
        assert budget.overrun_usd == pytest.approx(4.0)
        assert run.status == RunStatus.HALTED_BUDGET

    @pytest.mark.asyncio
    async def test_process_scope_accumulates_across_runs(self, tmp_path):
        async with _orchestrator(tmp_path, _agents(), cost_limit_usd=5.0,
                                 budget_scope="process") as orch:
            await orch.run("p1")
            await orch.run("p1")
            budget = orch.shared_budget

        assert budget.spent_usd == pytest.approx(0.80)
        assert budget.reserved_usd == pytest.approx(0.0)


# ─────────────────────────────────────────────────────────────────────────────
# Retry & fallback
# ─────────────────────────────────────────────────────────────────────────────

class TestRetryAndFallback:

    @pytest.mark.asyncio
    async def test_retriable_errors_stop_at_retry_limit(self, tmp_path):
        script = [ProviderError("HTTP 503", retriable=True) for _ in range(10)]
        agents = _agents(backend=script)
        async with _orchestrator(tmp_path, agents, retry_limit=3) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")
            logged = await orch.store.invocations(run.run_id)

        backend_calls = agents[Stage.BACKEND].calls
        assert len(backend_calls) == 3
        assert [model for model, _, _ in backend_calls] == [
            "gpt-4o", "gpt-4o", "claude-sonnet-4-5",
        ]
        assert run.status == RunStatus.FAILED
        assert run.error_type == "ProviderError"
        assert state.version == 1
        failures = [i for i in logged if i.stage == Stage.BACKEND]
        assert [i.attempt for i in failures] == [1, 2, 3]
        assert all(i.outcome == InvocationOutcome.FAILURE for i in failures)

    @pytest.mark.asyncio
    async def test_unavailable_primary_recovers_on_fallback(self, tmp_path):
        script = [ProviderError("HTTP 503", retriable=True) for _ in range(2)]
        agents = _agents(backend=script)
        async with _orchestrator(tmp_path, agents, retry_limit=3) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert [model for model, _, _ in agents[Stage.BACKEND].calls] == [
            "gpt-4o", "gpt-4o", "claude-sonnet-4-5",
        ]
        assert run.status == RunStatus.SUCCEEDED
        assert state.latest(Stage.BACKEND).model == "claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_malformed_output_moves_to_first_fallback(self, tmp_path):
        bad = MalformedOutputError("not JSON", usage=Usage(50, 50, 0.05, "gpt-4o"))
        agents = _agents(backend=[bad])
        async with _orchestrator(tmp_path, agents) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")

        models = [model for model, _, _ in agents[Stage.BACKEND].calls]
        assert models == ["gpt-4o", "claude-sonnet-4-5"]
        assert run.status == RunStatus.SUCCEEDED
        assert state.latest(Stage.BACKEND).model == "claude-sonnet-4-5"
        # the malformed attempt still cost money
        assert run.spent_usd == pytest.approx(0.45)

    @pytest.mark.asyncio
    async def test_non_retriable_provider_error_falls_back(self, tmp_path):
        agents = _agents(idea=[ProviderError("HTTP 401", retriable=False)])
        retries: list[dict] = []
        async with _orchestrator(tmp_path, agents) as orch:
            orch.add_hook(EventType.STAGE_RETRY, lambda **kw: retries.append(kw))
            run = await orch.run("p1")

        assert run.status == RunStatus.SUCCEEDED
        assert retries[0]["action"] == "fallback"
        assert retries[0]["model"] == "claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, tmp_path):
        agents = _agents(frontend=[ProviderError("HTTP 429")])
        async with _orchestrator(tmp_path, agents) as orch:
            run = await orch.run("p1")

        frontend = [t for t in run.transitions if t.stage == Stage.FRONTEND][0]
        assert run.status == RunStatus.SUCCEEDED
        assert frontend.attempts == 2
        assert len(agents[Stage.FRONTEND].calls) == 2

    @pytest.mark.asyncio
    async def test_timeout_releases_reservation(self, tmp_path):
        async def _hang(state):
            await asyncio.sleep(5)
            return {"summary": "never"}

        agents = _agents(backend=[_hang])
        async with _orchestrator(tmp_path, agents, retry_limit=1,
                                 stage_timeout_seconds=0.05,
                                 budget_scope="process") as orch:
            run = await orch.run("p1")
            budget = orch.shared_budget

        assert run.status == RunStatus.FAILED
        assert run.error_type == "TimeoutError"
        assert budget.reserved_usd == pytest.approx(0.0)
        assert budget.spent_usd == pytest.approx(0.10)


# ─────────────────────────────────────────────────────────────────────────────
# QA repair loop
# ─────────────────────────────────────────────────────────────────────────────

class TestRepairLoop:

    @pytest.mark.asyncio
    async def test_failed_verdict_routes_back_to_backend(self, tmp_path):
        agents = _agents(qa=[QA_FAIL])
        async with _orchestrator(tmp_path, agents) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert run.status == RunStatus.SUCCEEDED
        assert run.qa_rounds == 2
        assert [hint for _, _, hint in agents[Stage.BACKEND].calls] == ["", "repair"]
        assert [t.stage for t in run.transitions] == [
            Stage.IDEA, Stage.BACKEND, Stage.FRONTEND, Stage.QA, Stage.BACKEND, Stage.QA,
        ]
        assert len(state.revisions(Stage.BACKEND)) == 2
        assert len(state.revisions(Stage.FRONTEND)) == 1
        assert state.version == 6

    @pytest.mark.asyncio
    async def test_repair_cap_fails_run(self, tmp_path):
        agents = _agents(qa=[QA_FAIL, QA_FAIL, QA_FAIL])
        async with _orchestrator(tmp_path, agents, repair_cap=2) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert run.status == RunStatus.FAILED
        assert run.error_type == "QAVerdictFailed"
        assert run.qa_rounds == 2
        assert len(agents[Stage.QA].calls) == 2
        assert len(state.revisions(Stage.QA)) == 2

    @pytest.mark.asyncio
    async def test_repair_cap_of_one_disables_repair(self, tmp_path):
        agents = _agents(qa=[QA_FAIL])
        async with _orchestrator(tmp_path, agents, repair_cap=1) as orch:
            run = await orch.run("p1")

        assert run.status == RunStatus.FAILED
        assert len(agents[Stage.BACKEND].calls) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_observed_at_next_stage_boundary(self, tmp_path):
        agents = _agents()
        async with _orchestrator(tmp_path, agents, budget_scope="process") as orch:
            def _cancel(run_id, stage, **_):
                if stage == "idea":
                    orch.cancel(run_id)
            orch.add_hook(EventType.STAGE_COMMITTED, _cancel)
            run = await orch.run("p1")
            state = await orch.get("p1")
            budget = orch.shared_budget

        assert run.status == RunStatus.FAILED
        assert run.failure_reason == "cancelled"
        assert state.version == 1
        assert agents[Stage.BACKEND].calls == []
        assert budget.reserved_usd == pytest.approx(0.0)

    @pytest.mark.asyncio
    async def test_cancel_interrupts_backoff(self, tmp_path):
        agents = _agents(backend=[ProviderError("HTTP 503")] * 3)
        async with _orchestrator(tmp_path, agents, backoff_base_seconds=30.0) as orch:
            orch.add_hook(EventType.STAGE_RETRY,
                          lambda run_id, **_: orch.cancel(run_id, reason="user abort"))
            run = await asyncio.wait_for(orch.run("p1"), timeout=5)

        assert run.status == RunStatus.FAILED
        assert run.failure_reason == "user abort"
        assert len(agents[Stage.BACKEND].calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_finished_run_is_noop(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            run = await orch.run("p1")
            assert orch.cancel(run.run_id) is False
            with pytest.raises(RunNotFoundError):
                orch.cancel("run_missing")


# ─────────────────────────────────────────────────────────────────────────────
# State commits
# ─────────────────────────────────────────────────────────────────────────────

class TestStateCommits:

    @pytest.mark.asyncio
    async def test_invalid_delta_fails_run_without_partial_state(self, tmp_path):
        agents = _agents(idea=[{}])
        async with _orchestrator(tmp_path, agents) as orch:
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert run.status == RunStatus.FAILED
        assert run.error_type == "ValidationError"
        assert state.version == 0
        assert agents[Stage.BACKEND].calls == []

    @pytest.mark.asyncio
    async def test_conflicting_commit_is_retried_once(self, tmp_path):
        holder: dict = {}

        async def _concurrent_writer(state):
            store = holder["orch"].store
            await store.commit("p1", Stage.IDEA, ArtifactDelta(Stage.IDEA, {"summary": "edited"}))
            return {"summary": "backend output"}

        agents = _agents(backend=[_concurrent_writer])
        async with _orchestrator(tmp_path, agents) as orch:
            holder["orch"] = orch
            run = await orch.run("p1")
            state = await orch.get("p1")

        assert run.status == RunStatus.SUCCEEDED
        assert len(state.revisions(Stage.IDEA)) == 2
        assert state.latest(Stage.BACKEND).version == 3
        assert state.version == 5


# ─────────────────────────────────────────────────────────────────────────────
# Status & background runs
# ─────────────────────────────────────────────────────────────────────────────

class TestStatus:

    @pytest.mark.asyncio
    async def test_status_is_idempotent(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            run = await orch.run("p1")
            first = orch.status(run.run_id)
            second = orch.status(run.run_id)

        assert first == second
        assert first["status"] == "succeeded"
        assert first["committed_stages"] == ["idea", "backend", "frontend", "qa"]

    @pytest.mark.asyncio
    async def test_unknown_run_raises(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            with pytest.raises(RunNotFoundError):
                orch.status("run_nope")

    @pytest.mark.asyncio
    async def test_start_returns_immediately(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            run_id = orch.start("p1")
            assert orch.status(run_id)["status"] in ("pending", "running")
            run = await orch.wait(run_id)
            persisted = await orch.store.load_run(run_id)

        assert run.status == RunStatus.SUCCEEDED
        assert persisted.status == RunStatus.SUCCEEDED
        assert persisted.final_version == 4

    @pytest.mark.asyncio
    async def test_finished_run_from_earlier_process_is_not_resumed(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            first = await orch.run("p1")

        second = Orchestrator(_config(tmp_path), agents=_agents())
        try:
            with pytest.raises(ValueError, match="already exists"):
                await second.run("p1", run_id=first.run_id)
            stored = await second.store.load_run(first.run_id)
            state = await second.get("p1")
            reported = await second.load_status(first.run_id)
        finally:
            await second.close()

        assert stored.status == RunStatus.SUCCEEDED
        assert stored.error_type == ""
        assert state.version == 4
        assert reported["status"] == "succeeded"
        assert reported["committed_stages"] == ["idea", "backend", "frontend", "qa"]

    @pytest.mark.asyncio
    async def test_load_status_unknown_run(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            with pytest.raises(RunNotFoundError):
                await orch.load_status("run_nope")

    @pytest.mark.asyncio
    async def test_background_run_of_unknown_project_is_recorded(self, tmp_path, caplog):
        async with _orchestrator(tmp_path, _agents()) as orch:
            run_id = orch.start("ghost")
            for _ in range(50):
                if run_id not in orch._tasks:
                    break
                await asyncio.sleep(0.01)
            run = await orch.wait(run_id)

        assert run.status == RunStatus.FAILED
        assert run.error_type == "ProjectNotFoundError"
        assert f"Background run {run_id} ended with ProjectNotFoundError" in caplog.text

    @pytest.mark.asyncio
    async def test_close_cancels_with_standard_reason(self, tmp_path):
        gate = asyncio.Event()

        async def _stall(state):
            gate.set()
            await asyncio.sleep(0.2)
            return None

        agents = _agents(idea=[_stall])
        orch = Orchestrator(_config(tmp_path), agents=agents)
        await orch.create_project("p1", BRIEF)
        run_id = orch.start("p1")
        await gate.wait()
        await orch.close()
        run = await orch.load_run(run_id)

        assert run.status == RunStatus.FAILED
        assert run.failure_reason == "cancelled"
        assert agents[Stage.BACKEND].calls == []

    @pytest.mark.asyncio
    async def test_run_unknown_project(self, tmp_path):
        async with _orchestrator(tmp_path, _agents()) as orch:
            with pytest.raises(ProjectNotFoundError):
                await orch.run("ghost")

    def test_missing_agent_rejected(self, tmp_path):
        agents = _agents()
        del agents[Stage.QA]
        with pytest.raises(ValueError, match="qa"):
            Orchestrator(_config(tmp_path), agents=agents)
