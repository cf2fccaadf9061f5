"""
Orchestrator Engine — Core Control Loop
=======================================
Drives a project through idea → backend → frontend → qa, with a bounded
backend ↔ qa repair loop when QA rejects the build.

Per stage the engine checks cancellation and budget, routes the stage to a
model, reserves the estimated cost, invokes the agent under a timeout,
settles the reservation against the reported usage, and commits the delta
to the ProjectStateStore as a new version.

Invariants maintained:
1. Spend never exceeds the budget ceiling (reserve before every call)
2. Every stage's delta is committed before the next stage reads state
3. Every invocation is recorded and finalized exactly once
4. Retries per stage never exceed retry_limit attempts in total
5. Terminal runs are never resumed; a new run starts from the latest version
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Mapping, Optional

from .agents import REPAIR_HINT, BaseAgent, build_agents, verdict_passed
from .api_clients import UnifiedClient
from .config import OrchestratorConfig, load_config
from .cost import CostTracker, ReservationToken, estimate_stage_cost
from .exceptions import (
    AgentTimeoutError, BudgetExceededError, MalformedOutputError, ManipulaError,
    ProviderError, QAVerdictFailedError, RunCancelledError, RunNotFoundError,
    StateConflictError,
)
from .hooks import EventType, HookRegistry
from .models import (
    AgentInvocation, Artifact, ArtifactDelta, Budget, InvocationOutcome,
    ModelSelection, PIPELINE_ORDER, PipelineRun, ProjectState, RunStatus,
    Stage, StageTransition, Usage, new_id,
)
from .retry import RetryAction, StageAttempts
from .router import ModelRouter
from .state_store import ProjectStateStore, VersionHistory
from .tracing import (
    TracingConfig, configure_tracing, traced_invocation, traced_run, traced_stage,
)

logger = logging.getLogger("manipula.engine")

_AGENT_ERRORS = (ProviderError, MalformedOutputError, AgentTimeoutError)


class _RunContext:
    """Mutable per-run working set: the run record, its tracker and the state snapshot."""

    def __init__(self, run: PipelineRun, tracker: CostTracker, state: ProjectState):
        self.run = run
        self.tracker = tracker
        self.state = state


class Orchestrator:
    """
    Main orchestration engine.

        orch = Orchestrator(load_config())
        await orch.create_project("todo-app", "A collaborative todo list")
        run = await orch.run("todo-app")
        print(run.status, run.final_version)
    """

    def __init__(self, config: Optional[OrchestratorConfig] = None,
                 store: Optional[ProjectStateStore] = None,
                 client: Optional[UnifiedClient] = None,
                 agents: Optional[Mapping[Stage, BaseAgent]] = None,
                 router: Optional[ModelRouter] = None,
                 hooks: Optional[HookRegistry] = None,
                 tracing_cfg: Optional[TracingConfig] = None):
        self.config = config or load_config()
        self.store = store or ProjectStateStore(self.config.state_db_path)
        if agents is None:
            self.client = client or UnifiedClient()
            agents = build_agents(self.client, self.config.max_output_tokens)
        else:
            self.client = client
        missing = [s.value for s in PIPELINE_ORDER if s not in agents]
        if missing:
            raise ValueError(f"No agent registered for stages: {missing}")
        self.agents: dict[Stage, BaseAgent] = dict(agents)
        self.router = router or ModelRouter(self.config)
        self.hooks = hooks or HookRegistry()

        # process scope: every run draws from one shared tracker and ceiling
        self._shared_tracker: Optional[CostTracker] = (
            CostTracker(Budget(max_usd=self.config.cost_limit_usd))
            if self.config.budget_scope == "process" else None
        )
        self._runs: dict[str, PipelineRun] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_reasons: dict[str, str] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

        if tracing_cfg is not None:
            configure_tracing(tracing_cfg)

    # ─────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────

    def add_hook(self, event: str | EventType, callback) -> None:
        self.hooks.add(event, callback)

    async def create_project(self, project_id: str, brief: str) -> ProjectState:
        return await self.store.create(project_id, brief)

    async def get(self, project_id: str) -> ProjectState:
        return await self.store.get(project_id)

    def history(self, project_id: str) -> VersionHistory:
        return self.store.history(project_id)

    @property
    def shared_budget(self) -> Optional[Budget]:
        return self._shared_tracker.budget if self._shared_tracker is not None else None

    def start(self, project_id: str) -> str:
        """Schedule a run on the running event loop and return its id immediately."""
        run_id = new_id("run")
        self._runs[run_id] = PipelineRun(run_id=run_id, project_id=project_id)
        task = asyncio.create_task(self.run(project_id, run_id=run_id))
        self._tasks[run_id] = task
        task.add_done_callback(lambda t: self._on_task_done(run_id, t))
        return run_id

    def _on_task_done(self, run_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(run_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # the run record already carries the failure; wait() returns it
            logger.error(f"Background run {run_id} ended with {type(error).__name__}: {error}")

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for a run scheduled with start() to reach a terminal status."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return await self.load_run(run_id)

    def status(self, run_id: str) -> dict:
        """
        Snapshot of a run started by this process. Repeated calls are side-effect
        free. Runs from earlier processes are read with load_status().
        """
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return self._snapshot(run)

    async def load_status(self, run_id: str) -> dict:
        """status() for any run, falling back to the persisted record."""
        return self._snapshot(await self.load_run(run_id))

    @staticmethod
    def _snapshot(run: PipelineRun) -> dict:
        snapshot = run.to_dict()
        snapshot["committed_stages"] = [s.value for s in run.committed_stages()]
        return snapshot

    async def load_run(self, run_id: str) -> PipelineRun:
        run = self._runs.get(run_id)
        if run is not None:
            return run
        return await self.store.load_run(run_id)

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        """
        Request cancellation. Returns False if the run already finished.
        The run notices at its next stage boundary or during a backoff sleep.
        """
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.status.is_terminal:
            return False
        self._cancel_reasons[run_id] = reason or "cancelled"
        event = self._cancel_events.get(run_id)
        if event is not None:
            event.set()
        logger.info(f"Cancellation requested for {run_id}: {reason}")
        return True

    async def close(self) -> None:
        for run_id in list(self._tasks):
            self.cancel(run_id)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.store.close()

    # ─────────────────────────────────────────
    # Run loop
    # ─────────────────────────────────────────

    async def run(self, project_id: str, run_id: Optional[str] = None) -> PipelineRun:
        """Execute the pipeline for `project_id` from its latest committed version."""
        run_id = run_id or new_id("run")
        run = self._runs.get(run_id)
        if run is not None and run.status != RunStatus.PENDING:
            raise ValueError(
                f"Run {run_id} is {run.status.value}; start a new run instead"
            )
        if run is None:
            try:
                stored = await self.store.load_run(run_id)
            except RunNotFoundError:
                stored = None
            if stored is not None:
                raise ValueError(
                    f"Run {run_id} already exists ({stored.status.value}); "
                    f"start a new run instead"
                )

        try:
            state = await self.store.get(project_id)
        except ManipulaError as e:
            if run is not None:
                self._finish(run, RunStatus.FAILED, e)
            raise
        if run is None:
            run = PipelineRun(run_id=run_id, project_id=project_id)
            self._runs[run_id] = run
        run.base_version = state.version
        run.status = RunStatus.RUNNING
        self._cancel_events[run_id] = asyncio.Event()
        if run_id in self._cancel_reasons:
            self._cancel_events[run_id].set()

        tracker = self._shared_tracker
        if tracker is None:
            tracker = CostTracker(Budget(max_usd=self.config.cost_limit_usd))
        budget = tracker.budget
        ctx = _RunContext(run, tracker, state)

        logger.info(f"Starting run {run_id} for {project_id} at v{state.version}")
        logger.info(f"Budget: ${budget.remaining_usd:.2f} remaining of ${budget.max_usd:.2f}")
        await self.store.save_run(run)
        self.hooks.fire(EventType.RUN_STARTED, run_id=run_id, project_id=project_id,
                        base_version=state.version)

        with traced_run(run_id, project_id) as span:
            try:
                await self._drive(ctx)
                self._finish(run, RunStatus.SUCCEEDED)
            except BudgetExceededError as e:
                self._finish(run, RunStatus.HALTED_BUDGET, e)
            except RunCancelledError as e:
                self._finish(run, RunStatus.FAILED, e, reason=str(e))
            except asyncio.CancelledError as e:
                self._finish(run, RunStatus.FAILED, RunCancelledError("cancelled"),
                             reason="cancelled")
                await self._persist_finished(ctx)
                raise e
            except ManipulaError as e:
                self._finish(run, RunStatus.FAILED, e)
            except Exception as e:
                logger.exception(f"Run {run_id} crashed: {e}")
                self._finish(run, RunStatus.FAILED, e)
            span.set_attribute("run.status", run.status.value)
            span.set_attribute("run.spent_usd", run.spent_usd)

        await self._persist_finished(ctx)
        self._log_summary(run, budget)
        return run

    async def _persist_finished(self, ctx: _RunContext) -> None:
        run = ctx.run
        if ctx.tracker is not self._shared_tracker:
            ctx.tracker.release_all()
        self._cancel_events.pop(run.run_id, None)
        self._cancel_reasons.pop(run.run_id, None)
        await self.store.save_run(run)
        self.hooks.fire(EventType.RUN_FINISHED, run_id=run.run_id,
                        status=run.status.value, error_type=run.error_type)

    def _finish(self, run: PipelineRun, status: RunStatus,
                error: Optional[BaseException] = None, reason: str = "") -> None:
        run.status = status
        run.finished_at = time.time()
        if error is not None:
            run.error_type = getattr(error, "taxonomy", type(error).__name__)
            run.error_message = str(error)
            run.failure_reason = reason or run.error_type
        if status == RunStatus.FAILED:
            logger.error(f"Run {run.run_id} failed: {run.error_type}: {run.error_message}")
        elif status == RunStatus.HALTED_BUDGET:
            logger.warning(f"Run {run.run_id} halted: {run.error_message}")

    async def _drive(self, ctx: _RunContext) -> None:
        stage: Optional[Stage] = PIPELINE_ORDER[0]
        hint = ""
        while stage is not None:
            self._check_cancelled(ctx.run)
            if not ctx.tracker.can_start_stage(self.config.min_stage_cost_usd):
                remaining = ctx.tracker.remaining()
                self.hooks.fire(EventType.BUDGET_HALTED, run_id=ctx.run.run_id,
                                stage=stage.value, remaining_usd=remaining)
                raise BudgetExceededError(self.config.min_stage_cost_usd, remaining)
            artifact = await self._run_stage(ctx, stage, hint)
            stage, hint = self._next_stage(ctx, stage, hint, artifact)

    def _next_stage(self, ctx: _RunContext, stage: Stage, hint: str,
                    artifact: Artifact) -> tuple[Optional[Stage], str]:
        if stage == Stage.BACKEND and hint == REPAIR_HINT:
            return Stage.QA, ""
        if stage != Stage.QA:
            return PIPELINE_ORDER[PIPELINE_ORDER.index(stage) + 1], ""

        run = ctx.run
        run.qa_rounds += 1
        if verdict_passed(artifact):
            logger.info(f"QA passed for {run.project_id} on round {run.qa_rounds}")
            return None, ""
        if run.qa_rounds < self.config.repair_cap:
            logger.warning(
                f"QA failed for {run.project_id} (round {run.qa_rounds}/"
                f"{self.config.repair_cap}), routing back to backend"
            )
            return Stage.BACKEND, REPAIR_HINT
        raise QAVerdictFailedError(
            f"QA verdict still failing after {run.qa_rounds} round(s)"
        )

    # ─────────────────────────────────────────
    # Single stage
    # ─────────────────────────────────────────

    async def _run_stage(self, ctx: _RunContext, stage: Stage, hint: str) -> Artifact:
        run = ctx.run
        transition = StageTransition(stage=stage, started_at=time.time(), task_hint=hint)
        run.transitions.append(transition)
        run.current_stage = stage
        self.hooks.fire(EventType.STAGE_STARTED, run_id=run.run_id, stage=stage.value,
                        task_hint=hint)

        selection = self.router.select(stage, hint)
        self.hooks.fire(EventType.MODEL_SELECTED, run_id=run.run_id, stage=stage.value,
                        model=selection.primary, fallbacks=list(selection.fallbacks))
        attempts = StageAttempts(
            selection, self.config.retry_limit,
            self.config.backoff_base_seconds, self.config.backoff_max_seconds,
        )

        with traced_stage(stage.value, hint) as span:
            try:
                delta = await self._attempt_loop(ctx, transition, attempts, hint)
                version = await self._commit_delta(ctx, stage, delta)
            except BudgetExceededError:
                self._close_transition(transition, "halted_budget")
                raise
            except BaseException:
                self._close_transition(transition, "failed")
                raise
            span.set_attribute("stage.version", version)
            span.set_attribute("stage.attempts", transition.attempts)

        self._close_transition(transition, "committed", version)
        run.final_version = version
        await self.store.save_run(run)
        self.hooks.fire(EventType.STAGE_COMMITTED, run_id=run.run_id, stage=stage.value,
                        version=version, cost_usd=transition.cost_usd)
        logger.info(
            f"{stage.value} committed as v{version} "
            f"(${transition.cost_usd:.4f}, {transition.attempts} attempt(s))"
        )
        return ctx.state.latest(stage)

    @staticmethod
    def _close_transition(transition: StageTransition, outcome: str,
                          version: Optional[int] = None) -> None:
        transition.outcome = outcome
        transition.version = version
        transition.finished_at = time.time()

    async def _attempt_loop(self, ctx: _RunContext, transition: StageTransition,
                            attempts: StageAttempts, hint: str) -> ArtifactDelta:
        run = ctx.run
        stage = transition.stage
        while True:
            self._check_cancelled(run)
            transition.attempts = attempts.attempt
            selection = attempts.current_selection()
            estimate = estimate_stage_cost(stage, selection.model, self.config)
            try:
                token = ctx.tracker.reserve(estimate, label=f"{run.run_id}:{stage.value}")
            except BudgetExceededError as e:
                self.hooks.fire(EventType.BUDGET_HALTED, run_id=run.run_id,
                                stage=stage.value, remaining_usd=e.remaining)
                raise

            snapshot = ctx.state
            invocation = AgentInvocation(
                run_id=run.run_id, seq=len(run.invocations) + 1, stage=stage,
                model=selection.model, input_version=snapshot.version,
                attempt=attempts.attempt, task_hint=hint,
            )
            run.invocations.append(invocation)

            try:
                delta, usage = await self._invoke(stage, selection, snapshot, hint,
                                                  attempts.attempt)
            except _AGENT_ERRORS as e:
                charged = self._settle(ctx, token, getattr(e, "usage", None))
                transition.cost_usd += charged
                invocation.finalize(InvocationOutcome.FAILURE,
                                    usage=getattr(e, "usage", None), error=e)
                await self.store.record_invocation(invocation)

                decision = attempts.record_failure(e)
                if decision.action == RetryAction.FAIL:
                    logger.error(
                        f"{stage.value}: giving up after {attempts.attempt} attempt(s): {e}"
                    )
                    raise
                logger.warning(
                    f"{stage.value}: attempt {decision.attempt - 1} on {invocation.model} "
                    f"failed ({e.taxonomy}), {decision.action.value} → {decision.model}"
                    f"{f' in {decision.delay:.1f}s' if decision.delay else ''}"
                )
                self.hooks.fire(EventType.STAGE_RETRY, run_id=run.run_id,
                                stage=stage.value, attempt=decision.attempt,
                                action=decision.action.value, model=decision.model,
                                delay=decision.delay, error=str(e))
                await self._backoff(run, decision.delay)
                continue
            except BaseException as e:
                ctx.tracker.release(token)
                invocation.finalize(InvocationOutcome.FAILURE, error=e)
                await self.store.record_invocation(invocation)
                raise

            charged = self._settle(ctx, token, usage)
            transition.cost_usd += charged
            invocation.finalize(InvocationOutcome.SUCCESS, usage=usage, output=delta.content)
            await self.store.record_invocation(invocation)
            return delta

    async def _invoke(self, stage: Stage, selection: ModelSelection,
                      snapshot: ProjectState, hint: str,
                      attempt: int) -> tuple[ArtifactDelta, Usage]:
        agent = self.agents[stage]
        timeout = self.config.stage_timeout_seconds
        with traced_invocation(stage.value, selection.model, attempt):
            try:
                return await asyncio.wait_for(
                    agent.execute(snapshot, selection, hint), timeout=timeout,
                )
            except AgentTimeoutError:
                raise
            except asyncio.TimeoutError as e:
                raise AgentTimeoutError(
                    f"{stage.value} on {selection.model} timed out after {timeout}s"
                ) from e

    def _settle(self, ctx: _RunContext, token: ReservationToken,
                usage: Optional[Usage]) -> float:
        """Commit the reservation against reported usage, or release it if there is none."""
        if usage is None:
            ctx.tracker.release(token)
            return 0.0
        charged = ctx.tracker.commit(token, usage.cost_usd)
        ctx.run.spent_usd += charged
        return charged

    async def _commit_delta(self, ctx: _RunContext, stage: Stage,
                            delta: ArtifactDelta) -> int:
        project_id = ctx.run.project_id
        try:
            version = await self.store.commit(project_id, stage, delta,
                                              expected_version=ctx.state.version)
        except StateConflictError as e:
            logger.warning(f"{stage.value}: commit conflict ({e}), reloading and retrying once")
            ctx.state = await self.store.get(project_id)
            version = await self.store.commit(project_id, stage, delta,
                                              expected_version=ctx.state.version)
        ctx.state = await self.store.get_version(project_id, version)
        return version

    # ─────────────────────────────────────────
    # Cancellation & backoff
    # ─────────────────────────────────────────

    def _check_cancelled(self, run: PipelineRun) -> None:
        reason = self._cancel_reasons.get(run.run_id)
        if reason is not None:
            raise RunCancelledError(reason)

    async def _backoff(self, run: PipelineRun, delay: float) -> None:
        if delay > 0:
            event = self._cancel_events.get(run.run_id)
            if event is None:
                await asyncio.sleep(delay)
            else:
                try:
                    await asyncio.wait_for(event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        self._check_cancelled(run)

    def _log_summary(self, run: PipelineRun, budget: Budget) -> None:
        committed = ", ".join(s.value for s in run.committed_stages()) or "none"
        logger.info(
            f"Run {run.run_id} → {run.status.value}: committed [{committed}], "
            f"v{run.base_version}→v{run.final_version if run.final_version is not None else run.base_version}, "
            f"${run.spent_usd:.4f} spent, {len(run.invocations)} invocation(s), "
            f"budget remaining ${budget.remaining_usd:.4f}"
        )
