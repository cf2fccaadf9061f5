#!/usr/bin/env python3
"""
CLI Entry Point — drive Manipula from a terminal
================================================
Usage:
    python -m manipula init todo-app --brief "A collaborative todo list"
    python -m manipula run todo-app --budget 5.0
    python -m manipula status <run_id>
    python -m manipula state todo-app [--version 3] [--stage backend]
    python -m manipula history todo-app
    python -m manipula runs [--project todo-app]
    python -m manipula projects

Global flags (--config, --db, --verbose, --tracing) go before the subcommand.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

from .config import OrchestratorConfig, load_config
from .engine import Orchestrator
from .exceptions import ManipulaError
from .models import PipelineRun, ProjectState, RunStatus, Stage
from .state_store import ProjectStateStore
from .tracing import TracingConfig


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,  # re-apply even if already configured
    )


def _build_tracing_cfg(args) -> Optional[TracingConfig]:
    """Return a TracingConfig when --tracing is set, otherwise None."""
    if getattr(args, "tracing", False):
        return TracingConfig(
            enabled=True,
            otlp_endpoint=getattr(args, "otlp_endpoint", None),
        )
    return None


def _load_config(args) -> OrchestratorConfig:
    return load_config(
        args.config,
        use_dotenv=False,
        state_db_path=args.db,
        cost_limit_usd=getattr(args, "budget", None),
        primary_model=getattr(args, "model", None),
    )


def _fmt_ts(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


# ─────────────────────────────────────────────
# Subcommands
# ─────────────────────────────────────────────

async def _async_init(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        state = await store.create(args.project_id, args.brief)
    finally:
        await store.close()
    print(f"Created project {state.project_id} at v{state.version}")
    return 0


async def _async_run(args) -> int:
    cfg = _load_config(args)
    orch = Orchestrator(cfg, tracing_cfg=_build_tracing_cfg(args))
    try:
        if args.brief and not await orch.store.exists(args.project_id):
            await orch.create_project(args.project_id, args.brief)
        run = await orch.run(args.project_id)
    finally:
        await orch.close()
    _print_run(run)
    return 0 if run.status == RunStatus.SUCCEEDED else 1


async def _async_status(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        run = await store.load_run(args.run_id)
    finally:
        await store.close()
    if args.json:
        print(json.dumps(run.to_dict(), indent=2))
    else:
        _print_run(run)
    return 0


async def _async_state(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        if args.version is None:
            state = await store.get(args.project_id)
        else:
            state = await store.get_version(args.project_id, args.version)
    finally:
        await store.close()
    if args.json:
        print(json.dumps(state.to_dict(), indent=2))
        return 0
    _print_state(state, Stage(args.stage) if args.stage else None)
    return 0


async def _async_history(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        print(f"{'Version':<9} {'Stages':<40} {'Created'}")
        print("-" * 70)
        async for state in store.history(args.project_id):
            stages = ", ".join(
                f"{s.value}×{len(state.revisions(s))}" for s in state.committed_stages()
            ) or "(brief only)"
            newest = max((a.created_at for a in state.all_artifacts()),
                         default=state.created_at)
            print(f"v{state.version:<8} {stages:<40} {_fmt_ts(newest)}")
    finally:
        await store.close()
    return 0


async def _async_runs(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        runs = await store.list_runs(args.project)
    finally:
        await store.close()
    if not runs:
        print("No runs recorded.")
        return 0
    print(f"{'Run':<18} {'Project':<20} {'Status':<15} {'Created'}")
    print("-" * 75)
    for r in runs:
        print(f"{r['run_id']:<18} {r['project_id']:<20} {r['status']:<15} "
              f"{_fmt_ts(r['created_at'])}")
    return 0


async def _async_projects(args) -> int:
    store = ProjectStateStore(_load_config(args).state_db_path)
    try:
        projects = await store.list_projects()
    finally:
        await store.close()
    if not projects:
        print("No saved projects.")
        return 0
    print(f"{'ID':<20} {'Version':<9} {'Updated'}")
    print("-" * 55)
    for p in projects:
        print(f"{p['project_id']:<20} v{p['latest_version']:<8} {_fmt_ts(p['updated_at'])}")
    return 0


# ─────────────────────────────────────────────
# Output
# ─────────────────────────────────────────────

def _print_run(run: PipelineRun) -> None:
    print("\n" + "=" * 60)
    print(f"RUN {run.run_id} ({run.project_id})")
    print(f"STATUS: {run.status.value}")
    if run.error_type:
        print(f"Error: {run.error_type}: {run.error_message}")
    final = run.final_version if run.final_version is not None else run.base_version
    print(f"Versions: v{run.base_version} → v{final}")
    print(f"Spent: ${run.spent_usd:.4f}   QA rounds: {run.qa_rounds}")
    print("-" * 60)
    for t in run.transitions:
        hint = f" [{t.task_hint}]" if t.task_hint else ""
        version = f"v{t.version}" if t.version is not None else "-"
        print(f"  {t.stage.value + hint:<18} {t.outcome:<14} {version:<6} "
              f"attempts={t.attempts} cost=${t.cost_usd:.4f}")
    print("=" * 60)


def _print_state(state: ProjectState, stage: Optional[Stage] = None) -> None:
    print(f"Project {state.project_id} v{state.version}")
    print(f"Brief: {state.brief}")
    stages = [stage] if stage else list(Stage)
    for s in stages:
        artifact = state.latest(s)
        if artifact is None:
            continue
        print(f"\n--- {s.value} (v{artifact.version}, {artifact.model or 'unknown model'}) ---")
        body = json.dumps(artifact.content, indent=2, ensure_ascii=False)
        print(body[:2000])
        if len(body) > 2000:
            print(f"  ... ({len(body)} chars total)")


# ─────────────────────────────────────────────
# Parser
# ─────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="manipula",
        description="Manipula — multi-agent software generation pipeline",
    )
    parser.add_argument("--config", type=str, default=None,
                        help="YAML config file (overrides environment)")
    parser.add_argument("--db", type=str, default=None,
                        help="State database path (default: $MANIPULA_STATE_DB "
                             "or ~/.manipula/state.db)")
    parser.add_argument("--verbose", "-v", action="store_true")
    parser.add_argument(
        "--tracing",
        action="store_true",
        default=False,
        help="Enable OpenTelemetry tracing for runs",
    )
    parser.add_argument(
        "--otlp-endpoint",
        type=str,
        default=None,
        metavar="URL",
        help="OTLP gRPC endpoint for tracing export (e.g. http://localhost:4317). "
             "Requires: pip install 'manipula[otlp]'. "
             "If --tracing is set but this is omitted, spans are printed to console."
    )

    subparsers = parser.add_subparsers(dest="subcommand", metavar="SUBCOMMAND")
    subparsers.required = True

    p = subparsers.add_parser("init", help="Create a project from a brief")
    p.add_argument("project_id")
    p.add_argument("--brief", "-b", required=True, help="Product brief")
    p.set_defaults(func=_async_init)

    p = subparsers.add_parser("run", help="Run the pipeline for a project")
    p.add_argument("project_id")
    p.add_argument("--brief", type=str, default="",
                   help="Create the project first if it does not exist")
    p.add_argument("--budget", type=float, default=None,
                   help="Cost ceiling in USD (default: $COST_LIMIT_USD or 100.0)")
    p.add_argument("--model", type=str, default=None,
                   help="Primary model (default: $PRIMARY_MODEL or gpt-4)")
    p.set_defaults(func=_async_run)

    p = subparsers.add_parser("status", help="Show a run")
    p.add_argument("run_id")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_async_status)

    p = subparsers.add_parser("state", help="Show a project's committed state")
    p.add_argument("project_id")
    p.add_argument("--version", type=int, default=None)
    p.add_argument("--stage", choices=[s.value for s in Stage], default=None)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_async_state)

    p = subparsers.add_parser("history", help="List a project's versions")
    p.add_argument("project_id")
    p.set_defaults(func=_async_history)

    p = subparsers.add_parser("runs", help="List recorded runs")
    p.add_argument("--project", type=str, default=None)
    p.set_defaults(func=_async_runs)

    p = subparsers.add_parser("projects", help="List saved projects")
    p.set_defaults(func=_async_projects)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv(override=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        code = asyncio.run(args.func(args))
    except (ManipulaError, ValueError, FileNotFoundError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        code = 2
    if argv is None:
        sys.exit(code)
    return code


if __name__ == "__main__":
    main()
