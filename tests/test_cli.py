"""
Tests for the argparse CLI. Read-only subcommands run against a real
state database in tmp_path; `run` is exercised with the Orchestrator
patched so no provider is contacted.
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import pytest

from manipula.cli import build_parser, main
from manipula.models import ArtifactDelta, PipelineRun, RunStatus, Stage
from manipula.state_store import ProjectStateStore


@pytest.fixture()
def db(tmp_path):
    return str(tmp_path / "state.db")


def _seed(db: str) -> None:
    async def _go():
        store = ProjectStateStore(db)
        try:
            await store.create("todo", "A todo app")
            await store.commit("todo", Stage.IDEA,
                               ArtifactDelta(Stage.IDEA, {"summary": "outline"}, {"model": "gpt-4"}))
            run = PipelineRun(run_id="run_abc", project_id="todo",
                              status=RunStatus.HALTED_BUDGET, final_version=1,
                              error_type="BudgetExceededError")
            await store.save_run(run)
        finally:
            await store.close()
    asyncio.run(_go())


def test_subcommand_required():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_init_creates_project(db, capsys):
    assert main(["--db", db, "init", "todo", "--brief", "A todo app"]) == 0
    assert "Created project todo at v0" in capsys.readouterr().out


def test_init_duplicate_is_an_error(db, capsys):
    main(["--db", db, "init", "todo", "--brief", "A todo app"])
    assert main(["--db", db, "init", "todo", "--brief", "again"]) == 2
    assert "already exists" in capsys.readouterr().err


def test_state_and_history(db, capsys):
    _seed(db)
    assert main(["--db", db, "state", "todo", "--json"]) == 0
    state = json.loads(capsys.readouterr().out)
    assert state["version"] == 1
    assert state["artifacts"]["idea"][0]["content"] == {"summary": "outline"}

    assert main(["--db", db, "state", "todo", "--version", "0"]) == 0
    assert "Project todo v0" in capsys.readouterr().out

    assert main(["--db", db, "history", "todo"]) == 0
    out = capsys.readouterr().out
    assert "v0" in out and "v1" in out and "idea×1" in out


def test_status_runs_and_projects(db, capsys):
    _seed(db)
    assert main(["--db", db, "status", "run_abc"]) == 0
    out = capsys.readouterr().out
    assert "STATUS: halted_budget" in out
    assert "BudgetExceededError" in out

    assert main(["--db", db, "runs", "--project", "todo"]) == 0
    assert "run_abc" in capsys.readouterr().out

    assert main(["--db", db, "projects"]) == 0
    assert "todo" in capsys.readouterr().out


def test_unknown_run(db, capsys):
    assert main(["--db", db, "status", "run_missing"]) == 2
    assert "run_missing" in capsys.readouterr().err


def test_run_exit_code_reflects_status(db, capsys):
    finished = PipelineRun(run_id="run_1", project_id="todo", status=RunStatus.SUCCEEDED,
                           final_version=4)

    class _FakeOrchestrator:
        def __init__(self, config, tracing_cfg=None):
            self.config = config

        async def run(self, project_id):
            assert self.config.cost_limit_usd == 2.0
            return finished

        async def close(self):
            pass

    with patch("manipula.cli.Orchestrator", _FakeOrchestrator):
        code = main(["--db", db, "run", "todo", "--budget", "2.0"])
    assert code == 0
    assert "STATUS: succeeded" in capsys.readouterr().out

    finished.status = RunStatus.FAILED
    with patch("manipula.cli.Orchestrator", _FakeOrchestrator):
        assert main(["--db", db, "run", "todo", "--budget", "2.0"]) == 1
