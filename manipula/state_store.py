"""
Project State Store — async SQLite-backed, versioned project state
==================================================================
Every commit writes a full ProjectState snapshot under a new version
number; nothing is updated in place, so any earlier version can be read
back for audit or as the base of a new run.

Serialization: JSON (not pickle) — safe for untrusted DB files,
human-readable, and grep-able for debugging.

Commit discipline per project_id:
  - at most one commit in flight; an overlapping commit is rejected with
    StateConflictError rather than queued or merged
  - optional compare-and-set on expected_version
  - (project_id, version) is the primary key, so a lost race can never
    produce two rows for one version

The same database also keeps PipelineRun records and the AgentInvocation
log, keyed by run_id and ordered by sequence number.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from .exceptions import (
    ProjectNotFoundError, RunNotFoundError, StateConflictError, ValidationError,
)
from .models import AgentInvocation, Artifact, ArtifactDelta, PipelineRun, ProjectState, Stage

logger = logging.getLogger("manipula.state")

DEFAULT_STATE_PATH = Path.home() / ".manipula" / "state.db"
HISTORY_PAGE_SIZE = 50


def validate_delta(stage: Stage, delta: ArtifactDelta) -> None:
    """A delta must be non-empty and target only `stage`'s slot."""
    if not isinstance(delta, ArtifactDelta):
        raise ValidationError(f"Expected ArtifactDelta, got {type(delta).__name__}")
    if delta.stage != stage:
        raise ValidationError(
            f"Delta targets '{delta.stage.value}' but stage '{stage.value}' is committing"
        )
    if not isinstance(delta.content, dict) or not delta.content:
        raise ValidationError(f"Empty artifact delta for stage '{stage.value}'")
    try:
        json.dumps(delta.content)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Artifact for '{stage.value}' is not JSON-serialisable: {e}")


@contextlib.asynccontextmanager
async def _savepoint(db: aiosqlite.Connection, name: str) -> AsyncIterator[None]:
    """Scope a write so a failure undoes only its own statements on the shared connection."""
    await db.execute(f"SAVEPOINT {name}")
    try:
        yield
    except BaseException:
        await db.execute(f"ROLLBACK TO {name}")
        await db.execute(f"RELEASE {name}")
        raise
    await db.execute(f"RELEASE {name}")


class VersionHistory:
    """
    Lazy, restartable view over a project's committed versions, oldest first.

    Each `async for` starts a fresh scan and reads page by page, so
    iterating twice yields the same sequence (plus any newer commits).
    """

    def __init__(self, store: "ProjectStateStore", project_id: str,
                 page_size: int = HISTORY_PAGE_SIZE):
        self._store = store
        self._project_id = project_id
        self._page_size = page_size

    def __aiter__(self) -> AsyncIterator[ProjectState]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[ProjectState]:
        after = -1
        while True:
            page = await self._store._version_page(self._project_id, after, self._page_size)
            if not page:
                return
            for state in page:
                yield state
            after = page[-1].version

    async def to_list(self) -> list[ProjectState]:
        return [state async for state in self]


class ProjectStateStore:
    """
    Async aiosqlite-backed state store.
    Persistent connection with one-time schema init.
    """

    def __init__(self, db_path: Path = DEFAULT_STATE_PATH):
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock: Optional[asyncio.Lock] = None  # lazy — created inside event loop
        self._commit_locks: dict[str, asyncio.Lock] = {}

    async def _get_conn(self) -> aiosqlite.Connection:
        if self._lock is None:
            self._lock = asyncio.Lock()
        if self._conn is None:
            async with self._lock:
                if self._conn is None:
                    conn = await aiosqlite.connect(self._db_path)
                    await conn.execute("PRAGMA journal_mode=WAL")
                    await conn.executescript("""
                        CREATE TABLE IF NOT EXISTS projects (
                            project_id     TEXT PRIMARY KEY,
                            brief          TEXT NOT NULL,
                            latest_version INTEGER NOT NULL,
                            created_at     REAL NOT NULL,
                            updated_at     REAL NOT NULL
                        );
                        CREATE TABLE IF NOT EXISTS versions (
                            project_id TEXT NOT NULL,
                            version    INTEGER NOT NULL,
                            stage      TEXT,
                            state      TEXT NOT NULL,
                            created_at REAL NOT NULL,
                            PRIMARY KEY (project_id, version),
                            FOREIGN KEY (project_id) REFERENCES projects(project_id)
                        );
                        CREATE TABLE IF NOT EXISTS runs (
                            run_id     TEXT PRIMARY KEY,
                            project_id TEXT NOT NULL,
                            status     TEXT NOT NULL,
                            run        TEXT NOT NULL,
                            created_at REAL NOT NULL,
                            updated_at REAL NOT NULL
                        );
                        CREATE TABLE IF NOT EXISTS invocations (
                            run_id     TEXT NOT NULL,
                            seq        INTEGER NOT NULL,
                            stage      TEXT NOT NULL,
                            invocation TEXT NOT NULL,
                            created_at REAL NOT NULL,
                            PRIMARY KEY (run_id, seq)
                        );
                    """)
                    await conn.commit()
                    self._conn = conn
        return self._conn

    # ─────────────────────────────────────────
    # Project state
    # ─────────────────────────────────────────

    async def create(self, project_id: str, brief: str) -> ProjectState:
        if not project_id:
            raise ValueError("project_id must not be empty")
        if await self.exists(project_id):
            raise StateConflictError(f"Project {project_id} already exists")
        state = ProjectState(project_id=project_id, brief=brief, version=0)
        now = time.time()
        db = await self._get_conn()
        try:
            async with _savepoint(db, "create_project"):
                await db.execute(
                    "INSERT INTO projects (project_id, brief, latest_version, created_at, updated_at) "
                    "VALUES (?, ?, 0, ?, ?)",
                    (project_id, brief, now, now),
                )
                await db.execute(
                    "INSERT INTO versions (project_id, version, stage, state, created_at) "
                    "VALUES (?, 0, NULL, ?, ?)",
                    (project_id, json.dumps(state.to_dict()), now),
                )
            await db.commit()
        except sqlite3.IntegrityError:
            raise StateConflictError(f"Project {project_id} already exists")
        logger.info(f"Project created: {project_id}")
        return state

    async def exists(self, project_id: str) -> bool:
        db = await self._get_conn()
        async with db.execute(
            "SELECT 1 FROM projects WHERE project_id = ?", (project_id,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def get(self, project_id: str) -> ProjectState:
        """Latest committed version."""
        db = await self._get_conn()
        async with db.execute(
            """SELECT v.state FROM versions v
               JOIN projects p ON p.project_id = v.project_id
                              AND p.latest_version = v.version
               WHERE v.project_id = ?""",
            (project_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ProjectNotFoundError(f"Project {project_id} not found")
        return ProjectState.from_dict(json.loads(row[0]))

    async def get_version(self, project_id: str, version: int) -> ProjectState:
        db = await self._get_conn()
        async with db.execute(
            "SELECT state FROM versions WHERE project_id = ? AND version = ?",
            (project_id, version),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise ProjectNotFoundError(f"Project {project_id} has no version {version}")
        return ProjectState.from_dict(json.loads(row[0]))

    async def commit(self, project_id: str, stage: Stage, delta: ArtifactDelta,
                     expected_version: Optional[int] = None) -> int:
        """Append `delta` to `stage`'s slot as a new version. Returns the new version id."""
        validate_delta(stage, delta)

        lock = self._commit_locks.setdefault(project_id, asyncio.Lock())
        if lock.locked():
            raise StateConflictError(
                f"Another commit for project {project_id} is in flight"
            )
        async with lock:
            current = await self.get(project_id)
            if expected_version is not None and current.version != expected_version:
                raise StateConflictError(
                    f"Project {project_id} is at v{current.version}, "
                    f"commit expected v{expected_version}"
                )

            new_version = current.version + 1
            artifact = Artifact(
                stage=stage,
                content=delta.content,
                version=new_version,
                model=delta.metadata.get("model", ""),
                metadata=dict(delta.metadata),
            )
            new_state = current.with_artifact(artifact)
            now = time.time()
            db = await self._get_conn()
            try:
                async with _savepoint(db, "commit_version"):
                    await db.execute(
                        "INSERT INTO versions (project_id, version, stage, state, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (project_id, new_version, stage.value,
                         json.dumps(new_state.to_dict()), now),
                    )
                    await db.execute(
                        "UPDATE projects SET latest_version = ?, updated_at = ? "
                        "WHERE project_id = ? AND latest_version = ?",
                        (new_version, now, project_id, current.version),
                    )
                await db.commit()
            except sqlite3.IntegrityError:
                raise StateConflictError(
                    f"Version {new_version} of project {project_id} was committed concurrently"
                )
        logger.info(f"Committed {stage.value} → {project_id} v{new_version}")
        return new_version

    def history(self, project_id: str) -> VersionHistory:
        return VersionHistory(self, project_id)

    async def _version_page(self, project_id: str, after: int,
                            limit: int) -> list[ProjectState]:
        db = await self._get_conn()
        async with db.execute(
            """SELECT state FROM versions
               WHERE project_id = ? AND version > ?
               ORDER BY version ASC LIMIT ?""",
            (project_id, after, limit),
        ) as cursor:
            rows = await cursor.fetchall()
        return [ProjectState.from_dict(json.loads(r[0])) for r in rows]

    async def list_projects(self) -> list[dict]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT project_id, latest_version, created_at, updated_at "
            "FROM projects ORDER BY updated_at DESC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            {"project_id": r[0], "latest_version": r[1],
             "created_at": r[2], "updated_at": r[3]}
            for r in rows
        ]

    # ─────────────────────────────────────────
    # Runs & invocation log
    # ─────────────────────────────────────────

    async def save_run(self, run: PipelineRun) -> None:
        now = time.time()
        db = await self._get_conn()
        await db.execute(
            """INSERT OR REPLACE INTO runs
               (run_id, project_id, status, run, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (run.run_id, run.project_id, run.status.value,
             json.dumps(run.to_dict()), run.created_at, now),
        )
        await db.commit()

    async def load_run(self, run_id: str) -> PipelineRun:
        db = await self._get_conn()
        async with db.execute("SELECT run FROM runs WHERE run_id = ?", (run_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return PipelineRun.from_dict(json.loads(row[0]))

    async def list_runs(self, project_id: Optional[str] = None) -> list[dict]:
        db = await self._get_conn()
        query = "SELECT run_id, project_id, status, created_at, updated_at FROM runs"
        params: tuple = ()
        if project_id:
            query += " WHERE project_id = ?"
            params = (project_id,)
        query += " ORDER BY created_at DESC"
        async with db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [
            {"run_id": r[0], "project_id": r[1], "status": r[2],
             "created_at": r[3], "updated_at": r[4]}
            for r in rows
        ]

    async def record_invocation(self, invocation: AgentInvocation) -> None:
        if not invocation.finalized:
            raise ValueError(
                f"Invocation {invocation.run_id}#{invocation.seq} is not finalized"
            )
        db = await self._get_conn()
        await db.execute(
            "INSERT INTO invocations (run_id, seq, stage, invocation, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (invocation.run_id, invocation.seq, invocation.stage.value,
             json.dumps(invocation.to_dict()), time.time()),
        )
        await db.commit()

    async def invocations(self, run_id: str) -> list[AgentInvocation]:
        db = await self._get_conn()
        async with db.execute(
            "SELECT invocation FROM invocations WHERE run_id = ? ORDER BY seq ASC",
            (run_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [AgentInvocation.from_dict(json.loads(r[0])) for r in rows]

    async def close(self):
        """Close the aiosqlite connection gracefully before the event loop shuts down."""
        if self._conn is not None:
            try:
                await self._conn.close()
                # Yield control so the aiosqlite background thread can finish
                # its final callbacks before asyncio.run() closes the loop.
                await asyncio.sleep(0)
            finally:
                self._conn = None
                self._lock = None
                self._commit_locks.clear()
