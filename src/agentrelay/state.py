from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from agentrelay.config import ProjectConfig, project_config_from_dict, project_config_to_dict
from agentrelay.models import (
    ACTIVE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    Issue,
    OrchestrationState,
    RunMode,
    RunRecord,
    RunStatus,
    WorkItem,
    WorktreeRecord,
    WorktreeStatus,
)
from agentrelay.run_tokens import mint_run_token, tokens_match


_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"
_ACTIVE_STATUS_SQL = ", ".join(f"'{status}'" for status in ACTIVE_RUN_STATUSES)
_TERMINAL_STATUS_SQL = ", ".join(f"'{status}'" for status in TERMINAL_RUN_STATUSES)
_ORCHESTRATION_STATES = {"new", "planning", "in_progress", "completed", "failed"}

_WORK_ITEM_COLUMNS = """
    id, project_id, external_id, number, title, body, state, labels_json,
    orchestration_state, creator_login, followup_count, is_pull_request, html_url,
    parent_item_id, claim_key
"""
_RUN_COLUMNS = """
    id, project_id, workflow_id, work_item_id, source_pr_number, agent_type, mode, status,
    environment_ref, checkout_path, branch_name, base_commit, result_commit, pr_number, pr_url,
    custom_prompt, error, completion_reason, iterations, duration_seconds, input_tokens,
    output_tokens, cost_usd, started_at, completed_at, created_at, updated_at
"""
_WORKTREE_COLUMNS = """
    id, project_id, run_id, path, branch_name, base_commit, status, pushed, created_at, updated_at
"""


class WorktreeConflictError(RuntimeError):
    """Raised when a branch already has an active worktree claim in the same project."""


class StateStore:
    """Durable Work Item, Run and worktree records for every configured project."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS projects (
                    project_id TEXT PRIMARY KEY,
                    full_name TEXT NOT NULL,
                    settings_json TEXT NOT NULL,
                    poll_interval_seconds INTEGER NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS work_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
                    external_id INTEGER NULL,
                    number INTEGER NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL DEFAULT '',
                    state TEXT NOT NULL DEFAULT 'open',
                    labels_json TEXT NOT NULL DEFAULT '[]',
                    orchestration_state TEXT NOT NULL DEFAULT 'new',
                    creator_login TEXT NOT NULL DEFAULT '',
                    followup_count INTEGER NOT NULL DEFAULT 0,
                    is_pull_request INTEGER NOT NULL DEFAULT 0,
                    html_url TEXT NOT NULL DEFAULT '',
                    parent_item_id INTEGER NULL REFERENCES work_items(id) ON DELETE SET NULL,
                    claim_key TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    UNIQUE (project_id, number)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
                    workflow_id TEXT NOT NULL,
                    execution_id TEXT NOT NULL UNIQUE,
                    work_item_id INTEGER NULL REFERENCES work_items(id),
                    source_pr_number INTEGER NULL,
                    agent_type TEXT NOT NULL,
                    mode TEXT NOT NULL DEFAULT 'build',
                    status TEXT NOT NULL DEFAULT 'pending',
                    environment_ref TEXT NULL,
                    checkout_path TEXT NULL,
                    branch_name TEXT NULL,
                    base_commit TEXT NULL,
                    result_commit TEXT NULL,
                    pr_number INTEGER NULL,
                    pr_url TEXT NULL,
                    custom_prompt TEXT NULL,
                    error TEXT NULL,
                    completion_reason TEXT NULL,
                    auth_token TEXT NULL,
                    iterations INTEGER NULL,
                    duration_seconds REAL NULL,
                    input_tokens INTEGER NULL,
                    output_tokens INTEGER NULL,
                    cost_usd REAL NULL,
                    started_at TEXT NULL,
                    completed_at TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_runs_project_source_pr
                ON runs(project_id, source_pr_number, status)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS followup_dispatches (
                    dispatch_key TEXT PRIMARY KEY,
                    work_item_id INTEGER NOT NULL REFERENCES work_items(id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worktrees (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
                    run_id INTEGER NULL REFERENCES runs(id) ON DELETE SET NULL,
                    path TEXT NOT NULL,
                    branch_name TEXT NOT NULL,
                    base_commit TEXT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    pushed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_worktrees_active_branch
                ON worktrees(project_id, branch_name)
                WHERE status = 'active'
                """
            )

    # Projects

    def upsert_project(self, project: ProjectConfig) -> None:
        settings_json = json.dumps(project_config_to_dict(project), sort_keys=True)
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO projects(
                    project_id, full_name, settings_json, poll_interval_seconds, active
                )
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    full_name=excluded.full_name,
                    settings_json=excluded.settings_json,
                    poll_interval_seconds=excluded.poll_interval_seconds,
                    active=excluded.active,
                    updated_at={_NOW_SQL}
                """,
                (
                    project.project_id,
                    project.full_name,
                    settings_json,
                    project.poll_interval_seconds,
                    1 if project.active else 0,
                ),
            )

    def get_project(self, project_id: str) -> ProjectConfig | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT project_id, settings_json, poll_interval_seconds, active
                FROM projects
                WHERE project_id = ?
                """,
                (project_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_project_row(row)

    def list_projects(self, *, active_only: bool = False) -> list[ProjectConfig]:
        query = "SELECT project_id, settings_json, poll_interval_seconds, active FROM projects"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY project_id ASC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_parse_project_row(row) for row in rows]

    def set_project_active(self, project_id: str, active: bool) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE projects
                SET active = ?, updated_at = {_NOW_SQL}
                WHERE project_id = ?
                """,
                (1 if active else 0, project_id),
            )
            return cur.rowcount == 1

    def delete_project(self, project_id: str) -> bool:
        """Delete a project with its work items, runs and worktree records."""
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM projects WHERE project_id = ?", (project_id,))
            return cur.rowcount == 1

    def get_poll_interval(self, project_id: str) -> int | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT poll_interval_seconds FROM projects WHERE project_id = ?",
                (project_id,),
            ).fetchone()
        if row is None:
            return None
        return _as_int(row[0], column="poll_interval_seconds")

    # Work items

    def upsert_work_item(
        self,
        project_id: str,
        issue: Issue,
        *,
        body_override: str | None = None,
    ) -> WorkItem:
        """Refresh one synced item; an external re-open resets orchestration to ``new``."""
        body = issue.body if body_override is None else body_override
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO work_items(
                    project_id, external_id, number, title, body, state, labels_json,
                    creator_login, is_pull_request, html_url
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id, number) DO UPDATE SET
                    external_id=COALESCE(excluded.external_id, work_items.external_id),
                    title=excluded.title,
                    body=excluded.body,
                    labels_json=excluded.labels_json,
                    creator_login=excluded.creator_login,
                    is_pull_request=excluded.is_pull_request,
                    html_url=excluded.html_url,
                    orchestration_state=CASE
                        WHEN work_items.state = 'closed' AND excluded.state = 'open' THEN 'new'
                        ELSE work_items.orchestration_state
                    END,
                    state=excluded.state,
                    updated_at={_NOW_SQL}
                """,
                (
                    project_id,
                    issue.external_id,
                    issue.number,
                    issue.title,
                    body,
                    issue.state,
                    json.dumps(sorted(set(issue.labels))),
                    issue.author_login.strip().lower(),
                    1 if issue.is_pull_request else 0,
                    issue.html_url,
                ),
            )
            row = conn.execute(
                f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE project_id = ? AND number = ?",
                (project_id, issue.number),
            ).fetchone()
        assert row is not None
        return _parse_work_item_row(row)

    def get_work_item(self, work_item_id: int) -> WorkItem | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE id = ?",
                (work_item_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_work_item_row(row)

    def get_work_item_by_number(self, project_id: str, number: int) -> WorkItem | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_WORK_ITEM_COLUMNS} FROM work_items WHERE project_id = ? AND number = ?",
                (project_id, number),
            ).fetchone()
        if row is None:
            return None
        return _parse_work_item_row(row)

    def list_open_work_items(self, project_id: str) -> list[WorkItem]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_WORK_ITEM_COLUMNS}
                FROM work_items
                WHERE project_id = ? AND state = 'open'
                ORDER BY number ASC
                """,
                (project_id,),
            ).fetchall()
        return [_parse_work_item_row(row) for row in rows]

    def list_open_generated_pull_requests(
        self, project_id: str, generated_label: str
    ) -> list[WorkItem]:
        return [
            item
            for item in self.list_open_work_items(project_id)
            if item.is_pull_request and generated_label in item.labels
        ]

    def set_work_item_parent(self, work_item_id: int, parent_item_id: int | None) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE work_items SET parent_item_id = ?, updated_at = {_NOW_SQL} WHERE id = ?",
                (parent_item_id, work_item_id),
            )

    def mark_work_item_closed(self, work_item_id: int) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE work_items SET state = 'closed', updated_at = {_NOW_SQL} WHERE id = ?",
                (work_item_id,),
            )

    def transition_orchestration_state(
        self,
        work_item_id: int,
        *,
        from_state: OrchestrationState,
        to_state: OrchestrationState,
        claim_key: str | None = None,
    ) -> bool:
        """Compare-and-set the orchestration state; returns False when it was not ``from_state``.

        ``claim_key`` is stored on success so the same caller can recognize its own claim later.
        """
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE work_items
                SET orchestration_state = ?, claim_key = ?, updated_at = {_NOW_SQL}
                WHERE id = ? AND orchestration_state = ?
                """,
                (to_state, claim_key, work_item_id, from_state),
            )
            return cur.rowcount == 1

    def set_orchestration_state(self, work_item_id: int, state: OrchestrationState) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE work_items
                SET orchestration_state = ?, updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (state, work_item_id),
            )

    def increment_followup_count(self, work_item_id: int) -> int:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE work_items
                SET followup_count = followup_count + 1, updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (work_item_id,),
            )
            row = conn.execute(
                "SELECT followup_count FROM work_items WHERE id = ?",
                (work_item_id,),
            ).fetchone()
        if row is None:
            raise RuntimeError(f"Unknown work item id {work_item_id}")
        return _as_int(row[0], column="followup_count")

    def record_followup_dispatch(self, work_item_id: int, dispatch_key: str) -> tuple[bool, int]:
        """Count one follow-up against its item, at most once per ``dispatch_key``.

        Returns ``(counted, followup_count)``.
        """
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT followup_count FROM work_items WHERE id = ?",
                (work_item_id,),
            ).fetchone()
            if row is None:
                raise RuntimeError(f"Unknown work item id {work_item_id}")
            cur = conn.execute(
                """
                INSERT INTO followup_dispatches(dispatch_key, work_item_id)
                VALUES(?, ?)
                ON CONFLICT(dispatch_key) DO NOTHING
                """,
                (dispatch_key, work_item_id),
            )
            counted = cur.rowcount == 1
            if counted:
                conn.execute(
                    f"""
                    UPDATE work_items
                    SET followup_count = followup_count + 1, updated_at = {_NOW_SQL}
                    WHERE id = ?
                    """,
                    (work_item_id,),
                )
                row = conn.execute(
                    "SELECT followup_count FROM work_items WHERE id = ?",
                    (work_item_id,),
                ).fetchone()
        assert row is not None
        return counted, _as_int(row[0], column="followup_count")

    # Runs

    def create_run(
        self,
        *,
        project_id: str,
        workflow_id: str,
        execution_id: str,
        agent_type: str,
        mode: RunMode = "build",
        work_item_id: int | None = None,
        source_pr_number: int | None = None,
        custom_prompt: str | None = None,
    ) -> RunRecord:
        """Create the run for one workflow execution, or return the one already created."""
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO runs(
                    project_id, workflow_id, execution_id, work_item_id, source_pr_number,
                    agent_type, mode, custom_prompt
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(execution_id) DO NOTHING
                """,
                (
                    project_id,
                    workflow_id,
                    execution_id,
                    work_item_id,
                    source_pr_number,
                    agent_type,
                    mode,
                    custom_prompt,
                ),
            )
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE execution_id = ?",
                (execution_id,),
            ).fetchone()
        assert row is not None
        return _parse_run_row(row)

    def get_run(self, run_id: int) -> RunRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs WHERE id = ?", (run_id,)
            ).fetchone()
        if row is None:
            return None
        return _parse_run_row(row)

    def require_run(self, run_id: int) -> RunRecord:
        run = self.get_run(run_id)
        if run is None:
            raise RuntimeError(f"Unknown run id {run_id}")
        return run

    def list_runs(
        self,
        *,
        project_id: str | None = None,
        active_only: bool = False,
        limit: int = 50,
    ) -> list[RunRecord]:
        clauses: list[str] = []
        params: list[object] = []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if active_only:
            clauses.append(f"status IN ({_ACTIVE_STATUS_SQL})")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM runs {where} ORDER BY id DESC LIMIT ?",
                tuple(params),
            ).fetchall()
        return [_parse_run_row(row) for row in rows]

    def count_runs(self, *, project_id: str | None = None) -> int:
        with self._lock, self._connect() as conn:
            if project_id is None:
                row = conn.execute("SELECT COUNT(*) FROM runs").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM runs WHERE project_id = ?", (project_id,)
                ).fetchone()
        return _as_int(row[0], column="count")

    def advance_run_status(self, run_id: int, status: RunStatus) -> bool:
        """Move an active run forward; never moves backwards or out of a terminal status."""
        if status not in ACTIVE_RUN_STATUSES:
            raise ValueError(f"advance_run_status only accepts active statuses, got {status!r}")
        target_index = ACTIVE_RUN_STATUSES.index(status)
        earlier = list(ACTIVE_RUN_STATUSES[:target_index])
        if not earlier:
            return False
        placeholders = ", ".join("?" for _ in earlier)
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE runs
                SET status = ?,
                    started_at = COALESCE(started_at, {_NOW_SQL}),
                    updated_at = {_NOW_SQL}
                WHERE id = ? AND status IN ({placeholders})
                """,
                (status, run_id, *earlier),
            )
            return cur.rowcount == 1

    def set_run_environment(self, run_id: int, *, environment_ref: str, checkout_path: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE runs
                SET environment_ref = ?, checkout_path = ?, updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (environment_ref, checkout_path, run_id),
            )

    def set_run_git(
        self,
        run_id: int,
        *,
        branch_name: str | None = None,
        base_commit: str | None = None,
        result_commit: str | None = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE runs
                SET branch_name = COALESCE(?, branch_name),
                    base_commit = COALESCE(?, base_commit),
                    result_commit = COALESCE(?, result_commit),
                    updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (branch_name, base_commit, result_commit, run_id),
            )

    def set_run_prompt(self, run_id: int, prompt: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE runs SET custom_prompt = ?, updated_at = {_NOW_SQL} WHERE id = ?",
                (prompt, run_id),
            )

    def set_run_pull_request(self, run_id: int, *, pr_number: int, pr_url: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE runs
                SET pr_number = ?, pr_url = ?, updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (pr_number, pr_url, run_id),
            )

    def record_run_metrics(
        self,
        run_id: int,
        *,
        iterations: int | None = None,
        duration_seconds: float | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        cost_usd: float | None = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE runs
                SET iterations = COALESCE(?, iterations),
                    duration_seconds = COALESCE(?, duration_seconds),
                    input_tokens = COALESCE(?, input_tokens),
                    output_tokens = COALESCE(?, output_tokens),
                    cost_usd = COALESCE(?, cost_usd),
                    updated_at = {_NOW_SQL}
                WHERE id = ?
                """,
                (iterations, duration_seconds, input_tokens, output_tokens, cost_usd, run_id),
            )

    def complete_run(
        self,
        run_id: int,
        *,
        reason: str,
        pr_number: int | None = None,
        pr_url: str | None = None,
    ) -> bool:
        return self._finish_run(
            run_id,
            status="completed",
            error=None,
            reason=reason,
            pr_number=pr_number,
            pr_url=pr_url,
        )

    def fail_run(self, run_id: int, error: str) -> bool:
        return self._finish_run(run_id, status="failed", error=error, reason=None)

    def cancel_run(self, run_id: int, *, reason: str = "cancelled") -> bool:
        return self._finish_run(run_id, status="cancelled", error=None, reason=reason)

    def timeout_run(self, run_id: int, error: str) -> bool:
        return self._finish_run(run_id, status="timeout", error=error, reason=None)

    def _finish_run(
        self,
        run_id: int,
        *,
        status: RunStatus,
        error: str | None,
        reason: str | None,
        pr_number: int | None = None,
        pr_url: str | None = None,
    ) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE runs
                SET status = ?,
                    error = ?,
                    completion_reason = ?,
                    pr_number = COALESCE(?, pr_number),
                    pr_url = COALESCE(?, pr_url),
                    completed_at = {_NOW_SQL},
                    updated_at = {_NOW_SQL}
                WHERE id = ? AND status IN ({_ACTIVE_STATUS_SQL})
                """,
                (status, error, reason, pr_number, pr_url, run_id),
            )
            return cur.rowcount == 1

    def has_active_run_for_pr(self, project_id: str, pr_number: int) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT 1
                FROM runs
                WHERE project_id = ? AND source_pr_number = ? AND status IN ({_ACTIVE_STATUS_SQL})
                LIMIT 1
                """,
                (project_id, pr_number),
            ).fetchone()
        return row is not None

    def has_active_run_for_work_item(self, work_item_id: int) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT 1
                FROM runs
                WHERE work_item_id = ? AND source_pr_number IS NULL
                  AND status IN ({_ACTIVE_STATUS_SQL})
                LIMIT 1
                """,
                (work_item_id,),
            ).fetchone()
        return row is not None

    def last_completed_run_for_pr(self, project_id: str, pr_number: int) -> RunRecord | None:
        """Latest completed run that either opened or followed up on ``pr_number``."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_RUN_COLUMNS}
                FROM runs
                WHERE project_id = ?
                  AND status = 'completed'
                  AND (source_pr_number = ? OR pr_number = ?)
                ORDER BY completed_at DESC, id DESC
                LIMIT 1
                """,
                (project_id, pr_number, pr_number),
            ).fetchone()
        if row is None:
            return None
        return _parse_run_row(row)

    def list_stale_active_runs(self, *, older_than_hours: int) -> list[RunRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_RUN_COLUMNS}
                FROM runs
                WHERE status IN ({_ACTIVE_STATUS_SQL})
                  AND updated_at < strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
                ORDER BY id ASC
                """,
                (f"-{older_than_hours} hours",),
            ).fetchall()
        return [_parse_run_row(row) for row in rows]

    def ensure_run_token(self, run_id: int) -> str:
        """Return the run's token, minting it on first use."""
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE runs SET auth_token = ? WHERE id = ? AND auth_token IS NULL",
                (mint_run_token(), run_id),
            )
            row = conn.execute("SELECT auth_token FROM runs WHERE id = ?", (run_id,)).fetchone()
        if row is None:
            raise RuntimeError(f"Unknown run id {run_id}")
        return _as_str(row[0], column="auth_token")

    def find_active_run_by_token(self, token: str) -> RunRecord | None:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, auth_token
                FROM runs
                WHERE auth_token IS NOT NULL AND status IN ({_ACTIVE_STATUS_SQL})
                """
            ).fetchall()
        matched_id: int | None = None
        for run_id, stored_token in rows:
            # Compare against every candidate so timing does not depend on position.
            if tokens_match(_as_str(stored_token, column="auth_token"), token):
                matched_id = _as_int(run_id, column="id")
        if matched_id is None:
            return None
        return self.get_run(matched_id)

    # Worktrees

    def claim_worktree(
        self,
        *,
        project_id: str,
        run_id: int,
        path: str,
        branch_name: str,
        base_commit: str | None,
    ) -> WorktreeRecord:
        with self._lock, self._connect() as conn:
            existing = conn.execute(
                f"""
                SELECT {_WORKTREE_COLUMNS}
                FROM worktrees
                WHERE run_id = ? AND status = 'active'
                ORDER BY id DESC
                LIMIT 1
                """,
                (run_id,),
            ).fetchone()
            if existing is not None:
                return _parse_worktree_row(existing)
            try:
                cur = conn.execute(
                    """
                    INSERT INTO worktrees(project_id, run_id, path, branch_name, base_commit)
                    VALUES(?, ?, ?, ?, ?)
                    """,
                    (project_id, run_id, path, branch_name, base_commit),
                )
            except sqlite3.IntegrityError as exc:
                raise WorktreeConflictError(
                    f"Branch {branch_name!r} already has an active worktree in project "
                    f"{project_id!r}"
                ) from exc
            row = conn.execute(
                f"SELECT {_WORKTREE_COLUMNS} FROM worktrees WHERE id = ?",
                (cur.lastrowid,),
            ).fetchone()
        assert row is not None
        return _parse_worktree_row(row)

    def get_worktree_for_run(self, run_id: int) -> WorktreeRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_WORKTREE_COLUMNS}
                FROM worktrees
                WHERE run_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (run_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_worktree_row(row)

    def list_worktrees(self, *, status: WorktreeStatus | None = None) -> list[WorktreeRecord]:
        with self._lock, self._connect() as conn:
            if status is None:
                rows = conn.execute(
                    f"SELECT {_WORKTREE_COLUMNS} FROM worktrees ORDER BY id ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_WORKTREE_COLUMNS} FROM worktrees WHERE status = ? ORDER BY id ASC",
                    (status,),
                ).fetchall()
        return [_parse_worktree_row(row) for row in rows]

    def mark_worktree_pushed(self, run_id: int) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE worktrees
                SET pushed = 1, updated_at = {_NOW_SQL}
                WHERE run_id = ? AND status = 'active'
                """,
                (run_id,),
            )

    def mark_worktree_cleaned(self, worktree_id: int) -> None:
        self._set_worktree_status(worktree_id, "cleaned")

    def mark_worktree_cleanup_failed(self, worktree_id: int) -> None:
        self._set_worktree_status(worktree_id, "cleanup_failed")

    def _set_worktree_status(self, worktree_id: int, status: WorktreeStatus) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE worktrees SET status = ?, updated_at = {_NOW_SQL} WHERE id = ?",
                (status, worktree_id),
            )

    def list_orphaned_worktrees(self, *, stale_hours: int) -> list[WorktreeRecord]:
        """Active worktrees whose run is terminal or gone, or that outlived ``stale_hours``."""
        columns = ", ".join(f"w.{name.strip()}" for name in _WORKTREE_COLUMNS.split(","))
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {columns}
                FROM worktrees AS w
                LEFT JOIN runs AS r ON r.id = w.run_id
                WHERE w.status = 'active'
                  AND (
                    r.id IS NULL
                    OR r.status IN ({_TERMINAL_STATUS_SQL})
                    OR w.created_at < strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
                  )
                ORDER BY w.id ASC
                """,
                (f"-{stale_hours} hours",),
            ).fetchall()
        return [_parse_worktree_row(row) for row in rows]


def _parse_project_row(row: tuple[object, ...]) -> ProjectConfig:
    project_id, settings_json, _poll_interval, active = row
    if not isinstance(project_id, str):
        raise RuntimeError("Invalid project_id value stored in projects")
    if not isinstance(settings_json, str):
        raise RuntimeError("Invalid settings_json value stored in projects")
    raw = json.loads(settings_json)
    if not isinstance(raw, dict):
        raise RuntimeError("Invalid settings_json value stored in projects")
    settings = cast(dict[str, object], raw)
    settings["active"] = bool(active)
    return project_config_from_dict(project_id, settings)


def _parse_work_item_row(row: tuple[object, ...]) -> WorkItem:
    (
        item_id,
        project_id,
        external_id,
        number,
        title,
        body,
        state,
        labels_json,
        orchestration_state,
        creator_login,
        followup_count,
        is_pull_request,
        html_url,
        parent_item_id,
        claim_key,
    ) = row
    labels_raw = json.loads(_as_str(labels_json, column="labels_json"))
    if not isinstance(labels_raw, list) or not all(isinstance(v, str) for v in labels_raw):
        raise RuntimeError("Invalid labels_json value stored in work_items")
    return WorkItem(
        id=_as_int(item_id, column="id"),
        project_id=_as_str(project_id, column="project_id"),
        external_id=_as_optional_int(external_id, column="external_id"),
        number=_as_int(number, column="number"),
        title=_as_str(title, column="title"),
        body=_as_str(body, column="body"),
        state=_as_str(state, column="state"),
        labels=tuple(cast(list[str], labels_raw)),
        orchestration_state=_parse_orchestration_state(orchestration_state),
        creator_login=_as_str(creator_login, column="creator_login"),
        followup_count=_as_int(followup_count, column="followup_count"),
        is_pull_request=bool(is_pull_request),
        html_url=_as_str(html_url, column="html_url"),
        parent_item_id=_as_optional_int(parent_item_id, column="parent_item_id"),
        claim_key=str(claim_key) if claim_key is not None else None,
    )


def _parse_run_row(row: tuple[object, ...]) -> RunRecord:
    (
        run_id,
        project_id,
        workflow_id,
        work_item_id,
        source_pr_number,
        agent_type,
        mode,
        status,
        environment_ref,
        checkout_path,
        branch_name,
        base_commit,
        result_commit,
        pr_number,
        pr_url,
        custom_prompt,
        error,
        completion_reason,
        iterations,
        duration_seconds,
        input_tokens,
        output_tokens,
        cost_usd,
        started_at,
        completed_at,
        created_at,
        updated_at,
    ) = row
    return RunRecord(
        id=_as_int(run_id, column="id"),
        project_id=_as_str(project_id, column="project_id"),
        workflow_id=_as_str(workflow_id, column="workflow_id"),
        work_item_id=_as_optional_int(work_item_id, column="work_item_id"),
        source_pr_number=_as_optional_int(source_pr_number, column="source_pr_number"),
        agent_type=_as_str(agent_type, column="agent_type"),
        mode=_parse_run_mode(mode),
        status=_parse_run_status(status),
        environment_ref=_as_optional_str(environment_ref, column="environment_ref"),
        checkout_path=_as_optional_str(checkout_path, column="checkout_path"),
        branch_name=_as_optional_str(branch_name, column="branch_name"),
        base_commit=_as_optional_str(base_commit, column="base_commit"),
        result_commit=_as_optional_str(result_commit, column="result_commit"),
        pr_number=_as_optional_int(pr_number, column="pr_number"),
        pr_url=_as_optional_str(pr_url, column="pr_url"),
        custom_prompt=_as_optional_str(custom_prompt, column="custom_prompt"),
        error=_as_optional_str(error, column="error"),
        completion_reason=_as_optional_str(completion_reason, column="completion_reason"),
        iterations=_as_optional_int(iterations, column="iterations"),
        duration_seconds=_as_optional_float(duration_seconds, column="duration_seconds"),
        input_tokens=_as_optional_int(input_tokens, column="input_tokens"),
        output_tokens=_as_optional_int(output_tokens, column="output_tokens"),
        cost_usd=_as_optional_float(cost_usd, column="cost_usd"),
        started_at=_as_optional_str(started_at, column="started_at"),
        completed_at=_as_optional_str(completed_at, column="completed_at"),
        created_at=_as_str(created_at, column="created_at"),
        updated_at=_as_str(updated_at, column="updated_at"),
    )


def _parse_worktree_row(row: tuple[object, ...]) -> WorktreeRecord:
    (
        worktree_id,
        project_id,
        run_id,
        path,
        branch_name,
        base_commit,
        status,
        pushed,
        created_at,
        updated_at,
    ) = row
    if status not in {"active", "cleaned", "cleanup_failed"}:
        raise RuntimeError(f"Unknown status value stored in worktrees: {status}")
    return WorktreeRecord(
        id=_as_int(worktree_id, column="id"),
        project_id=_as_str(project_id, column="project_id"),
        run_id=_as_optional_int(run_id, column="run_id"),
        path=_as_str(path, column="path"),
        branch_name=_as_str(branch_name, column="branch_name"),
        base_commit=_as_optional_str(base_commit, column="base_commit"),
        status=cast(WorktreeStatus, status),
        pushed=bool(pushed),
        created_at=_as_str(created_at, column="created_at"),
        updated_at=_as_str(updated_at, column="updated_at"),
    )


def _parse_orchestration_state(value: object) -> OrchestrationState:
    if not isinstance(value, str) or value not in _ORCHESTRATION_STATES:
        raise RuntimeError(f"Unknown orchestration_state value stored in work_items: {value}")
    return cast(OrchestrationState, value)


def _parse_run_status(value: object) -> RunStatus:
    if value not in ACTIVE_RUN_STATUSES and value not in TERMINAL_RUN_STATUSES:
        raise RuntimeError(f"Unknown status value stored in runs: {value}")
    return cast(RunStatus, value)


def _parse_run_mode(value: object) -> RunMode:
    if value not in {"build", "plan"}:
        raise RuntimeError(f"Unknown mode value stored in runs: {value}")
    return cast(RunMode, value)


def _as_str(value: object, *, column: str) -> str:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {column} value stored in state DB")
    return value


def _as_optional_str(value: object, *, column: str) -> str | None:
    if value is None:
        return None
    return _as_str(value, column=column)


def _as_int(value: object, *, column: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuntimeError(f"Invalid {column} value stored in state DB")
    return value


def _as_optional_int(value: object, *, column: str) -> int | None:
    if value is None:
        return None
    return _as_int(value, column=column)


def _as_optional_float(value: object, *, column: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise RuntimeError(f"Invalid {column} value stored in state DB")
    return float(value)
