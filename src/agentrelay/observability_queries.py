from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from math import sqrt
from pathlib import Path
import sqlite3


_ACTIVE_STATUSES_SQL = "'pending', 'provisioning', 'running', 'pushing', 'creating_pr'"
_TERMINAL_STATUSES_SQL = "'completed', 'failed', 'cancelled', 'timeout'"
_ELAPSED_SQL = (
    "(julianday('now') - julianday(COALESCE(r.started_at, r.created_at))) * 86400.0"
)


@dataclass(frozen=True)
class OverviewStats:
    active_runs: int
    followup_runs: int
    completed: int
    failures: int
    pull_requests_opened: int
    mean_runtime_seconds: float
    stddev_runtime_seconds: float


@dataclass(frozen=True)
class ActiveRunRow:
    run_id: int
    project_id: str
    workflow_id: str
    status: str
    agent_type: str
    mode: str
    issue_number: int | None
    source_pr_number: int | None
    branch: str | None
    started_at: str
    elapsed_seconds: float


@dataclass(frozen=True)
class RunHistoryRow:
    run_id: int
    project_id: str
    workflow_id: str
    status: str
    agent_type: str
    issue_number: int | None
    source_pr_number: int | None
    pr_number: int | None
    pr_url: str | None
    completion_reason: str | None
    error: str | None
    created_at: str
    completed_at: str | None
    duration_seconds: float | None


@dataclass(frozen=True)
class WorkflowExecutionRow:
    workflow_id: str
    workflow_type: str
    status: str
    continuation_count: int
    cancel_requested: bool
    step_count: int
    error: str | None
    updated_at: str


@dataclass(frozen=True)
class RuntimeMetric:
    project_id: str
    terminal_count: int
    failed_count: int
    failure_rate: float
    mean_runtime_seconds: float
    stddev_runtime_seconds: float


@dataclass(frozen=True)
class MetricsStats:
    overall: RuntimeMetric
    per_project: tuple[RuntimeMetric, ...]


def load_overview(
    db_path: Path, project_filter: str | None = None, window: str = "24h"
) -> OverviewStats:
    with _connect(db_path) as conn:
        project_clause, project_params = _project_filter_sql(project_filter)
        cutoff_modifier = _window_modifier(window)
        active_runs = _fetch_int(
            conn,
            f"""
            SELECT COUNT(*)
            FROM runs
            WHERE status IN ({_ACTIVE_STATUSES_SQL})
              {project_clause}
            """,
            project_params,
        )
        followup_runs = _fetch_int(
            conn,
            f"""
            SELECT COUNT(*)
            FROM runs
            WHERE status IN ({_ACTIVE_STATUSES_SQL})
              AND source_pr_number IS NOT NULL
              {project_clause}
            """,
            project_params,
        )
        completed, failures, pull_requests_opened = _fetch_window_counts(
            conn, cutoff_modifier, project_clause, project_params
        )
        metrics = _load_metrics(conn=conn, project_filter=project_filter, window=window)
        return OverviewStats(
            active_runs=active_runs,
            followup_runs=followup_runs,
            completed=completed,
            failures=failures,
            pull_requests_opened=pull_requests_opened,
            mean_runtime_seconds=metrics.overall.mean_runtime_seconds,
            stddev_runtime_seconds=metrics.overall.stddev_runtime_seconds,
        )


def load_active_runs(
    db_path: Path, project_filter: str | None = None, *, limit: int = 100
) -> tuple[ActiveRunRow, ...]:
    with _connect(db_path) as conn:
        project_clause, project_params = _project_filter_sql(project_filter, prefix="r")
        rows = conn.execute(
            f"""
            SELECT
                r.id,
                r.project_id,
                r.workflow_id,
                r.status,
                r.agent_type,
                r.mode,
                w.number,
                r.source_pr_number,
                r.branch_name,
                COALESCE(r.started_at, r.created_at),
                {_ELAPSED_SQL}
            FROM runs AS r
            LEFT JOIN work_items AS w ON w.id = r.work_item_id
            WHERE r.status IN ({_ACTIVE_STATUSES_SQL})
              {project_clause}
            ORDER BY COALESCE(r.started_at, r.created_at) ASC, r.id ASC
            LIMIT ?
            """,
            (*project_params, limit),
        ).fetchall()
    return tuple(
        ActiveRunRow(
            run_id=_as_int(row[0], "id"),
            project_id=_as_str(row[1], "project_id"),
            workflow_id=_as_str(row[2], "workflow_id"),
            status=_as_str(row[3], "status"),
            agent_type=_as_str(row[4], "agent_type"),
            mode=_as_str(row[5], "mode"),
            issue_number=_as_optional_int(row[6], "number"),
            source_pr_number=_as_optional_int(row[7], "source_pr_number"),
            branch=_as_optional_str(row[8], "branch_name"),
            started_at=_as_str(row[9], "started_at"),
            elapsed_seconds=max(0.0, _as_float(row[10], "elapsed_seconds")),
        )
        for row in rows
    )


def load_run_history(
    db_path: Path,
    project_filter: str | None = None,
    *,
    status: str | None = None,
    limit: int = 50,
) -> tuple[RunHistoryRow, ...]:
    with _connect(db_path) as conn:
        project_clause, project_params = _project_filter_sql(project_filter, prefix="r")
        status_clause = ""
        status_params: tuple[str, ...] = ()
        if status is not None and status.strip():
            status_clause = "AND r.status = ?"
            status_params = (status.strip(),)
        rows = conn.execute(
            f"""
            SELECT
                r.id,
                r.project_id,
                r.workflow_id,
                r.status,
                r.agent_type,
                w.number,
                r.source_pr_number,
                r.pr_number,
                r.pr_url,
                r.completion_reason,
                r.error,
                r.created_at,
                r.completed_at,
                r.duration_seconds
            FROM runs AS r
            LEFT JOIN work_items AS w ON w.id = r.work_item_id
            WHERE r.status IN ({_TERMINAL_STATUSES_SQL})
              {project_clause}
              {status_clause}
            ORDER BY r.completed_at DESC, r.id DESC
            LIMIT ?
            """,
            (*project_params, *status_params, limit),
        ).fetchall()
    return tuple(
        RunHistoryRow(
            run_id=_as_int(row[0], "id"),
            project_id=_as_str(row[1], "project_id"),
            workflow_id=_as_str(row[2], "workflow_id"),
            status=_as_str(row[3], "status"),
            agent_type=_as_str(row[4], "agent_type"),
            issue_number=_as_optional_int(row[5], "number"),
            source_pr_number=_as_optional_int(row[6], "source_pr_number"),
            pr_number=_as_optional_int(row[7], "pr_number"),
            pr_url=_as_optional_str(row[8], "pr_url"),
            completion_reason=_as_optional_str(row[9], "completion_reason"),
            error=_as_optional_str(row[10], "error"),
            created_at=_as_str(row[11], "created_at"),
            completed_at=_as_optional_str(row[12], "completed_at"),
            duration_seconds=_as_optional_float(row[13], "duration_seconds"),
        )
        for row in rows
    )


def load_workflow_executions(
    journal_path: Path, *, status: str | None = None, limit: int = 50
) -> tuple[WorkflowExecutionRow, ...]:
    with _connect(journal_path) as conn:
        status_clause = ""
        params: tuple[object, ...] = ()
        if status is not None and status.strip():
            status_clause = "WHERE e.status = ?"
            params = (status.strip(),)
        rows = conn.execute(
            f"""
            SELECT
                e.workflow_id,
                e.workflow_type,
                e.status,
                e.continuation_count,
                e.cancel_requested,
                (
                    SELECT COUNT(*)
                    FROM workflow_steps AS s
                    WHERE s.workflow_id = e.workflow_id AND s.execution_id = e.execution_id
                ),
                e.error,
                e.updated_at
            FROM workflow_executions AS e
            {status_clause}
            ORDER BY e.updated_at DESC, e.workflow_id ASC
            LIMIT ?
            """,
            (*params, limit),
        ).fetchall()
    return tuple(
        WorkflowExecutionRow(
            workflow_id=_as_str(row[0], "workflow_id"),
            workflow_type=_as_str(row[1], "workflow_type"),
            status=_as_str(row[2], "status"),
            continuation_count=_as_int(row[3], "continuation_count"),
            cancel_requested=bool(_as_int(row[4], "cancel_requested")),
            step_count=_as_int(row[5], "step_count"),
            error=_as_optional_str(row[6], "error"),
            updated_at=_as_str(row[7], "updated_at"),
        )
        for row in rows
    )


def load_metrics(
    db_path: Path, project_filter: str | None = None, window: str = "24h"
) -> MetricsStats:
    with _connect(db_path) as conn:
        return _load_metrics(conn=conn, project_filter=project_filter, window=window)


def _fetch_window_counts(
    conn: sqlite3.Connection,
    cutoff_modifier: str,
    project_clause: str,
    project_params: tuple[str, ...],
) -> tuple[int, int, int]:
    row = conn.execute(
        f"""
        SELECT
            SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END),
            SUM(CASE WHEN status IN ('failed', 'timeout') THEN 1 ELSE 0 END),
            SUM(CASE WHEN completion_reason = 'pr_created' THEN 1 ELSE 0 END)
        FROM runs
        WHERE completed_at IS NOT NULL
          AND completed_at >= strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
          {project_clause}
        """,
        (cutoff_modifier, *project_params),
    ).fetchone()
    if row is None:
        return 0, 0, 0
    return _as_int(row[0], "completed"), _as_int(row[1], "failed"), _as_int(row[2], "opened")


def _load_metrics(
    *, conn: sqlite3.Connection, project_filter: str | None, window: str
) -> MetricsStats:
    project_clause, project_params = _project_filter_sql(project_filter)
    cutoff_modifier = _window_modifier(window)
    runtime_sql = (
        "(julianday(completed_at) - julianday(COALESCE(started_at, created_at))) * 86400.0"
    )
    base_where = f"""
        WHERE status IN ({_TERMINAL_STATUSES_SQL})
          AND completed_at IS NOT NULL
          AND completed_at >= strftime('%Y-%m-%dT%H:%M:%fZ', 'now', ?)
          {project_clause}
    """
    overall_row = conn.execute(
        f"""
        SELECT
            COUNT(*),
            SUM(CASE WHEN status IN ('failed', 'timeout') THEN 1 ELSE 0 END),
            AVG({runtime_sql}),
            AVG(({runtime_sql}) * ({runtime_sql}))
        FROM runs
        {base_where}
        """,
        (cutoff_modifier, *project_params),
    ).fetchone()
    assert overall_row is not None
    overall = _build_metric(
        project_id="<all>",
        terminal_count=_as_int(overall_row[0], "terminal_count"),
        failed_count=_as_int(overall_row[1], "failed_count"),
        mean_runtime_seconds=_as_optional_float(overall_row[2], "mean_runtime_seconds") or 0.0,
        mean_runtime_sq=_as_optional_float(overall_row[3], "mean_runtime_sq") or 0.0,
    )
    grouped_rows = conn.execute(
        f"""
        SELECT
            project_id,
            COUNT(*),
            SUM(CASE WHEN status IN ('failed', 'timeout') THEN 1 ELSE 0 END),
            AVG({runtime_sql}),
            AVG(({runtime_sql}) * ({runtime_sql}))
        FROM runs
        {base_where}
        GROUP BY project_id
        ORDER BY project_id ASC
        """,
        (cutoff_modifier, *project_params),
    ).fetchall()
    per_project = tuple(
        _build_metric(
            project_id=_as_str(row[0], "project_id"),
            terminal_count=_as_int(row[1], "terminal_count"),
            failed_count=_as_int(row[2], "failed_count"),
            mean_runtime_seconds=_as_optional_float(row[3], "mean_runtime_seconds") or 0.0,
            mean_runtime_sq=_as_optional_float(row[4], "mean_runtime_sq") or 0.0,
        )
        for row in grouped_rows
    )
    return MetricsStats(overall=overall, per_project=per_project)


def _build_metric(
    *,
    project_id: str,
    terminal_count: int,
    failed_count: int,
    mean_runtime_seconds: float,
    mean_runtime_sq: float,
) -> RuntimeMetric:
    if terminal_count < 1:
        return RuntimeMetric(
            project_id=project_id,
            terminal_count=0,
            failed_count=0,
            failure_rate=0.0,
            mean_runtime_seconds=0.0,
            stddev_runtime_seconds=0.0,
        )
    variance = max(0.0, mean_runtime_sq - (mean_runtime_seconds * mean_runtime_seconds))
    stddev = sqrt(variance) if terminal_count >= 2 else 0.0
    return RuntimeMetric(
        project_id=project_id,
        terminal_count=terminal_count,
        failed_count=failed_count,
        failure_rate=failed_count / terminal_count,
        mean_runtime_seconds=mean_runtime_seconds,
        stddev_runtime_seconds=stddev,
    )


def _window_modifier(window: str) -> str:
    normalized = window.strip().lower()
    if normalized == "1h":
        return "-1 hours"
    if normalized == "24h":
        return "-24 hours"
    if normalized == "7d":
        return "-7 days"
    if normalized == "30d":
        return "-30 days"
    raise ValueError(f"Unsupported window: {window!r}")


def _project_filter_sql(
    project_filter: str | None, *, prefix: str | None = None
) -> tuple[str, tuple[str, ...]]:
    if project_filter is None:
        return "", ()
    normalized = project_filter.strip()
    if not normalized:
        return "", ()
    column = "project_id" if prefix is None else f"{prefix}.project_id"
    return f"AND {column} = ?", (normalized,)


@contextmanager
def _connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.execute("PRAGMA query_only=ON;")
    try:
        yield conn
    finally:
        conn.close()


def _fetch_int(conn: sqlite3.Connection, sql: str, params: tuple[object, ...]) -> int:
    row = conn.execute(sql, params).fetchone()
    if row is None:
        raise RuntimeError("Expected count query to return a row")
    return _as_int(row[0], "count")


def _as_int(value: object, field: str) -> int:
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    raise RuntimeError(f"Invalid {field} value in observability query result")


def _as_str(value: object, field: str) -> str:
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {field} value in observability query result")
    return value


def _as_optional_str(value: object, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {field} value in observability query result")
    return value


def _as_optional_int(value: object, field: str) -> int | None:
    if value is None:
        return None
    if not isinstance(value, int):
        raise RuntimeError(f"Invalid {field} value in observability query result")
    return value


def _as_float(value: object, field: str) -> float:
    if isinstance(value, int | float):
        return float(value)
    raise RuntimeError(f"Invalid {field} value in observability query result")


def _as_optional_float(value: object, field: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, int | float):
        return float(value)
    raise RuntimeError(f"Invalid {field} value in observability query result")
