"""Journaled, replay-safe execution of workflow functions.

A workflow is a plain function ``fn(ctx, input) -> dict``. Every side effect it performs goes
through :class:`WorkflowContext` (steps, timers, clock reads, child starts), and each of those is
recorded in the SQLite journal before the workflow advances. After a crash the engine re-runs the
function from the top; recorded results are returned without re-invoking the step, so execution
continues exactly where it stopped.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures
from contextlib import contextmanager
from dataclasses import dataclass
import json
import logging
from pathlib import Path
import secrets
import sqlite3
import threading
import time
from typing import Final, Literal, cast

from agentrelay.observability import log_event, logging_project_context


LOGGER = logging.getLogger("agentrelay.durable")

ExecutionStatus = Literal["running", "completed", "failed", "cancelled"]
StepStatus = Literal["started", "completed", "failed"]
StepFn = Callable[[dict[str, object], "StepInvocation"], Mapping[str, object] | None]
WorkflowFn = Callable[["WorkflowContext", dict[str, object]], Mapping[str, object] | None]

_NOW_MARKER: Final[str] = "__now__"
_TIMER_MARKER: Final[str] = "__timer__"
_CHILD_MARKER: Final[str] = "__child__"
_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"


class DurableExecutionError(RuntimeError):
    pass


class WorkflowAlreadyStartedError(DurableExecutionError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id!r} is already running")
        self.workflow_id = workflow_id


class WorkflowNotFoundError(DurableExecutionError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id!r} was not found")
        self.workflow_id = workflow_id


class EngineUnavailableError(DurableExecutionError):
    """The journal or executor could not be reached; not a business failure."""


class NonDeterministicWorkflowError(DurableExecutionError):
    pass


class WorkflowCancelledError(DurableExecutionError):
    pass


class StepTimeoutError(DurableExecutionError):
    def __init__(
        self, step_name: str, timeout_seconds: float, *, still_running: bool = False
    ) -> None:
        message = f"Step {step_name!r} timed out after {timeout_seconds:g}s"
        if still_running:
            message += " and is still running"
        super().__init__(message)
        self.step_name = step_name
        self.timeout_seconds = timeout_seconds
        self.still_running = still_running


class StepInterruptedError(DurableExecutionError):
    """A journaled step attempt never finished, and its retry policy allows no further attempt."""

    def __init__(self, step_name: str, attempts: int) -> None:
        super().__init__(
            f"Step {step_name!r} was interrupted after {attempts} attempt(s) and is not re-run"
        )
        self.step_name = step_name
        self.attempts = attempts


class NonRetryableStepError(RuntimeError):
    """Raised by a step to fail immediately regardless of its retry policy."""


class StepFailedError(DurableExecutionError):
    def __init__(self, step_name: str, cause_type: str, cause_message: str) -> None:
        super().__init__(f"{step_name} failed: {cause_type}: {cause_message}")
        self.step_name = step_name
        self.cause_type = cause_type
        self.cause_message = cause_message


class ContinueAsNew(Exception):
    """Raised by a workflow to restart itself with a fresh history and ``input``."""

    def __init__(self, input: Mapping[str, object]) -> None:
        super().__init__("continue as new")
        self.input = dict(input)


class _WorkerShutdown(BaseException):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    initial_interval_seconds: float = 1.0
    backoff_coefficient: float = 2.0
    max_interval_seconds: float = 60.0
    max_attempts: int = 3

    def delay_for_attempt(self, attempt: int) -> float:
        delay = self.initial_interval_seconds * (self.backoff_coefficient ** max(0, attempt - 1))
        return min(delay, self.max_interval_seconds)


DEFAULT_RETRY_POLICY: Final[RetryPolicy] = RetryPolicy()
NO_RETRY: Final[RetryPolicy] = RetryPolicy(max_attempts=1)


@dataclass(frozen=True)
class StepOptions:
    timeout_seconds: float = 120.0
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY


@dataclass(frozen=True)
class StepInvocation:
    workflow_id: str
    execution_id: str
    step_name: str
    seq: int
    attempt: int

    @property
    def idempotency_key(self) -> str:
        return _idempotency_key(self.workflow_id, self.execution_id, self.seq, self.step_name)


@dataclass(frozen=True)
class ExecutionRecord:
    workflow_id: str
    execution_id: str
    workflow_type: str
    input: dict[str, object]
    status: ExecutionStatus
    continuation_count: int
    cancel_requested: bool
    parent_workflow_id: str | None
    result: dict[str, object] | None
    error: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class StepRecord:
    seq: int
    step_name: str
    idempotency_key: str
    status: StepStatus
    result: dict[str, object] | None
    error_type: str | None
    error_message: str | None
    attempts: int


class WorkflowJournal:
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
        try:
            conn = sqlite3.connect(self._db_path, timeout=30)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error as exc:
            raise EngineUnavailableError(f"Workflow journal unavailable: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise EngineUnavailableError(f"Workflow journal unavailable: {exc}") from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_executions (
                    workflow_id TEXT PRIMARY KEY,
                    execution_id TEXT NOT NULL,
                    workflow_type TEXT NOT NULL,
                    input_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    continuation_count INTEGER NOT NULL DEFAULT 0,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    parent_workflow_id TEXT NULL,
                    result_json TEXT NULL,
                    error TEXT NULL,
                    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_steps (
                    workflow_id TEXT NOT NULL,
                    execution_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    step_name TEXT NOT NULL,
                    idempotency_key TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result_json TEXT NULL,
                    error_type TEXT NULL,
                    error_message TEXT NULL,
                    attempts INTEGER NOT NULL DEFAULT 1,
                    recorded_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (workflow_id, seq)
                )
                """
            )

    def begin_execution(
        self,
        *,
        workflow_id: str,
        workflow_type: str,
        input: dict[str, object],
        parent_workflow_id: str | None = None,
        reuse_terminal_id: bool = True,
    ) -> ExecutionRecord:
        """Record a new running execution; an id that is still running is rejected."""
        execution_id = secrets.token_hex(8)
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT status FROM workflow_executions WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
            if row is not None:
                if row[0] == "running" or not reuse_terminal_id:
                    raise WorkflowAlreadyStartedError(workflow_id)
                conn.execute("DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,))
                conn.execute(
                    "DELETE FROM workflow_executions WHERE workflow_id = ?", (workflow_id,)
                )
            conn.execute(
                """
                INSERT INTO workflow_executions(
                    workflow_id, execution_id, workflow_type, input_json, status,
                    parent_workflow_id
                )
                VALUES(?, ?, ?, ?, 'running', ?)
                """,
                (
                    workflow_id,
                    execution_id,
                    workflow_type,
                    json.dumps(input, sort_keys=True),
                    parent_workflow_id,
                ),
            )
        record = self.get_execution(workflow_id)
        assert record is not None
        return record

    def get_execution(self, workflow_id: str) -> ExecutionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        if row is None:
            return None
        return _parse_execution_row(row)

    def list_executions(
        self,
        *,
        status: ExecutionStatus | None = None,
        limit: int | None = None,
    ) -> list[ExecutionRecord]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY updated_at DESC, workflow_id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [_parse_execution_row(row) for row in rows]

    def load_steps(self, workflow_id: str, execution_id: str) -> dict[int, StepRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT seq, step_name, idempotency_key, status, result_json, error_type,
                       error_message, attempts
                FROM workflow_steps
                WHERE workflow_id = ? AND execution_id = ?
                ORDER BY seq ASC
                """,
                (workflow_id, execution_id),
            ).fetchall()
        return {record.seq: record for record in (_parse_step_row(row) for row in rows)}

    def record_step(self, workflow_id: str, execution_id: str, record: StepRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO workflow_steps(
                    workflow_id, execution_id, seq, step_name, idempotency_key, status,
                    result_json, error_type, error_message, attempts
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(workflow_id, seq) DO UPDATE SET
                    status = excluded.status,
                    result_json = excluded.result_json,
                    error_type = excluded.error_type,
                    error_message = excluded.error_message,
                    attempts = excluded.attempts,
                    recorded_at = {_NOW_SQL}
                WHERE workflow_steps.status = 'started'
                    AND workflow_steps.step_name = excluded.step_name
                """,
                (
                    workflow_id,
                    execution_id,
                    record.seq,
                    record.step_name,
                    record.idempotency_key,
                    record.status,
                    (
                        json.dumps(record.result, sort_keys=True)
                        if record.result is not None
                        else None
                    ),
                    record.error_type,
                    record.error_message,
                    record.attempts,
                ),
            )
            conn.execute(
                f"UPDATE workflow_executions SET updated_at = {_NOW_SQL} WHERE workflow_id = ?",
                (workflow_id,),
            )

    def step_count(self, workflow_id: str) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM workflow_steps WHERE workflow_id = ?",
                (workflow_id,),
            ).fetchone()
        return int(row[0])

    def continue_as_new(
        self, workflow_id: str, execution_id: str, new_input: dict[str, object]
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                f"""
                UPDATE workflow_executions
                SET input_json = ?,
                    continuation_count = continuation_count + 1,
                    updated_at = {_NOW_SQL}
                WHERE workflow_id = ? AND execution_id = ? AND status = 'running'
                """,
                (json.dumps(new_input, sort_keys=True), workflow_id, execution_id),
            )
            if cur.rowcount != 1:
                raise DurableExecutionError(
                    f"Cannot continue workflow {workflow_id!r}: execution is no longer running"
                )
            conn.execute("DELETE FROM workflow_steps WHERE workflow_id = ?", (workflow_id,))

    def finish_execution(
        self,
        workflow_id: str,
        execution_id: str,
        status: ExecutionStatus,
        *,
        result: dict[str, object] | None = None,
        error: str | None = None,
    ) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE workflow_executions
                SET status = ?, result_json = ?, error = ?, updated_at = {_NOW_SQL}
                WHERE workflow_id = ? AND execution_id = ? AND status = 'running'
                """,
                (
                    status,
                    json.dumps(result, sort_keys=True) if result is not None else None,
                    error,
                    workflow_id,
                    execution_id,
                ),
            )
            return cur.rowcount == 1

    def request_cancel(self, workflow_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE workflow_executions
                SET cancel_requested = 1, updated_at = {_NOW_SQL}
                WHERE workflow_id = ? AND status = 'running'
                """,
                (workflow_id,),
            )
            return cur.rowcount == 1

    def is_cancel_requested(self, workflow_id: str, execution_id: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT cancel_requested
                FROM workflow_executions
                WHERE workflow_id = ? AND execution_id = ?
                """,
                (workflow_id, execution_id),
            ).fetchone()
        return row is not None and bool(row[0])


class WorkflowContext:
    """Deterministic view of one execution handed to workflow code."""

    def __init__(
        self,
        *,
        engine: WorkflowEngine,
        record: ExecutionRecord,
        history: dict[int, StepRecord],
        cancel_event: threading.Event,
    ) -> None:
        self._engine = engine
        self._record = record
        self._history = history
        self._cancel_event = cancel_event
        self._seq = 0
        self._shielded = False

    @property
    def workflow_id(self) -> str:
        return self._record.workflow_id

    @property
    def execution_id(self) -> str:
        return self._record.execution_id

    @property
    def workflow_type(self) -> str:
        return self._record.workflow_type

    @property
    def continuation_count(self) -> int:
        return self._record.continuation_count

    @property
    def is_replaying(self) -> bool:
        recorded = self._history.get(self._seq + 1)
        return recorded is not None and recorded.status != "started"

    def execute_step(
        self,
        step_name: str,
        payload: Mapping[str, object] | None = None,
        *,
        options: StepOptions | None = None,
    ) -> dict[str, object]:
        seq = self._next_seq()
        recorded = self._history.get(seq)
        if recorded is not None and recorded.status != "started":
            return _replayed_result(recorded, step_name)
        if recorded is not None:
            _check_replayed_name(recorded, step_name)

        self._engine._ensure_running()
        if not self._shielded:
            self.check_cancelled()
        record, cause = self._engine._run_step(
            self,
            seq=seq,
            step_name=step_name,
            payload=dict(payload or {}),
            options=options or self._engine.default_step_options,
            interrupted=recorded,
        )
        self._history[seq] = record
        if record.status == "failed":
            raise StepFailedError(
                step_name, record.error_type or "Error", record.error_message or ""
            ) from cause
        return dict(record.result or {})

    def current_time(self) -> float:
        """Wall-clock seconds, recorded so replays observe the same value."""
        seq = self._next_seq()
        recorded = self._history.get(seq)
        if recorded is not None:
            result = _replayed_result(recorded, _NOW_MARKER)
            return float(cast(float, result["now"]))
        now = self._engine._clock()
        self._record_marker(seq, _NOW_MARKER, {"now": now})
        return now

    def sleep(self, seconds: float) -> None:
        """Durable timer; interrupted by cancellation, survives restarts."""
        seq = self._next_seq()
        recorded = self._history.get(seq)
        if recorded is not None:
            wake_at = float(cast(float, _replayed_result(recorded, _TIMER_MARKER)["wake_at"]))
        else:
            self._engine._ensure_running()
            if not self._shielded:
                self.check_cancelled()
            wake_at = self._engine._clock() + max(0.0, seconds)
            self._record_marker(seq, _TIMER_MARKER, {"wake_at": wake_at})
        self._wait_until(wake_at)

    def start_child(
        self,
        workflow_type: str,
        input: Mapping[str, object],
        *,
        workflow_id: str,
    ) -> bool:
        """Start an independent execution; returns False when ``workflow_id`` already exists."""
        seq = self._next_seq()
        recorded = self._history.get(seq)
        if recorded is not None:
            return bool(_replayed_result(recorded, _CHILD_MARKER).get("started"))

        self._engine._ensure_running()
        try:
            self._engine.start_workflow(
                workflow_type,
                input,
                workflow_id=workflow_id,
                parent_workflow_id=self.workflow_id,
                reuse_terminal_id=False,
            )
            started = True
        except WorkflowAlreadyStartedError:
            log_event(
                LOGGER,
                "child_workflow_duplicate",
                parent_workflow_id=self.workflow_id,
                workflow_id=workflow_id,
            )
            started = False
        self._record_marker(
            seq,
            _CHILD_MARKER,
            {"workflow_id": workflow_id, "workflow_type": workflow_type, "started": started},
        )
        return started

    def continue_as_new_suggested(self) -> bool:
        return self._seq >= self._engine.history_step_threshold

    @property
    def cancel_requested(self) -> bool:
        if self._cancel_event.is_set():
            return True
        if self._engine._journal.is_cancel_requested(self.workflow_id, self.execution_id):
            self._cancel_event.set()
            return True
        return False

    def check_cancelled(self) -> None:
        if self.cancel_requested:
            raise WorkflowCancelledError(f"Workflow {self.workflow_id!r} was cancelled")

    @contextmanager
    def non_cancellable(self) -> Iterator[None]:
        """Run compensation steps even though a cancel was requested."""
        previous = self._shielded
        self._shielded = True
        try:
            yield
        finally:
            self._shielded = previous

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _record_marker(self, seq: int, name: str, result: dict[str, object]) -> None:
        record = StepRecord(
            seq=seq,
            step_name=name,
            idempotency_key=_idempotency_key(self.workflow_id, self.execution_id, seq, name),
            status="completed",
            result=result,
            error_type=None,
            error_message=None,
            attempts=1,
        )
        self._engine._journal.record_step(self.workflow_id, self.execution_id, record)
        self._history[seq] = record

    def _wait_until(self, wake_at: float) -> None:
        poll = self._engine.cancel_poll_interval_seconds
        while True:
            self._engine._ensure_running()
            if not self._shielded:
                self.check_cancelled()
            remaining = wake_at - self._engine._clock()
            if remaining <= 0:
                return
            self._cancel_event.wait(min(remaining, poll))


class WorkflowEngine:
    def __init__(
        self,
        journal: WorkflowJournal,
        *,
        max_concurrent_workflows: int = 8,
        history_step_threshold: int = 2000,
        default_step_options: StepOptions = StepOptions(),
        sleeper: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        cancel_poll_interval_seconds: float = 1.0,
        execute_locally: bool = True,
    ) -> None:
        if max_concurrent_workflows < 1:
            raise ValueError("max_concurrent_workflows must be >= 1")
        self._journal = journal
        self.history_step_threshold = history_step_threshold
        self.default_step_options = default_step_options
        self.cancel_poll_interval_seconds = cancel_poll_interval_seconds
        self._sleeper = sleeper
        self._clock = clock
        self._execute_locally = execute_locally
        self._workflows: dict[str, WorkflowFn] = {}
        self._steps: dict[str, StepFn] = {}
        self._lock = threading.Lock()
        self._futures: dict[str, Future[None]] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._shutdown_event = threading.Event()
        self._workflow_pool: ThreadPoolExecutor | None = None
        self._step_pool: ThreadPoolExecutor | None = None
        if execute_locally:
            self._workflow_pool = ThreadPoolExecutor(
                max_workers=max_concurrent_workflows, thread_name_prefix="workflow"
            )
            self._step_pool = ThreadPoolExecutor(
                max_workers=max_concurrent_workflows * 2, thread_name_prefix="step"
            )

    @property
    def journal(self) -> WorkflowJournal:
        return self._journal

    def register_workflow(self, workflow_type: str, fn: WorkflowFn) -> None:
        self._workflows[workflow_type] = fn

    def register_step(self, step_name: str, fn: StepFn) -> None:
        if step_name.startswith("__"):
            raise ValueError(f"Step names starting with '__' are reserved: {step_name!r}")
        self._steps[step_name] = fn

    def register_steps(self, steps: Mapping[str, StepFn]) -> None:
        for step_name, fn in steps.items():
            self.register_step(step_name, fn)

    def start_workflow(
        self,
        workflow_type: str,
        input: Mapping[str, object],
        *,
        workflow_id: str,
        parent_workflow_id: str | None = None,
        reuse_terminal_id: bool = True,
    ) -> str:
        """Durably start ``workflow_type`` and return the new execution id."""
        if self._execute_locally and workflow_type not in self._workflows:
            raise DurableExecutionError(f"Unknown workflow type {workflow_type!r}")
        if self._shutdown_event.is_set():
            raise EngineUnavailableError("Workflow engine is shutting down")
        record = self._journal.begin_execution(
            workflow_id=workflow_id,
            workflow_type=workflow_type,
            input=_to_json_object(input, what=f"input for workflow {workflow_id!r}"),
            parent_workflow_id=parent_workflow_id,
            reuse_terminal_id=reuse_terminal_id,
        )
        log_event(
            LOGGER,
            "workflow_started",
            workflow_id=workflow_id,
            workflow_type=workflow_type,
            execution_id=record.execution_id,
            parent_workflow_id=parent_workflow_id,
        )
        if self._execute_locally:
            self._submit(workflow_id)
        return record.execution_id

    def cancel_workflow(self, workflow_id: str) -> bool:
        """Request cancellation; returns False when the execution already finished."""
        record = self._journal.get_execution(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        requested = self._journal.request_cancel(workflow_id)
        with self._lock:
            event = self._cancel_events.get(workflow_id)
        if event is not None and requested:
            event.set()
        log_event(
            LOGGER,
            "workflow_cancel_requested",
            workflow_id=workflow_id,
            was_running=requested,
        )
        return requested

    def describe(self, workflow_id: str) -> ExecutionRecord | None:
        return self._journal.get_execution(workflow_id)

    def resume_incomplete(self, *, workflow_types: Collection[str] | None = None) -> list[str]:
        """Drive every journaled running execution not already owned by this engine."""
        if not self._execute_locally:
            return []
        resumed: list[str] = []
        for record in self._journal.list_executions(status="running"):
            if workflow_types is not None and record.workflow_type not in workflow_types:
                continue
            if self._submit(record.workflow_id):
                resumed.append(record.workflow_id)
                log_event(
                    LOGGER,
                    "workflow_resumed",
                    workflow_id=record.workflow_id,
                    workflow_type=record.workflow_type,
                )
        return resumed

    def wait(self, workflow_id: str, timeout: float | None = None) -> ExecutionRecord | None:
        with self._lock:
            future = self._futures.get(workflow_id)
        if future is not None:
            future.result(timeout=timeout)
        return self._journal.get_execution(workflow_id)

    def wait_all(self, timeout: float | None = None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [future for future in self._futures.values() if not future.done()]
            if not pending:
                return
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise TimeoutError("Timed out waiting for workflows to finish")
            wait_futures(pending, timeout=remaining)

    def shutdown(self, *, wait: bool = True) -> None:
        """Stop workers; running executions stay journaled as running for a later resume."""
        self._shutdown_event.set()
        if self._workflow_pool is not None:
            self._workflow_pool.shutdown(wait=wait, cancel_futures=True)
        if self._step_pool is not None:
            self._step_pool.shutdown(wait=False, cancel_futures=True)

    def _ensure_running(self) -> None:
        if self._shutdown_event.is_set():
            raise _WorkerShutdown()

    def _submit(self, workflow_id: str) -> bool:
        pool = self._workflow_pool
        if pool is None:
            return False
        with self._lock:
            if self._shutdown_event.is_set():
                return False
            existing = self._futures.get(workflow_id)
            if existing is not None and not existing.done():
                # A reused id may be started while the previous execution is unwinding.
                existing.add_done_callback(lambda _: self._submit(workflow_id))
                return False
            cancel_event = threading.Event()
            self._cancel_events[workflow_id] = cancel_event
            try:
                future = pool.submit(self._drive, workflow_id, cancel_event)
            except RuntimeError as exc:
                raise EngineUnavailableError(f"Workflow executor unavailable: {exc}") from exc
            self._futures[workflow_id] = future
            return True

    def _drive(self, workflow_id: str, cancel_event: threading.Event) -> None:
        record = self._journal.get_execution(workflow_id)
        if record is None or record.status != "running":
            return
        project_id = record.input.get("project_id")
        with logging_project_context(project_id if isinstance(project_id, str) else None):
            self._drive_record(record, cancel_event)

    def _drive_record(self, record: ExecutionRecord, cancel_event: threading.Event) -> None:
        workflow_id = record.workflow_id
        while True:
            fn = self._workflows.get(record.workflow_type)
            if fn is None:
                self._finish(
                    record, "failed", error=f"Unknown workflow type {record.workflow_type!r}"
                )
                return
            history = self._journal.load_steps(workflow_id, record.execution_id)
            ctx = WorkflowContext(
                engine=self, record=record, history=history, cancel_event=cancel_event
            )
            try:
                result = fn(ctx, dict(record.input))
            except ContinueAsNew as continuation:
                new_input = _to_json_object(continuation.input, what="continue-as-new input")
                self._journal.continue_as_new(workflow_id, record.execution_id, new_input)
                log_event(
                    LOGGER,
                    "workflow_continued_as_new",
                    workflow_id=workflow_id,
                    continuation_count=record.continuation_count + 1,
                    history_length=len(history),
                )
                refreshed = self._journal.get_execution(workflow_id)
                if refreshed is None or refreshed.status != "running":
                    return
                record = refreshed
                continue
            except WorkflowCancelledError:
                self._finish(record, "cancelled", error="cancelled")
                return
            except _WorkerShutdown:
                log_event(LOGGER, "workflow_suspended", workflow_id=workflow_id)
                return
            except EngineUnavailableError as exc:
                LOGGER.error(
                    "event=workflow_engine_unavailable workflow_id=%s error=%s",
                    workflow_id,
                    exc,
                )
                return
            except Exception as exc:  # noqa: BLE001
                self._finish(record, "failed", error=f"{type(exc).__name__}: {exc}")
                return
            self._finish(
                record,
                "completed",
                result=_to_json_object(result, what=f"result of workflow {workflow_id!r}"),
            )
            return

    def _finish(
        self,
        record: ExecutionRecord,
        status: ExecutionStatus,
        *,
        result: dict[str, object] | None = None,
        error: str | None = None,
    ) -> None:
        self._journal.finish_execution(
            record.workflow_id, record.execution_id, status, result=result, error=error
        )
        log_event(
            LOGGER,
            "workflow_finished",
            workflow_id=record.workflow_id,
            workflow_type=record.workflow_type,
            status=status,
            error=error,
        )

    def _run_step(
        self,
        ctx: WorkflowContext,
        *,
        seq: int,
        step_name: str,
        payload: dict[str, object],
        options: StepOptions,
        interrupted: StepRecord | None = None,
    ) -> tuple[StepRecord, BaseException | None]:
        """Invoke a step under its retry policy and journal the outcome.

        A ``started`` marker is journaled before every attempt. When ``interrupted`` carries the
        marker of attempts that never finished, those attempts count against the policy, so a
        step that allows a single attempt is failed instead of being invoked again.
        """
        fn = self._steps.get(step_name)
        if fn is None:
            raise DurableExecutionError(f"Unknown step {step_name!r}")
        key = _idempotency_key(ctx.workflow_id, ctx.execution_id, seq, step_name)
        policy = options.retry_policy
        attempt = interrupted.attempts if interrupted is not None else 0
        if interrupted is not None:
            LOGGER.warning(
                "event=step_interrupted workflow_id=%s step_name=%s attempts=%s",
                ctx.workflow_id,
                step_name,
                attempt,
            )
            if attempt >= policy.max_attempts:
                return self._record_step_failure(
                    ctx, seq, step_name, key, attempt, StepInterruptedError(step_name, attempt)
                )
        while True:
            attempt += 1
            self._journal.record_step(
                ctx.workflow_id,
                ctx.execution_id,
                StepRecord(
                    seq=seq,
                    step_name=step_name,
                    idempotency_key=key,
                    status="started",
                    result=None,
                    error_type=None,
                    error_message=None,
                    attempts=attempt,
                ),
            )
            invocation = StepInvocation(
                workflow_id=ctx.workflow_id,
                execution_id=ctx.execution_id,
                step_name=step_name,
                seq=seq,
                attempt=attempt,
            )
            try:
                raw = self._invoke_with_timeout(fn, payload, invocation, options.timeout_seconds)
                result = _to_json_object(raw, what=f"result of step {step_name!r}")
            except Exception as exc:  # noqa: BLE001
                if _is_retryable(exc) and attempt < policy.max_attempts:
                    delay = policy.delay_for_attempt(attempt)
                    log_event(
                        LOGGER,
                        "step_retry_scheduled",
                        workflow_id=ctx.workflow_id,
                        step_name=step_name,
                        attempt=attempt,
                        delay_seconds=delay,
                        error_type=type(exc).__name__,
                    )
                    self._sleeper(delay)
                    self._ensure_running()
                    continue
                return self._record_step_failure(ctx, seq, step_name, key, attempt, exc)

            record = StepRecord(
                seq=seq,
                step_name=step_name,
                idempotency_key=key,
                status="completed",
                result=result,
                error_type=None,
                error_message=None,
                attempts=attempt,
            )
            self._journal.record_step(ctx.workflow_id, ctx.execution_id, record)
            return record, None

    def _record_step_failure(
        self,
        ctx: WorkflowContext,
        seq: int,
        step_name: str,
        key: str,
        attempts: int,
        exc: BaseException,
    ) -> tuple[StepRecord, BaseException | None]:
        record = StepRecord(
            seq=seq,
            step_name=step_name,
            idempotency_key=key,
            status="failed",
            result=None,
            error_type=type(exc).__name__,
            error_message=str(exc),
            attempts=attempts,
        )
        self._journal.record_step(ctx.workflow_id, ctx.execution_id, record)
        LOGGER.warning(
            "event=step_failed workflow_id=%s step_name=%s attempts=%s error_type=%s",
            ctx.workflow_id,
            step_name,
            attempts,
            type(exc).__name__,
        )
        return record, exc

    def _invoke_with_timeout(
        self,
        fn: StepFn,
        payload: dict[str, object],
        invocation: StepInvocation,
        timeout_seconds: float,
    ) -> Mapping[str, object] | None:
        pool = self._step_pool
        if pool is None:
            raise EngineUnavailableError("Workflow engine does not execute steps locally")
        try:
            future = pool.submit(fn, dict(payload), invocation)
        except RuntimeError as exc:
            raise EngineUnavailableError(f"Step executor unavailable: {exc}") from exc
        deadline = time.monotonic() + timeout_seconds
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if future.cancel():
                    raise StepTimeoutError(invocation.step_name, timeout_seconds)
                if not future.done():
                    raise StepTimeoutError(
                        invocation.step_name, timeout_seconds, still_running=True
                    )
                return future.result()
            try:
                return future.result(timeout=min(remaining, self.cancel_poll_interval_seconds))
            except FutureTimeoutError:
                if future.done():
                    raise
                self._ensure_running()


_EXECUTION_COLUMNS = """
    workflow_id, execution_id, workflow_type, input_json, status, continuation_count,
    cancel_requested, parent_workflow_id, result_json, error, created_at, updated_at
"""


def _is_retryable(exc: BaseException) -> bool:
    # A timed-out attempt that is still running is never overlapped by a retry.
    if isinstance(exc, StepTimeoutError):
        return not exc.still_running
    return not isinstance(exc, NonRetryableStepError | DurableExecutionError)


def _idempotency_key(workflow_id: str, execution_id: str, seq: int, step_name: str) -> str:
    return f"{workflow_id}:{execution_id}:{seq}:{step_name}"


def _check_replayed_name(recorded: StepRecord, expected_name: str) -> None:
    if recorded.step_name != expected_name:
        raise NonDeterministicWorkflowError(
            f"Replay mismatch at seq {recorded.seq}: journal has {recorded.step_name!r}, "
            f"workflow asked for {expected_name!r}"
        )


def _replayed_result(recorded: StepRecord, expected_name: str) -> dict[str, object]:
    _check_replayed_name(recorded, expected_name)
    if recorded.status == "failed":
        raise StepFailedError(
            recorded.step_name, recorded.error_type or "Error", recorded.error_message or ""
        )
    return dict(recorded.result or {})


def _to_json_object(value: Mapping[str, object] | None, *, what: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise NonRetryableStepError(f"{what} must be a mapping, got {type(value).__name__}")
    try:
        encoded = json.dumps(dict(value), sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise NonRetryableStepError(f"{what} is not JSON-serializable: {exc}") from exc
    return cast(dict[str, object], json.loads(encoded))


def _load_json_object(raw: object, *, column: str) -> dict[str, object] | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise RuntimeError(f"Invalid {column} value stored in workflow journal")
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise RuntimeError(f"Invalid {column} value stored in workflow journal")
    return cast(dict[str, object], value)


def _parse_execution_row(row: tuple[object, ...]) -> ExecutionRecord:
    (
        workflow_id,
        execution_id,
        workflow_type,
        input_json,
        status,
        continuation_count,
        cancel_requested,
        parent_workflow_id,
        result_json,
        error,
        created_at,
        updated_at,
    ) = row
    if status not in {"running", "completed", "failed", "cancelled"}:
        raise RuntimeError(f"Unknown status value stored in workflow_executions: {status}")
    return ExecutionRecord(
        workflow_id=str(workflow_id),
        execution_id=str(execution_id),
        workflow_type=str(workflow_type),
        input=_load_json_object(input_json, column="input_json") or {},
        status=cast(ExecutionStatus, status),
        continuation_count=int(cast(int, continuation_count)),
        cancel_requested=bool(cancel_requested),
        parent_workflow_id=str(parent_workflow_id) if parent_workflow_id is not None else None,
        result=_load_json_object(result_json, column="result_json"),
        error=str(error) if error is not None else None,
        created_at=str(created_at),
        updated_at=str(updated_at),
    )


def _parse_step_row(row: tuple[object, ...]) -> StepRecord:
    (
        seq,
        step_name,
        idempotency_key,
        status,
        result_json,
        error_type,
        error_message,
        attempts,
    ) = row
    if status not in {"started", "completed", "failed"}:
        raise RuntimeError(f"Unknown status value stored in workflow_steps: {status}")
    return StepRecord(
        seq=int(cast(int, seq)),
        step_name=str(step_name),
        idempotency_key=str(idempotency_key),
        status=cast(StepStatus, status),
        result=_load_json_object(result_json, column="result_json"),
        error_type=str(error_type) if error_type is not None else None,
        error_message=str(error_message) if error_message is not None else None,
        attempts=int(cast(int, attempts)),
    )
