from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
from pathlib import Path
import threading

import pytest

from agentrelay.config import AppConfig, ProjectConfig, RuntimeConfig
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW
from agentrelay.observability import configure_logging
from agentrelay.process_lock import ProcessLockError, writer_process_lock
from agentrelay.service_runner import ServiceRunner, run_service
from agentrelay.state import StateStore


_SITE = ProjectConfig(project_id="site", owner="acme", name="site")
_DOCS = ProjectConfig(project_id="docs", owner="acme", name="docs", active=False)


class FakeEngine:
    def __init__(self) -> None:
        self.resume_calls: list[tuple[str, ...] | None] = []
        self.resume_results: list[list[str]] = []
        self.wait_all_calls = 0
        self.on_resume: list[object] = []

    def resume_incomplete(self, *, workflow_types: Collection[str] | None = None) -> list[str]:
        self.resume_calls.append(tuple(workflow_types) if workflow_types is not None else None)
        for hook in self.on_resume:
            hook()  # type: ignore[operator]
        return self.resume_results.pop(0) if self.resume_results else []

    def wait_all(self, timeout: float | None = None) -> None:
        _ = timeout
        self.wait_all_calls += 1


class FakeManager:
    def __init__(self) -> None:
        self.started: list[tuple[str, bool]] = []
        self.stopped: list[str] = []

    def start_polling(self, project_id: str, *, once: bool = False) -> bool:
        self.started.append((project_id, once))
        return True

    def stop_polling(self, project_id: str) -> bool:
        self.stopped.append(project_id)
        return True


class FakeSweeper:
    def __init__(self) -> None:
        self.calls = 0
        self.error: Exception | None = None

    def sweep(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


@dataclass
class FakeContext:
    config: AppConfig
    store: StateStore
    engine: FakeEngine
    manager: FakeManager
    sweeper: FakeSweeper
    closed_with: bool | None = None

    def close(self, *, wait: bool = True) -> None:
        self.closed_with = wait


class SteppingClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


def _context(
    tmp_path: Path, projects: tuple[ProjectConfig, ...] = (_SITE, _DOCS)
) -> FakeContext:
    return FakeContext(
        config=AppConfig(
            runtime=RuntimeConfig(base_dir=tmp_path, orphan_sweep_interval_seconds=10),
            projects=projects,
        ),
        store=StateStore(tmp_path / "state.db"),
        engine=FakeEngine(),
        manager=FakeManager(),
        sweeper=FakeSweeper(),
    )


def test_sync_projects_matches_configuration(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.store.upsert_project(ProjectConfig(project_id="old", owner="acme", name="old"))
    runner = ServiceRunner(context=ctx)  # type: ignore[arg-type]

    runner.sync_projects()

    assert sorted(project.project_id for project in ctx.store.list_projects()) == ["docs", "site"]
    assert [p.project_id for p in ctx.store.list_projects(active_only=True)] == ["site"]
    assert ctx.manager.stopped == ["old", "docs"]


def test_run_once(tmp_path: Path) -> None:
    ctx = _context(tmp_path)
    ctx.engine.resume_results = [["agent-site-3-1"]]

    ServiceRunner(context=ctx).run(once=True)  # type: ignore[arg-type]

    assert ctx.sweeper.calls == 1
    assert ctx.engine.resume_calls == [(AGENT_EXECUTION_WORKFLOW,)]
    assert ctx.manager.started == [("site", True)]
    assert ctx.engine.wait_all_calls == 1


def test_run_forever_resumes_and_sweeps_until_stopped(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    ctx = _context(tmp_path)
    stop_event = threading.Event()
    runner = ServiceRunner(
        context=ctx,  # type: ignore[arg-type]
        stop_event=stop_event,
        resume_interval_seconds=0.0,
        clock=SteppingClock(step=6.0),
    )
    ctx.engine.resume_results = [["github-poll-site"], ["manual-site-prompt-abc"]]
    ctx.engine.on_resume = [
        lambda: stop_event.set() if len(ctx.engine.resume_calls) >= 3 else None
    ]

    runner.run(once=False)

    assert ctx.engine.resume_calls == [None, None, None]
    assert ctx.manager.started == [("site", False)]
    assert ctx.sweeper.calls == 2
    err = capsys.readouterr().err
    assert "event=service_started resumed_count=1" in err
    assert "event=service_resumed_executions resumed_count=1" in err
    assert "event=service_stopped" in err


def test_run_requires_projects(tmp_path: Path) -> None:
    ctx = _context(tmp_path, projects=())

    with pytest.raises(RuntimeError, match="No projects configured"):
        ServiceRunner(context=ctx).run(once=True)  # type: ignore[arg-type]


def test_run_refuses_second_writer(tmp_path: Path) -> None:
    ctx = _context(tmp_path)

    with writer_process_lock(base_dir=tmp_path, command="service"):
        with pytest.raises(ProcessLockError, match="Another agentrelay service"):
            ServiceRunner(context=ctx).run(once=True)  # type: ignore[arg-type]

    assert ctx.manager.started == []


def test_sweep_failure_is_logged(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    ctx = _context(tmp_path)
    ctx.sweeper.error = OSError("disk full")

    ServiceRunner(context=ctx).run(once=True)  # type: ignore[arg-type]

    assert ctx.engine.wait_all_calls == 1
    assert (
        "event=worktree_sweep_failed error_type=OSError error=disk full"
        in capsys.readouterr().err
    )


def test_run_service_closes_context(tmp_path: Path) -> None:
    ctx = _context(tmp_path)

    run_service(context=ctx, once=True)  # type: ignore[arg-type]

    assert ctx.closed_with is False


def test_run_service_handles_interrupt(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    ctx = _context(tmp_path)

    def interrupt() -> None:
        raise KeyboardInterrupt

    ctx.engine.on_resume = [interrupt]

    run_service(context=ctx, once=True)  # type: ignore[arg-type]

    assert ctx.closed_with is False
    assert "event=service_interrupted" in capsys.readouterr().err
