from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from agentrelay.config import ProjectConfig, RuntimeConfig
from agentrelay.durable import WorkflowJournal
from agentrelay.models import RunRecord
from agentrelay.observability import configure_logging
from agentrelay.process_lock import repository_lock
from agentrelay.state import StateStore
from agentrelay.worktree_sweep import SweepReport, WorktreeSweeper


_PROJECT = ProjectConfig(project_id="site", owner="acme", name="site")


class FakeProvisioner:
    def __init__(self) -> None:
        self.removed: list[Path] = []
        self.results: dict[str, bool | Exception] = {}

    def remove_checkout(self, path: Path) -> bool:
        self.removed.append(path)
        result = self.results.get(path.name, True)
        if isinstance(result, Exception):
            raise result
        return result


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.runtime = RuntimeConfig(base_dir=tmp_path, stale_worktree_hours=2)
        self.store = StateStore(tmp_path / "state.db")
        self.store.upsert_project(_PROJECT)
        self.journal = WorkflowJournal(tmp_path / "journal.db")
        self.provisioner = FakeProvisioner()
        self.sweeper = WorktreeSweeper(
            store=self.store,
            journal=self.journal,
            provisioner=self.provisioner,  # type: ignore[arg-type]
            runtime=self.runtime,
        )

    def run(self, workflow_id: str, *, live: bool = False) -> RunRecord:
        if live:
            self.journal.begin_execution(
                workflow_id=workflow_id, workflow_type="agent_execution", input={}
            )
        return self.store.create_run(
            project_id="site",
            workflow_id=workflow_id,
            execution_id=f"exec-{workflow_id}",
            agent_type="claude_code",
        )

    def worktree(self, run: RunRecord | None, name: str) -> int:
        record = self.store.claim_worktree(
            project_id="site",
            run_id=run.id if run is not None else None,  # type: ignore[arg-type]
            path=str(self.runtime.base_dir / "worktrees" / name),
            branch_name=f"agent/{name}",
            base_commit="base123",
        )
        return record.id

    def age(self, table: str, row_id: int, column: str = "updated_at") -> None:
        with sqlite3.connect(self.store.db_path) as conn:
            conn.execute(
                f"UPDATE {table} SET {column} = '2000-01-01T00:00:00.000Z' WHERE id = ?",
                (row_id,),
            )


@pytest.fixture
def h(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


def test_time_out_stale_runs(h: Harness, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    stale = h.run("agent-site-1-1")
    live = h.run("agent-site-2-1", live=True)
    fresh = h.run("agent-site-3-1")
    finished = h.run("agent-site-4-1")
    h.store.fail_run(finished.id, "boom")
    for run in (stale, live, finished):
        h.age("runs", run.id)

    assert h.sweeper.time_out_stale_runs() == 1

    timed_out = h.store.require_run(stale.id)
    assert timed_out.status == "timeout"
    assert timed_out.error == (
        "Run stayed pending for more than 2h without a live workflow execution"
    )
    assert h.store.require_run(live.id).status == "pending"
    assert h.store.require_run(fresh.id).status == "pending"
    assert h.store.require_run(finished.id).status == "failed"
    assert f"event=run_timed_out run_id={stale.id}" in capsys.readouterr().err


def test_sweep_reclaims_orphaned_worktrees(h: Harness) -> None:
    done = h.run("agent-site-1-1")
    h.store.complete_run(done.id, reason="pr_created")
    done_tree = h.worktree(done, "done")
    active = h.run("agent-site-2-1")
    h.worktree(active, "active")
    ownerless = h.worktree(None, "ownerless")

    report = h.sweeper.sweep()

    assert report == SweepReport(
        runs_timed_out=0, worktrees_cleaned=2, worktrees_failed=0, worktrees_skipped=0
    )
    assert [path.name for path in h.provisioner.removed] == ["done", "ownerless"]
    statuses = {record.id: record.status for record in h.store.list_worktrees()}
    assert statuses[done_tree] == "cleaned"
    assert statuses[ownerless] == "cleaned"
    assert [record.branch_name for record in h.store.list_worktrees(status="active")] == [
        "agent/active"
    ]


def test_sweep_skips_worktree_of_live_execution(h: Harness) -> None:
    run = h.run("agent-site-1-1", live=True)
    tree = h.worktree(run, "live")
    h.age("worktrees", tree, "created_at")
    h.age("runs", run.id)

    report = h.sweeper.sweep()

    assert report == SweepReport(
        runs_timed_out=0, worktrees_cleaned=0, worktrees_failed=0, worktrees_skipped=1
    )
    assert h.provisioner.removed == []
    assert h.store.require_run(run.id).status == "pending"


def test_sweep_times_out_then_reclaims_abandoned_run(h: Harness) -> None:
    run = h.run("agent-site-1-1")
    h.worktree(run, "abandoned")
    h.age("runs", run.id)

    report = h.sweeper.sweep()

    assert report.runs_timed_out == 1
    assert report.worktrees_cleaned == 1
    assert h.store.require_run(run.id).status == "timeout"


def test_sweep_records_failed_removals(h: Harness, capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    h.worktree(None, "stuck")
    h.worktree(None, "denied")
    h.provisioner.results = {"stuck": False, "denied": PermissionError("denied")}

    report = h.sweeper.sweep()

    assert report.worktrees_failed == 2
    assert {record.status for record in h.store.list_worktrees()} == {"cleanup_failed"}
    assert "event=worktree_remove_failed" in capsys.readouterr().err


def test_sweep_skips_locked_repository(h: Harness) -> None:
    h.worktree(None, "orphan")

    with repository_lock(base_dir=h.runtime.base_dir, project_id="site", command="clone"):
        report = h.sweeper.sweep()

    assert report.worktrees_skipped == 1
    assert h.provisioner.removed == []
    assert [record.status for record in h.store.list_worktrees()] == ["active"]

    assert h.sweeper.sweep().worktrees_cleaned == 1
