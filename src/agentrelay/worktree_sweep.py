from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path

from agentrelay.config import RuntimeConfig
from agentrelay.durable import WorkflowJournal
from agentrelay.environment import EnvironmentProvisioner
from agentrelay.models import RunRecord, WorktreeRecord
from agentrelay.observability import log_event
from agentrelay.process_lock import ProcessLockError, repository_lock
from agentrelay.state import StateStore


LOGGER = logging.getLogger("agentrelay.worktree_sweep")


@dataclass(frozen=True)
class SweepReport:
    runs_timed_out: int
    worktrees_cleaned: int
    worktrees_failed: int
    worktrees_skipped: int


class WorktreeSweeper:
    """Out-of-band reconciliation for runs and checkouts a crashed execution left behind."""

    def __init__(
        self,
        *,
        store: StateStore,
        journal: WorkflowJournal,
        provisioner: EnvironmentProvisioner,
        runtime: RuntimeConfig,
    ) -> None:
        self._store = store
        self._journal = journal
        self._provisioner = provisioner
        self._runtime = runtime

    def sweep(self) -> SweepReport:
        timed_out = self.time_out_stale_runs()
        cleaned = failed = skipped = 0
        for worktree in self._store.list_orphaned_worktrees(
            stale_hours=self._runtime.stale_worktree_hours
        ):
            outcome = self._reclaim(worktree)
            if outcome == "cleaned":
                cleaned += 1
            elif outcome == "cleanup_failed":
                failed += 1
            else:
                skipped += 1
        report = SweepReport(
            runs_timed_out=timed_out,
            worktrees_cleaned=cleaned,
            worktrees_failed=failed,
            worktrees_skipped=skipped,
        )
        log_event(
            LOGGER,
            "worktree_sweep_completed",
            runs_timed_out=report.runs_timed_out,
            cleaned=report.worktrees_cleaned,
            failed=report.worktrees_failed,
            skipped=report.worktrees_skipped,
        )
        return report

    def time_out_stale_runs(self) -> int:
        timed_out = 0
        for run in self._store.list_stale_active_runs(
            older_than_hours=self._runtime.stale_worktree_hours
        ):
            if self._execution_is_live(run):
                continue
            error = (
                f"Run stayed {run.status} for more than {self._runtime.stale_worktree_hours}h "
                "without a live workflow execution"
            )
            if self._store.timeout_run(run.id, error):
                timed_out += 1
                LOGGER.warning(
                    "event=run_timed_out run_id=%s workflow_id=%s status=%s",
                    run.id,
                    run.workflow_id,
                    run.status,
                )
        return timed_out

    def _reclaim(self, worktree: WorktreeRecord) -> str:
        run = self._store.get_run(worktree.run_id) if worktree.run_id is not None else None
        if run is not None and run.is_active and self._execution_is_live(run):
            return "skipped"
        try:
            with repository_lock(
                base_dir=self._runtime.base_dir,
                project_id=worktree.project_id,
                command="sweep",
            ):
                removed = self._provisioner.remove_checkout(Path(worktree.path))
        except ProcessLockError as exc:
            log_event(
                LOGGER,
                "worktree_sweep_locked",
                worktree_id=worktree.id,
                project_id=worktree.project_id,
                error=str(exc),
            )
            return "skipped"
        except OSError as exc:
            LOGGER.warning(
                "event=worktree_remove_failed worktree_id=%s path=%s error=%s",
                worktree.id,
                worktree.path,
                exc,
            )
            removed = False

        if removed:
            self._store.mark_worktree_cleaned(worktree.id)
            log_event(LOGGER, "worktree_reclaimed", worktree_id=worktree.id, path=worktree.path)
            return "cleaned"
        self._store.mark_worktree_cleanup_failed(worktree.id)
        return "cleanup_failed"

    def _execution_is_live(self, run: RunRecord) -> bool:
        execution = self._journal.get_execution(run.workflow_id)
        return execution is not None and execution.status == "running"
