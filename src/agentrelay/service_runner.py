from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import threading
import time

from agentrelay.app_context import AppContext
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW
from agentrelay.observability import log_event, logging_project_context
from agentrelay.process_lock import writer_process_lock


LOGGER = logging.getLogger("agentrelay.service_runner")

# Executions journaled by another process (for example ``agentrelay trigger``) are picked up
# on this cadence.
_RESUME_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class ServiceRunner:
    context: AppContext
    stop_event: threading.Event = field(default_factory=threading.Event)
    resume_interval_seconds: float = _RESUME_INTERVAL_SECONDS
    clock: Callable[[], float] = time.monotonic

    def run(self, *, once: bool) -> None:
        runtime = self.context.config.runtime
        with writer_process_lock(base_dir=runtime.base_dir, command="service"):
            if not self.context.config.projects:
                raise RuntimeError("No projects configured for service runner")
            self.sync_projects()
            self.sweep()
            if once:
                self._run_once()
                return
            self._run_forever()

    def stop(self) -> None:
        self.stop_event.set()

    def sync_projects(self) -> None:
        """Make stored projects match configuration and start or stop their poll loops."""
        store = self.context.store
        manager = self.context.manager
        configured = {project.project_id: project for project in self.context.config.projects}
        for stored in store.list_projects():
            if stored.project_id in configured:
                continue
            manager.stop_polling(stored.project_id)
            store.delete_project(stored.project_id)
            log_event(LOGGER, "project_removed", project_id=stored.project_id)
        for project in configured.values():
            store.upsert_project(project)
            if not project.active:
                manager.stop_polling(project.project_id)
        log_event(LOGGER, "projects_synced", project_count=len(configured))

    def sweep(self) -> None:
        try:
            self.context.sweeper.sweep()
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=worktree_sweep_failed error_type=%s error=%s",
                type(exc).__name__,
                exc,
            )

    def _run_once(self) -> None:
        engine = self.context.engine
        # Long-lived poll loops stay journaled until the next full service start.
        resumed = engine.resume_incomplete(workflow_types=(AGENT_EXECUTION_WORKFLOW,))
        self._start_polling(once=True)
        log_event(LOGGER, "service_once_started", resumed_count=len(resumed))
        engine.wait_all()
        log_event(LOGGER, "service_once_finished")

    def _run_forever(self) -> None:
        engine = self.context.engine
        resumed = engine.resume_incomplete()
        self._start_polling(once=False)
        log_event(LOGGER, "service_started", resumed_count=len(resumed))
        sweep_interval = self.context.config.runtime.orphan_sweep_interval_seconds
        last_sweep = self.clock()
        while not self.stop_event.wait(self.resume_interval_seconds):
            resumed = engine.resume_incomplete()
            if resumed:
                log_event(LOGGER, "service_resumed_executions", resumed_count=len(resumed))
            if self.clock() - last_sweep >= sweep_interval:
                self.sweep()
                last_sweep = self.clock()
        log_event(LOGGER, "service_stopped")

    def _start_polling(self, *, once: bool) -> None:
        for project in self.context.store.list_projects(active_only=True):
            with logging_project_context(project.project_id):
                self.context.manager.start_polling(project.project_id, once=once)


def run_service(*, context: AppContext, once: bool) -> None:
    runner = ServiceRunner(context=context)
    try:
        runner.run(once=once)
    except KeyboardInterrupt:
        log_event(LOGGER, "service_interrupted")
    finally:
        context.close(wait=False)
