from __future__ import annotations

from dataclasses import dataclass
import logging
import secrets

from agentrelay.config import AppConfig
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW
from agentrelay.durable import (
    EngineUnavailableError,
    WorkflowAlreadyStartedError,
    WorkflowEngine,
    WorkflowNotFoundError,
)
from agentrelay.observability import log_event
from agentrelay.poll_loop import REPOSITORY_POLL_WORKFLOW, poll_workflow_id
from agentrelay.state import StateStore


LOGGER = logging.getLogger("agentrelay.manager")


class TriggerValidationError(ValueError):
    pass


class NothingSelectedError(TriggerValidationError):
    pass


class RunAlreadyActiveError(RuntimeError):
    def __init__(self, target: str, *, has_work_item: bool) -> None:
        super().__init__(f"A run is already active for {target}")
        self.target = target
        self.has_work_item = has_work_item


class UpstreamConnectionError(RuntimeError):
    pass


@dataclass(frozen=True)
class ManualTriggerResult:
    workflow_id: str


class ProjectWorkflowManager:
    """Entry points that start and stop workflows on behalf of an operator."""

    def __init__(self, *, engine: WorkflowEngine, store: StateStore, config: AppConfig) -> None:
        self._engine = engine
        self._store = store
        self._config = config

    def start_polling(self, project_id: str, *, once: bool = False) -> bool:
        workflow_id = poll_workflow_id(project_id, once=once)
        input: dict[str, object] = {"project_id": project_id}
        if once:
            input["once"] = True
        try:
            self._engine.start_workflow(REPOSITORY_POLL_WORKFLOW, input, workflow_id=workflow_id)
        except WorkflowAlreadyStartedError:
            log_event(LOGGER, "poll_loop_already_running", project_id=project_id)
            return False
        log_event(LOGGER, "poll_loop_started", project_id=project_id, once=once)
        return True

    def stop_polling(self, project_id: str) -> bool:
        workflow_id = poll_workflow_id(project_id)
        try:
            cancelled = self._engine.cancel_workflow(workflow_id)
        except WorkflowNotFoundError:
            cancelled = False
        if not cancelled:
            log_event(LOGGER, "poll_loop_not_running", project_id=project_id)
        return cancelled

    def cancel_run(self, run_id: int) -> bool:
        run = self._store.get_run(run_id)
        if run is None:
            raise TriggerValidationError(f"Unknown run id {run_id}")
        try:
            return self._engine.cancel_workflow(run.workflow_id)
        except WorkflowNotFoundError:
            return False

    def trigger_manual_run(
        self,
        project_id: str,
        *,
        item_number: int | None = None,
        prompt: str | None = None,
        source_pr_number: int | None = None,
        agent_type: str | None = None,
    ) -> ManualTriggerResult:
        project = self._store.get_project(project_id)
        if project is None:
            raise TriggerValidationError(f"Unknown project {project_id!r}")
        prompt = (prompt or "").strip() or None
        if item_number is None and prompt is None and source_pr_number is None:
            raise NothingSelectedError("No work item, pull request, or prompt was selected")

        resolved_agent_type = self._config.agent.resolve_type(agent_type)
        input: dict[str, object] = {
            "project_id": project_id,
            "agent_type": resolved_agent_type,
            "mode": "build",
        }
        has_work_item = False
        if source_pr_number is not None:
            if self._store.has_active_run_for_pr(project_id, source_pr_number):
                raise RunAlreadyActiveError(
                    f"pull request #{source_pr_number}", has_work_item=False
                )
            workflow_id = f"manual-{project_id}-pr-{source_pr_number}"
            input["source_pr_number"] = source_pr_number
            pr_item = self._store.get_work_item_by_number(project_id, source_pr_number)
            if pr_item is not None:
                input["work_item_id"] = pr_item.id
        elif item_number is not None:
            item = self._store.get_work_item_by_number(project_id, item_number)
            if item is None:
                raise TriggerValidationError(
                    f"Unknown work item #{item_number} in project {project_id!r}"
                )
            has_work_item = True
            if self._store.has_active_run_for_work_item(item.id):
                raise RunAlreadyActiveError(f"work item #{item_number}", has_work_item=True)
            workflow_id = f"manual-{project_id}-{item.id}"
            input["work_item_id"] = item.id
            if prompt is not None:
                input["custom_prompt"] = prompt
        else:
            workflow_id = f"manual-{project_id}-prompt-{secrets.token_hex(6)}"
            input["custom_prompt"] = prompt

        try:
            self._engine.start_workflow(AGENT_EXECUTION_WORKFLOW, input, workflow_id=workflow_id)
        except WorkflowAlreadyStartedError as exc:
            raise RunAlreadyActiveError(workflow_id, has_work_item=has_work_item) from exc
        except EngineUnavailableError as exc:
            raise UpstreamConnectionError(str(exc)) from exc
        log_event(
            LOGGER,
            "manual_run_triggered",
            project_id=project_id,
            workflow_id=workflow_id,
            agent_type=resolved_agent_type,
            item_number=item_number,
            source_pr_number=source_pr_number,
        )
        return ManualTriggerResult(workflow_id=workflow_id)


def describe_trigger_error(exc: Exception) -> str:
    if isinstance(exc, RunAlreadyActiveError):
        if exc.has_work_item:
            return "An agent run is already in progress for this issue."
        return "An agent run is already in progress."
    if isinstance(exc, UpstreamConnectionError):
        return f"Failed to start agent run: {exc}"
    if isinstance(exc, NothingSelectedError):
        return "Please select an issue, enter an issue URL, or provide a custom prompt."
    if isinstance(exc, TriggerValidationError):
        return str(exc)
    return f"Failed to start agent run: {exc}"
