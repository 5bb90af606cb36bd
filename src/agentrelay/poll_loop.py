from __future__ import annotations

import logging
from typing import Final

from agentrelay.config import RuntimeConfig
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW
from agentrelay.durable import (
    ContinueAsNew,
    EngineUnavailableError,
    RetryPolicy,
    StepOptions,
    WorkflowCancelledError,
    WorkflowContext,
)
from agentrelay.observability import log_event


LOGGER = logging.getLogger("agentrelay.poll_loop")

REPOSITORY_POLL_WORKFLOW: Final[str] = "repository_poll"


def poll_workflow_id(project_id: str, *, once: bool = False) -> str:
    if once:
        return f"github-poll-once-{project_id}"
    return f"github-poll-{project_id}"


class RepositoryPoller:
    """The long-lived ``repository_poll`` workflow for one project.

    Each pass syncs labeled items, dispatches a child ``agent_execution`` for every item whose
    action detection claims it, then scans generated pull requests for follow-up work. The loop
    restarts itself with a fresh history after ``poll_iteration_cap`` passes or when the engine
    suggests it, and ends when the project disappears.
    """

    def __init__(self, runtime: RuntimeConfig) -> None:
        self.iteration_cap = runtime.poll_iteration_cap
        self.options = StepOptions(
            timeout_seconds=runtime.step_timeout_seconds,
            retry_policy=RetryPolicy(
                initial_interval_seconds=runtime.retry_initial_interval_seconds,
                max_interval_seconds=runtime.retry_max_interval_seconds,
                max_attempts=runtime.retry_max_attempts,
            ),
        )

    def __call__(self, ctx: WorkflowContext, input: dict[str, object]) -> dict[str, object]:
        return self.run(ctx, input)

    def run(self, ctx: WorkflowContext, input: dict[str, object]) -> dict[str, object]:
        project_id = str(input["project_id"])
        once = bool(input.get("once", False))
        iterations = 0
        while True:
            if not self.poll_once(ctx, project_id):
                return _stopped(project_id, "project_removed", iterations)
            iterations += 1

            if once:
                return {"project_id": project_id, "status": "polled_once", "iterations": iterations}

            interval = ctx.execute_step(
                "get_poll_interval", {"project_id": project_id}, options=self.options
            )
            if not interval.get("found"):
                return _stopped(project_id, "project_removed", iterations)
            if not interval.get("active", True):
                return _stopped(project_id, "project_inactive", iterations)

            if iterations >= self.iteration_cap or ctx.continue_as_new_suggested():
                raise ContinueAsNew({"project_id": project_id})
            ctx.sleep(_seconds(interval.get("poll_interval_seconds")))

    def poll_once(self, ctx: WorkflowContext, project_id: str) -> bool:
        fetched = ctx.execute_step("fetch_items", {"project_id": project_id}, options=self.options)
        if not fetched.get("found"):
            return False

        dispatched = 0
        for work_item_id in _int_list(fetched.get("work_item_ids")):
            try:
                dispatched += self._dispatch_item(ctx, project_id, work_item_id)
            except (WorkflowCancelledError, EngineUnavailableError):
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning(
                    "event=poll_item_failed project_id=%s work_item_id=%s error_type=%s error=%s",
                    project_id,
                    work_item_id,
                    type(exc).__name__,
                    exc,
                )

        followups = 0
        try:
            scanned = ctx.execute_step(
                "scan_followups", {"project_id": project_id}, options=self.options
            )
        except (WorkflowCancelledError, EngineUnavailableError):
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=followup_scan_failed project_id=%s error_type=%s error=%s",
                project_id,
                type(exc).__name__,
                exc,
            )
            scanned = {"triggers": []}
        triggers = scanned.get("triggers")
        for trigger in triggers if isinstance(triggers, list) else []:
            try:
                followups += self._dispatch_followup(ctx, project_id, trigger)
            except (WorkflowCancelledError, EngineUnavailableError):
                raise
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning(
                    "event=poll_followup_failed project_id=%s trigger=%s error_type=%s error=%s",
                    project_id,
                    trigger,
                    type(exc).__name__,
                    exc,
                )

        if not ctx.is_replaying:
            log_event(
                LOGGER,
                "poll_iteration_completed",
                project_id=project_id,
                candidates=len(_int_list(fetched.get("work_item_ids"))),
                dispatched=dispatched,
                followups_dispatched=followups,
            )
        return True

    def _dispatch_item(self, ctx: WorkflowContext, project_id: str, work_item_id: int) -> int:
        detected = ctx.execute_step(
            "detect_action",
            {"project_id": project_id, "work_item_id": work_item_id},
            options=self.options,
        )
        action = detected.get("action")
        if action == "execute_agent":
            prefix, mode = "agent", "build"
        elif action == "start_planning":
            prefix, mode = "plan", "plan"
        else:
            return 0

        stamp = int(ctx.current_time())
        started = ctx.start_child(
            AGENT_EXECUTION_WORKFLOW,
            {"project_id": project_id, "work_item_id": work_item_id, "mode": mode},
            workflow_id=f"{prefix}-{project_id}-{work_item_id}-{stamp}",
        )
        return 1 if started else 0

    def _dispatch_followup(self, ctx: WorkflowContext, project_id: str, trigger: object) -> int:
        if not isinstance(trigger, dict):
            raise ValueError(f"Malformed follow-up trigger: {trigger!r}")
        pr_number = int(trigger["pr_number"])
        stamp = int(ctx.current_time())
        started = ctx.start_child(
            AGENT_EXECUTION_WORKFLOW,
            {
                "project_id": project_id,
                "work_item_id": trigger.get("work_item_id"),
                "source_pr_number": pr_number,
                "mode": "build",
                "trigger_types": list(trigger.get("types") or []),
            },
            workflow_id=f"pr-followup-{project_id}-{pr_number}-{stamp}",
        )
        return 1 if started else 0


def _stopped(project_id: str, reason: str, iterations: int) -> dict[str, object]:
    log_event(LOGGER, "poll_loop_stopped", project_id=project_id, reason=reason)
    return {"project_id": project_id, "status": reason, "iterations": iterations}


def _seconds(value: object) -> float:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    raise ValueError(f"Invalid poll interval: {value!r}")


def _int_list(value: object) -> list[int]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, int) and not isinstance(item, bool)]
