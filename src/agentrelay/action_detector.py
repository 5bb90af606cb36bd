from __future__ import annotations

import logging

from agentrelay.config import LabelMapping
from agentrelay.models import ActionName, OrchestrationState, WorkItem
from agentrelay.observability import log_event
from agentrelay.state import StateStore


LOGGER = logging.getLogger("agentrelay.action_detector")

_TARGET_STATE: dict[ActionName, OrchestrationState] = {
    "execute_agent": "in_progress",
    "start_planning": "planning",
}


def determine_action(item: WorkItem, label_mappings: LabelMapping) -> ActionName:
    """Pick the action a labeled item asks for; only items in ``new`` are actionable."""
    if item.orchestration_state != "new":
        return "none"
    if item.is_pull_request:
        return "none"
    labels = set(item.labels)
    if label_mappings.build_label in labels:
        return "execute_agent"
    if label_mappings.plan_label in labels:
        return "start_planning"
    return "none"


def detect_action(
    store: StateStore,
    project_id: str,
    work_item_id: int,
    *,
    claim_key: str | None = None,
) -> ActionName:
    """Decide and claim the next action for one work item.

    The orchestration state moves out of ``new`` with a compare-and-set, so two concurrent
    detections of the same item produce at most one non-``none`` action. A caller that repeats
    a detection with the ``claim_key`` of its own earlier claim gets the claimed action back.
    """
    project = store.get_project(project_id)
    item = store.get_work_item(work_item_id)
    if project is None or item is None or item.project_id != project_id:
        log_event(
            LOGGER,
            "detect_labels",
            project_id=project_id,
            work_item_id=work_item_id,
            action="none",
            reason="missing",
        )
        return "none"

    reclaimed = _reclaimed_action(item, claim_key)
    if reclaimed is not None:
        log_event(
            LOGGER,
            "detect_labels",
            project_id=project_id,
            work_item_id=work_item_id,
            issue_number=item.number,
            state=item.orchestration_state,
            action=reclaimed,
            reason="reclaimed",
        )
        return reclaimed

    action = determine_action(item, project.label_mappings)
    if action != "none":
        claimed = store.transition_orchestration_state(
            work_item_id, from_state="new", to_state=_TARGET_STATE[action], claim_key=claim_key
        )
        if not claimed:
            action = "none"

    log_event(
        LOGGER,
        "detect_labels",
        project_id=project_id,
        work_item_id=work_item_id,
        issue_number=item.number,
        labels=item.labels,
        state=item.orchestration_state,
        action=action,
    )
    return action


def _reclaimed_action(item: WorkItem, claim_key: str | None) -> ActionName | None:
    if claim_key is None or item.claim_key != claim_key:
        return None
    for action, state in _TARGET_STATE.items():
        if item.orchestration_state == state:
            return action
    return None
