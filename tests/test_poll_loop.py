from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
import threading
import time

import pytest

from agentrelay.config import RuntimeConfig
from agentrelay.coordinator import AGENT_EXECUTION_WORKFLOW
from agentrelay.durable import (
    ExecutionRecord,
    NonRetryableStepError,
    StepInvocation,
    WorkflowContext,
    WorkflowEngine,
    WorkflowJournal,
)
from agentrelay.observability import configure_logging
from agentrelay.poll_loop import (
    REPOSITORY_POLL_WORKFLOW,
    RepositoryPoller,
    _int_list,
    _seconds,
    poll_workflow_id,
)


class SteppingClock:
    def __init__(self, start: float = 1000.0, step: float = 0.0) -> None:
        self.now = start
        self.step = step
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            value = self.now
            self.now += self.step
            return value


class PollSteps:
    def __init__(self) -> None:
        self.queued: dict[str, list[Mapping[str, object] | Exception]] = {}
        self.defaults: dict[str, Mapping[str, object]] = {
            "fetch_items": {"found": True, "work_item_ids": []},
            "scan_followups": {"found": True, "triggers": []},
            "get_poll_interval": {"found": True, "active": True, "poll_interval_seconds": 5},
        }
        self.actions: dict[int, str | Exception] = {}
        self.calls: list[tuple[str, dict[str, object]]] = []
        self._lock = threading.Lock()

    def queue(self, step_name: str, *results: Mapping[str, object] | Exception) -> None:
        self.queued.setdefault(step_name, []).extend(results)

    def register(self, engine: WorkflowEngine) -> None:
        for name in self.defaults:
            engine.register_step(name, self._queued_step(name))
        engine.register_step("detect_action", self._detect_action)

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def _queued_step(self, name: str):  # type: ignore[no-untyped-def]
        def fn(payload: dict[str, object], invocation: StepInvocation) -> Mapping[str, object]:
            _ = invocation
            with self._lock:
                self.calls.append((name, payload))
                pending = self.queued.get(name)
                result = pending.pop(0) if pending else self.defaults[name]
            if isinstance(result, Exception):
                raise result
            return result

        return fn

    def _detect_action(
        self, payload: dict[str, object], invocation: StepInvocation
    ) -> Mapping[str, object]:
        _ = invocation
        with self._lock:
            self.calls.append(("detect_action", payload))
        action = self.actions.get(int(str(payload["work_item_id"])), "none")
        if isinstance(action, Exception):
            raise action
        return {"action": action}


class ChildRecorder:
    def __init__(self) -> None:
        self.inputs: dict[str, dict[str, object]] = {}
        self._lock = threading.Lock()

    def __call__(self, ctx: WorkflowContext, input: dict[str, object]) -> dict[str, object]:
        with self._lock:
            self.inputs[ctx.workflow_id] = input
        return {}


@pytest.fixture
def steps() -> PollSteps:
    return PollSteps()


@pytest.fixture
def children() -> ChildRecorder:
    return ChildRecorder()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()


@pytest.fixture
def runtime(tmp_path: Path) -> RuntimeConfig:
    return RuntimeConfig(base_dir=tmp_path)


@pytest.fixture
def engine(
    tmp_path: Path,
    steps: PollSteps,
    children: ChildRecorder,
    clock: SteppingClock,
    runtime: RuntimeConfig,
) -> Iterator[WorkflowEngine]:
    eng = WorkflowEngine(
        WorkflowJournal(tmp_path / "journal.db"),
        clock=clock,
        sleeper=lambda _: None,
        cancel_poll_interval_seconds=0.02,
    )
    eng.register_workflow(REPOSITORY_POLL_WORKFLOW, RepositoryPoller(runtime))
    eng.register_workflow(AGENT_EXECUTION_WORKFLOW, children)
    steps.register(eng)
    try:
        yield eng
    finally:
        eng.shutdown(wait=True)


def _poll(engine: WorkflowEngine, *, once: bool) -> ExecutionRecord:
    workflow_id = poll_workflow_id("site", once=once)
    input: dict[str, object] = {"project_id": "site"}
    if once:
        input["once"] = True
    engine.start_workflow(REPOSITORY_POLL_WORKFLOW, input, workflow_id=workflow_id)
    record = engine.wait(workflow_id, timeout=10)
    engine.wait_all(timeout=10)
    assert record is not None
    return record


def test_poll_workflow_ids() -> None:
    assert poll_workflow_id("site") == "github-poll-site"
    assert poll_workflow_id("site", once=True) == "github-poll-once-site"


def test_single_pass_dispatches_children(
    engine: WorkflowEngine, steps: PollSteps, children: ChildRecorder
) -> None:
    steps.queue("fetch_items", {"found": True, "work_item_ids": [3, 4, 5]})
    steps.actions = {3: "execute_agent", 4: "start_planning", 5: "none"}
    steps.queue(
        "scan_followups",
        {
            "found": True,
            "triggers": [
                {"pr_number": 12, "work_item_id": 9, "types": ["ci_failure"], "details": ["unit"]}
            ],
        },
    )

    record = _poll(engine, once=True)

    assert record.status == "completed"
    assert record.result == {"project_id": "site", "status": "polled_once", "iterations": 1}
    assert children.inputs == {
        "agent-site-3-1000": {"project_id": "site", "work_item_id": 3, "mode": "build"},
        "plan-site-4-1000": {"project_id": "site", "work_item_id": 4, "mode": "plan"},
        "pr-followup-site-12-1000": {
            "project_id": "site",
            "work_item_id": 9,
            "source_pr_number": 12,
            "mode": "build",
            "trigger_types": ["ci_failure"],
        },
    }
    child = engine.describe("agent-site-3-1000")
    assert child is not None
    assert child.parent_workflow_id == "github-poll-once-site"
    assert "get_poll_interval" not in steps.names()


def test_duplicate_child_ids_are_not_restarted(
    engine: WorkflowEngine, steps: PollSteps, children: ChildRecorder
) -> None:
    steps.queue(
        "fetch_items",
        {"found": True, "work_item_ids": [3]},
        {"found": True, "work_item_ids": [3]},
    )
    steps.actions = {3: "execute_agent"}
    steps.queue("get_poll_interval", {"found": True, "active": False})
    _poll(engine, once=True)
    runs_before = len(children.inputs)

    record = _poll(engine, once=False)

    assert record.result == {"project_id": "site", "status": "project_inactive", "iterations": 1}
    assert runs_before == 1
    assert list(children.inputs) == ["agent-site-3-1000"]


def test_missing_project_stops_loop(engine: WorkflowEngine, steps: PollSteps) -> None:
    steps.queue("fetch_items", {"found": False, "work_item_ids": []})

    record = _poll(engine, once=False)

    assert record.result == {"project_id": "site", "status": "project_removed", "iterations": 0}
    assert steps.names() == ["fetch_items"]


def test_loop_sleeps_between_passes_until_project_inactive(
    engine: WorkflowEngine, steps: PollSteps, clock: SteppingClock
) -> None:
    clock.step = 10.0
    steps.queue(
        "get_poll_interval",
        {"found": True, "active": True, "poll_interval_seconds": 5},
        {"found": True, "active": False},
    )

    record = _poll(engine, once=False)

    assert record.result == {"project_id": "site", "status": "project_inactive", "iterations": 2}
    assert steps.names().count("fetch_items") == 2
    assert steps.names().count("scan_followups") == 2


def test_loop_continues_as_new_at_iteration_cap(
    tmp_path: Path, steps: PollSteps, children: ChildRecorder
) -> None:
    eng = WorkflowEngine(
        WorkflowJournal(tmp_path / "journal.db"),
        clock=SteppingClock(step=10.0),
        sleeper=lambda _: None,
        cancel_poll_interval_seconds=0.02,
    )
    eng.register_workflow(
        REPOSITORY_POLL_WORKFLOW,
        RepositoryPoller(RuntimeConfig(base_dir=tmp_path, poll_iteration_cap=1)),
    )
    eng.register_workflow(AGENT_EXECUTION_WORKFLOW, children)
    steps.register(eng)
    steps.queue(
        "get_poll_interval",
        {"found": True, "active": True, "poll_interval_seconds": 5},
        {"found": False},
    )
    try:
        record = _poll(eng, once=False)
    finally:
        eng.shutdown(wait=True)

    assert record.continuation_count == 1
    assert record.result == {"project_id": "site", "status": "project_removed", "iterations": 1}


def test_item_and_scan_failures_do_not_stop_the_pass(
    engine: WorkflowEngine,
    steps: PollSteps,
    children: ChildRecorder,
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    steps.queue("fetch_items", {"found": True, "work_item_ids": [3, 4]})
    steps.actions = {3: NonRetryableStepError("db locked"), 4: "execute_agent"}
    steps.queue("scan_followups", NonRetryableStepError("GitHub down"))

    record = _poll(engine, once=True)

    assert record.status == "completed"
    assert list(children.inputs) == ["agent-site-4-1000"]
    err = capsys.readouterr().err
    assert "event=poll_item_failed project_id=site work_item_id=3" in err
    assert "event=followup_scan_failed project_id=site" in err
    assert "event=poll_iteration_completed" in err
    assert "dispatched=1" in err


def test_malformed_trigger_is_logged(
    engine: WorkflowEngine,
    steps: PollSteps,
    children: ChildRecorder,
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    steps.queue(
        "scan_followups",
        {"found": True, "triggers": ["junk", {"pr_number": 12, "types": []}]},
    )

    record = _poll(engine, once=True)

    assert record.status == "completed"
    assert list(children.inputs) == ["pr-followup-site-12-1000"]
    assert "event=poll_followup_failed project_id=site trigger=junk" in capsys.readouterr().err


def test_stopping_the_loop_interrupts_its_sleep(engine: WorkflowEngine, steps: PollSteps) -> None:
    steps.queue(
        "get_poll_interval", {"found": True, "active": True, "poll_interval_seconds": 3600}
    )
    engine.start_workflow(
        REPOSITORY_POLL_WORKFLOW, {"project_id": "site"}, workflow_id="github-poll-site"
    )
    for _ in range(500):
        if "get_poll_interval" in steps.names():
            break
        time.sleep(0.01)

    assert engine.cancel_workflow("github-poll-site") is True
    record = engine.wait("github-poll-site", timeout=10)

    assert record is not None
    assert record.status == "cancelled"


def test_helpers() -> None:
    assert _seconds(5) == 5.0
    assert _seconds(2.5) == 2.5
    for bad in (True, "5", None):
        with pytest.raises(ValueError, match="Invalid poll interval"):
            _seconds(bad)
    assert _int_list([1, "2", True, 3]) == [1, 3]
    assert _int_list("nope") == []
