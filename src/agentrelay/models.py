from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal


OrchestrationState = Literal["new", "planning", "in_progress", "completed", "failed"]
RunStatus = Literal[
    "pending",
    "provisioning",
    "running",
    "pushing",
    "creating_pr",
    "completed",
    "failed",
    "cancelled",
    "timeout",
]
RunMode = Literal["build", "plan"]
WorktreeStatus = Literal["active", "cleaned", "cleanup_failed"]
ActionName = Literal["execute_agent", "start_planning", "none"]
SignalType = Literal[
    "ci_failure",
    "review_threads",
    "conversation_comments",
    "changes_requested",
    "actionable_labels",
    "merge_conflicts",
]

AGENT_TYPES: Final[tuple[str, ...]] = (
    "claude_code",
    "cursor",
    "codex",
    "copilot",
    "aider",
    "gemini",
    "opencode",
    "kilocode",
    "api",
)

# Forward order of the non-terminal statuses.
ACTIVE_RUN_STATUSES: Final[tuple[RunStatus, ...]] = (
    "pending",
    "provisioning",
    "running",
    "pushing",
    "creating_pr",
)
TERMINAL_RUN_STATUSES: Final[tuple[RunStatus, ...]] = (
    "completed",
    "failed",
    "cancelled",
    "timeout",
)


@dataclass(frozen=True)
class Issue:
    """An open issue or pull request as reported by the repository host."""

    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    author_login: str = ""
    external_id: int | None = None
    is_pull_request: bool = False
    state: str = "open"


@dataclass(frozen=True)
class WorkItem:
    id: int
    project_id: str
    external_id: int | None
    number: int
    title: str
    body: str
    state: str
    labels: tuple[str, ...]
    orchestration_state: OrchestrationState
    creator_login: str
    followup_count: int
    is_pull_request: bool
    html_url: str
    parent_item_id: int | None = None
    claim_key: str | None = None


@dataclass(frozen=True)
class RunRecord:
    id: int
    project_id: str
    workflow_id: str
    work_item_id: int | None
    source_pr_number: int | None
    agent_type: str
    mode: RunMode
    status: RunStatus
    environment_ref: str | None
    checkout_path: str | None
    branch_name: str | None
    base_commit: str | None
    result_commit: str | None
    pr_number: int | None
    pr_url: str | None
    custom_prompt: str | None
    error: str | None
    completion_reason: str | None
    iterations: int | None
    duration_seconds: float | None
    input_tokens: int | None
    output_tokens: int | None
    cost_usd: float | None
    started_at: str | None
    completed_at: str | None
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def is_followup(self) -> bool:
        return self.source_pr_number is not None


@dataclass(frozen=True)
class WorktreeRecord:
    id: int
    project_id: str
    run_id: int | None
    path: str
    branch_name: str
    base_commit: str | None
    status: WorktreeStatus
    pushed: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    state: str
    html_url: str
    head_sha: str
    head_ref: str
    base_ref: str
    mergeable: bool | None
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class CheckRunSnapshot:
    check_run_id: int
    name: str
    status: str
    conclusion: str | None


@dataclass(frozen=True)
class ReviewThread:
    thread_id: str
    is_resolved: bool
    author_login: str
    body: str
    path: str | None


@dataclass(frozen=True)
class PullRequestIssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class PullRequestReview:
    review_id: int
    user_login: str
    state: str
    body: str
    submitted_at: str


@dataclass(frozen=True)
class Signal:
    type: SignalType
    details: tuple[str, ...] = ()


@dataclass(frozen=True)
class Trigger:
    """One follow-up decision for a merge request, bundling every signal that fired."""

    pr_number: int
    work_item_id: int
    signals: tuple[Signal, ...]

    @property
    def types(self) -> tuple[SignalType, ...]:
        return tuple(signal.type for signal in self.signals)

    @property
    def details(self) -> tuple[str, ...]:
        out: list[str] = []
        for signal in self.signals:
            out.extend(signal.details)
        return tuple(out)
