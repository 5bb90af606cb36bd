"""Decide which agent-generated pull requests need another agent run.

Each open pull request carrying the project's generated label passes three gates (auto-scan on,
no active run for it, follow-up counter below the ceiling) and then has every signal evaluated
independently. A source error makes that one signal absent for this pass; any other error skips
the pull request and the scan moves on.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timezone
import logging
from typing import Final, TypeVar

from agentrelay.config import ProjectConfig
from agentrelay.github_gateway import GitHubApiError, GitHubGateway
from agentrelay.models import (
    CheckRunSnapshot,
    PullRequestIssueComment,
    PullRequestReview,
    PullRequestSnapshot,
    ReviewThread,
    Signal,
    Trigger,
    WorkItem,
)
from agentrelay.observability import log_event
from agentrelay.state import StateStore


LOGGER = logging.getLogger("agentrelay.followup_scanner")

FAILING_CONCLUSIONS: Final[frozenset[str]] = frozenset({"failure", "cancelled", "timed_out"})
DECISIVE_REVIEW_STATES: Final[frozenset[str]] = frozenset({"APPROVED", "CHANGES_REQUESTED"})
MIN_COMMENT_LENGTH: Final[int] = 20
_EXCERPT_LENGTH = 80

T = TypeVar("T")


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def failing_check_names(checks: Iterable[CheckRunSnapshot]) -> tuple[str, ...]:
    """Names of failed checks, or nothing at all while any check is still pending."""
    snapshot = tuple(checks)
    if any(check.conclusion is None for check in snapshot):
        return ()
    return tuple(check.name for check in snapshot if check.conclusion in FAILING_CONCLUSIONS)


def trusted_unresolved_threads(
    threads: Iterable[ReviewThread], project: ProjectConfig
) -> tuple[ReviewThread, ...]:
    return tuple(
        thread
        for thread in threads
        if not thread.is_resolved and project.allows(thread.author_login)
    )


def recent_trusted_comments(
    comments: Iterable[PullRequestIssueComment],
    project: ProjectConfig,
    cutoff: datetime | None,
) -> tuple[PullRequestIssueComment, ...]:
    out: list[PullRequestIssueComment] = []
    for comment in comments:
        if not project.allows(comment.user_login):
            continue
        if len(comment.body.strip()) < MIN_COMMENT_LENGTH:
            continue
        if cutoff is not None:
            created_at = parse_timestamp(comment.created_at)
            if created_at is None or created_at <= cutoff:
                continue
        out.append(comment)
    return tuple(out)


def changes_requested_reviewer(
    reviews: Iterable[PullRequestReview],
    project: ProjectConfig,
    cutoff: datetime | None,
) -> str | None:
    """Reviewer whose request for changes is the latest decisive trusted review, if any."""
    decisive: list[tuple[datetime, int, PullRequestReview]] = []
    for review in reviews:
        if review.state not in DECISIVE_REVIEW_STATES:
            continue
        if not project.allows(review.user_login):
            continue
        submitted_at = parse_timestamp(review.submitted_at)
        if submitted_at is None:
            continue
        decisive.append((submitted_at, review.review_id, review))
    if not decisive:
        return None
    submitted_at, _, latest = max(decisive, key=lambda entry: (entry[0], entry[1]))
    if latest.state != "CHANGES_REQUESTED":
        return None
    if cutoff is not None and submitted_at <= cutoff:
        return None
    return latest.user_login


def matching_action_labels(item: WorkItem, project: ProjectConfig) -> tuple[str, ...]:
    labels = set(item.labels)
    return tuple(label for label in project.pr_action_labels if label in labels)


class FollowupScanner:
    def __init__(self, store: StateStore, github: GitHubGateway) -> None:
        self._store = store
        self._github = github

    def scan(self, project: ProjectConfig, *, pass_key: str | None = None) -> list[Trigger]:
        """Evaluate every candidate pull request once.

        With a ``pass_key`` the counter increments are keyed per pull request, so repeating the
        same pass does not count a pull request twice.
        """
        if not project.auto_scan_prs:
            log_event(
                LOGGER,
                "followup_scan_completed",
                project_id=project.project_id,
                prs_scanned=0,
                prs_triggered=0,
                auto_scan=False,
            )
            return []

        candidates = self._store.list_open_generated_pull_requests(
            project.project_id, project.generated_label
        )
        triggers: list[Trigger] = []
        for item in candidates:
            try:
                trigger = self.scan_pull_request(project, item, pass_key=pass_key)
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning(
                    "event=followup_scan_pr_failed project_id=%s pr_number=%s "
                    "work_item_id=%s error_type=%s error=%s",
                    project.project_id,
                    item.number,
                    item.id,
                    type(exc).__name__,
                    exc,
                )
                continue
            if trigger is not None:
                triggers.append(trigger)

        log_event(
            LOGGER,
            "followup_scan_completed",
            project_id=project.project_id,
            prs_scanned=len(candidates),
            prs_triggered=len(triggers),
        )
        return triggers

    def scan_pull_request(
        self, project: ProjectConfig, item: WorkItem, *, pass_key: str | None = None
    ) -> Trigger | None:
        if self._store.has_active_run_for_pr(project.project_id, item.number):
            log_event(
                LOGGER,
                "followup_gate_skipped",
                pr_number=item.number,
                reason="active_run",
            )
            return None
        if item.followup_count >= project.max_pr_followup_runs:
            log_event(
                LOGGER,
                "followup_gate_skipped",
                pr_number=item.number,
                reason="followup_limit",
                followup_count=item.followup_count,
            )
            return None

        snapshot = self._signal_source(
            "pull_request", item, lambda: self._github.get_pull_request(item.number)
        )
        if snapshot is not None and snapshot.state == "closed":
            self._store.mark_work_item_closed(item.id)
            log_event(LOGGER, "followup_gate_skipped", pr_number=item.number, reason="closed")
            return None

        last_run = self._store.last_completed_run_for_pr(project.project_id, item.number)
        cutoff = parse_timestamp(last_run.completed_at) if last_run is not None else None
        signals = self._collect_signals(project, item, snapshot, cutoff)
        if not signals:
            return None

        self._count_followup(item, pass_key)
        trigger = Trigger(pr_number=item.number, work_item_id=item.id, signals=tuple(signals))
        self._remove_action_labels(item, trigger)
        log_event(
            LOGGER,
            "followup_triggers_detected",
            pr_number=item.number,
            work_item_id=item.id,
            signals=trigger.types,
        )
        return trigger

    def _collect_signals(
        self,
        project: ProjectConfig,
        item: WorkItem,
        snapshot: PullRequestSnapshot | None,
        cutoff: datetime | None,
    ) -> list[Signal]:
        signals: list[Signal] = []

        if snapshot is not None:
            checks = self._signal_source(
                "ci_failure", item, lambda: self._github.list_check_runs(snapshot.head_sha)
            )
            failing = failing_check_names(checks or ())
            if failing:
                signals.append(Signal(type="ci_failure", details=failing))

        threads = self._signal_source(
            "review_threads", item, lambda: self._github.list_review_threads(item.number)
        )
        trusted_threads = trusted_unresolved_threads(threads or (), project)
        if trusted_threads:
            signals.append(
                Signal(
                    type="review_threads",
                    details=tuple(thread.thread_id for thread in trusted_threads),
                )
            )

        comments = self._signal_source(
            "conversation_comments", item, lambda: self._github.list_issue_comments(item.number)
        )
        recent = recent_trusted_comments(comments or (), project, cutoff)
        if recent:
            signals.append(
                Signal(
                    type="conversation_comments",
                    details=tuple(_excerpt(comment.body) for comment in recent),
                )
            )

        reviews = self._signal_source(
            "changes_requested",
            item,
            lambda: self._github.list_pull_request_reviews(item.number),
        )
        reviewer = changes_requested_reviewer(reviews or (), project, cutoff)
        if reviewer is not None:
            signals.append(Signal(type="changes_requested", details=(reviewer,)))

        labels = matching_action_labels(item, project)
        if labels:
            signals.append(Signal(type="actionable_labels", details=labels))

        if (
            project.auto_fix_merge_conflicts
            and snapshot is not None
            and snapshot.mergeable is False
        ):
            signals.append(Signal(type="merge_conflicts"))

        return signals

    def _count_followup(self, item: WorkItem, pass_key: str | None) -> None:
        if pass_key is None:
            self._store.increment_followup_count(item.id)
            return
        counted, followup_count = self._store.record_followup_dispatch(
            item.id, f"{pass_key}:pr-{item.number}"
        )
        if not counted:
            log_event(
                LOGGER,
                "followup_already_counted",
                pr_number=item.number,
                followup_count=followup_count,
            )

    def _signal_source(self, signal: str, item: WorkItem, fetch: Callable[[], T]) -> T | None:
        try:
            return fetch()
        except GitHubApiError as exc:
            LOGGER.warning(
                "event=followup_signal_check_failed signal=%s pr_number=%s error=%s",
                signal,
                item.number,
                exc,
            )
            return None

    def _remove_action_labels(self, item: WorkItem, trigger: Trigger) -> None:
        for signal in trigger.signals:
            if signal.type != "actionable_labels":
                continue
            for label in signal.details:
                try:
                    self._github.remove_label(item.number, label)
                except GitHubApiError as exc:
                    LOGGER.warning(
                        "event=followup_remove_label_failed pr_number=%s label=%s error=%s",
                        item.number,
                        label,
                        exc,
                    )


def _excerpt(body: str) -> str:
    compact = " ".join(body.split())
    if len(compact) <= _EXCERPT_LENGTH:
        return compact
    return f"{compact[: _EXCERPT_LENGTH - 3]}..."
