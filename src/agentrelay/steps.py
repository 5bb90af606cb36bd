from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from pathlib import Path
from typing import TypeVar, cast

from agentrelay.action_detector import detect_action
from agentrelay.agent_runner import AgentInvocation, AgentRunner, AgentTimeoutError
from agentrelay.config import AppConfig, ProjectConfig
from agentrelay.durable import NonRetryableStepError, StepFn, StepInvocation
from agentrelay.environment import EnvironmentProvisioner, branch_name_for
from agentrelay.followup_scanner import (
    FollowupScanner,
    changes_requested_reviewer,
    failing_check_names,
    matching_action_labels,
    parse_timestamp,
    recent_trusted_comments,
    trusted_unresolved_threads,
)
from agentrelay.github_gateway import GitHubApiError, GitHubGateway
from agentrelay.models import CheckRunSnapshot, Issue, RunMode, RunRecord, WorkItem
from agentrelay.observability import log_event
from agentrelay.prompts import (
    FollowupContext,
    build_custom_prompt,
    build_followup_prompt,
    build_issue_prompt,
    build_plan_comment,
    build_plan_prompt,
)
from agentrelay.state import StateStore, WorktreeConflictError


LOGGER = logging.getLogger("agentrelay.steps")

GitHubFactory = Callable[[ProjectConfig], GitHubGateway]
StepPayload = dict[str, object]
T = TypeVar("T")


class ExecutionSteps:
    """Every unit of work a run or poll loop performs, each safe to invoke again after a crash."""

    def __init__(
        self,
        *,
        store: StateStore,
        config: AppConfig,
        github_factory: GitHubFactory,
        provisioner: EnvironmentProvisioner,
        agent_runner: AgentRunner,
    ) -> None:
        self._store = store
        self._config = config
        self._github_factory = github_factory
        self._provisioner = provisioner
        self._agent_runner = agent_runner
        self._github_by_project: dict[str, GitHubGateway] = {}

    def registry(self) -> dict[str, StepFn]:
        return {
            "create_run": self.create_run,
            "provision_environment": self.provision_environment,
            "clone_and_branch": self.clone_and_branch,
            "rebase_branch": self.rebase_branch,
            "prepare_followup_prompt": self.prepare_followup_prompt,
            "run_agent": self.run_agent,
            "push_branch": self.push_branch,
            "create_pull_request": self.create_pull_request,
            "update_work_item": self.update_work_item,
            "complete_existing_pr_run": self.complete_existing_pr_run,
            "resolve_review_threads": self.resolve_review_threads,
            "post_plan": self.post_plan,
            "mark_run_complete": self.mark_run_complete,
            "mark_run_failed": self.mark_run_failed,
            "mark_run_cancelled": self.mark_run_cancelled,
            "cleanup_environment": self.cleanup_environment,
            "cleanup_worktree": self.cleanup_worktree,
            "fetch_items": self.fetch_items,
            "detect_action": self.detect_action,
            "scan_followups": self.scan_followups,
            "get_poll_interval": self.get_poll_interval,
        }

    # Run lifecycle

    def create_run(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        project_id = _require_str(payload, "project_id")
        project = self._require_project(project_id)
        work_item_id = _optional_int(payload, "work_item_id")
        source_pr_number = _optional_int(payload, "source_pr_number")
        mode = cast(RunMode, _optional_str(payload, "mode") or "build")
        run = self._store.create_run(
            project_id=project.project_id,
            workflow_id=invocation.workflow_id,
            execution_id=invocation.execution_id,
            agent_type=self._config.agent.resolve_type(_optional_str(payload, "agent_type")),
            mode=mode,
            work_item_id=work_item_id,
            source_pr_number=source_pr_number,
            custom_prompt=_optional_str(payload, "custom_prompt"),
        )
        if work_item_id is not None and source_pr_number is None:
            self._store.set_orchestration_state(
                work_item_id, "planning" if mode == "plan" else "in_progress"
            )
        log_event(
            LOGGER,
            "run_created",
            run_id=run.id,
            workflow_id=invocation.workflow_id,
            work_item_id=work_item_id,
            source_pr_number=source_pr_number,
            agent_type=run.agent_type,
            mode=mode,
        )
        return {"run_id": run.id}

    def provision_environment(
        self, payload: StepPayload, invocation: StepInvocation
    ) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        self._store.advance_run_status(run.id, "provisioning")
        environment = self._provisioner.provision(project, run.id)
        self._store.set_run_environment(
            run.id,
            environment_ref=environment.environment_ref,
            checkout_path=str(environment.checkout_path),
        )
        return {
            "environment_ref": environment.environment_ref,
            "checkout_path": str(environment.checkout_path),
        }

    def clone_and_branch(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        checkout_path = _require_checkout(run)
        base_ref = project.default_branch
        if run.source_pr_number is not None:
            snapshot = self._github(project).get_pull_request(run.source_pr_number)
            branch = snapshot.head_ref
            base_ref = snapshot.base_ref or project.default_branch
            existing_branch = True
        else:
            item = self._work_item(run)
            branch = run.branch_name or branch_name_for(
                run_id=run.id,
                number=item.number if item is not None else None,
                title=item.title if item is not None else None,
            )
            existing_branch = False

        base_commit = self._provisioner.clone_and_branch(
            project, checkout_path, branch=branch, existing_branch=existing_branch
        )
        self._store.set_run_git(run.id, branch_name=branch, base_commit=base_commit)
        try:
            self._store.claim_worktree(
                project_id=project.project_id,
                run_id=run.id,
                path=str(checkout_path),
                branch_name=branch,
                base_commit=base_commit,
            )
        except WorktreeConflictError as exc:
            raise NonRetryableStepError(str(exc)) from exc
        return {"branch_name": branch, "base_commit": base_commit, "base_ref": base_ref}

    def rebase_branch(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        base_ref = _require_str(payload, "base_ref")
        succeeded = self._provisioner.rebase_onto(_require_checkout(run), base_ref)
        return {"rebase_succeeded": succeeded}

    def prepare_followup_prompt(
        self, payload: StepPayload, invocation: StepInvocation
    ) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        if run.source_pr_number is None:
            raise NonRetryableStepError(f"Run {run.id} is not a follow-up run")
        github = self._github(project)
        pr_number = run.source_pr_number
        snapshot = github.get_pull_request(pr_number)

        last_run = self._store.last_completed_run_for_pr(project.project_id, pr_number)
        cutoff = parse_timestamp(last_run.completed_at) if last_run is not None else None
        checks: tuple[CheckRunSnapshot, ...] = _best_effort(
            "check_runs", lambda: github.list_check_runs(snapshot.head_sha), ()
        )
        failing_names = set(failing_check_names(checks))
        threads = _best_effort("review_threads", lambda: github.list_review_threads(pr_number), ())
        comments = _best_effort("issue_comments", lambda: github.list_issue_comments(pr_number), [])
        reviews = _best_effort(
            "reviews", lambda: github.list_pull_request_reviews(pr_number), []
        )
        reviewer = changes_requested_reviewer(reviews, project, cutoff)

        item = self._work_item(run)
        linked_item = None
        if item is not None and item.parent_item_id is not None:
            linked_item = self._store.get_work_item(item.parent_item_id)

        context = FollowupContext(
            pr_number=pr_number,
            title=snapshot.title,
            body=snapshot.body,
            base_ref=snapshot.base_ref or project.default_branch,
            rebase_succeeded=bool(payload.get("rebase_succeeded", True)),
            failing_checks=tuple(check for check in checks if check.name in failing_names),
            unresolved_threads=trusted_unresolved_threads(threads, project),
            trusted_comments=recent_trusted_comments(comments, project, cutoff),
            changes_requested_by=(reviewer,) if reviewer is not None else (),
            action_labels=matching_action_labels(item, project) if item is not None else (),
            linked_item=linked_item,
        )
        prompt = build_followup_prompt(context=context, repo_full_name=project.full_name)
        self._store.set_run_prompt(run.id, prompt)
        return {"prompt_chars": len(prompt)}

    def run_agent(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        prompt = self._resolve_prompt(run, project)
        self._store.advance_run_status(run.id, "running")
        token = self._store.ensure_run_token(run.id)
        try:
            outcome = self._agent_runner.run(
                AgentInvocation(
                    run_id=run.id,
                    agent_type=run.agent_type,
                    prompt=prompt,
                    checkout_path=_require_checkout(run),
                    run_token=token,
                    timeout_seconds=self._config.runtime.agent_timeout_seconds,
                )
            )
        except AgentTimeoutError as exc:
            raise NonRetryableStepError(f"Agent timed out: {exc}") from exc

        self._store.record_run_metrics(
            run.id,
            iterations=outcome.iterations,
            duration_seconds=outcome.duration_seconds,
            input_tokens=outcome.input_tokens,
            output_tokens=outcome.output_tokens,
            cost_usd=outcome.cost_usd,
        )
        if outcome.success and outcome.has_changes:
            self._store.set_run_git(
                run.id, result_commit=self._provisioner.head_sha(_require_checkout(run))
            )
        return {
            "success": outcome.success,
            "has_changes": outcome.has_changes,
            "summary": outcome.summary,
            "error": outcome.error,
        }

    def push_branch(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        if not run.branch_name:
            raise NonRetryableStepError(f"Run {run.id} has no branch to push")
        self._store.advance_run_status(run.id, "pushing")
        self._provisioner.push(
            _require_checkout(run), run.branch_name, force=run.source_pr_number is not None
        )
        self._store.mark_worktree_pushed(run.id)
        return {"branch_name": run.branch_name}

    def create_pull_request(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        if not run.branch_name:
            raise NonRetryableStepError(f"Run {run.id} has no branch for a pull request")
        self._store.advance_run_status(run.id, "creating_pr")
        github = self._github(project)
        item = self._work_item(run)

        pr = github.find_pull_request_by_head(head=run.branch_name, base=project.default_branch)
        created = pr is None
        if pr is None:
            title, body = _pull_request_text(run, item, str(payload.get("summary") or ""))
            pr = github.create_pull_request(
                title=title, head=run.branch_name, base=project.default_branch, body=body
            )
        self._store.set_run_pull_request(run.id, pr_number=pr.number, pr_url=pr.html_url)
        try:
            github.add_labels(pr.number, (project.generated_label,))
        except GitHubApiError as exc:
            LOGGER.warning(
                "event=generated_label_failed run_id=%s pr_number=%s error=%s",
                run.id,
                pr.number,
                exc,
            )
        return {"pr_number": pr.number, "pr_url": pr.html_url, "created": created}

    def update_work_item(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        pr_number = _require_int(payload, "pr_number")
        pr_url = _require_str(payload, "pr_url")
        self._store.complete_run(run.id, reason="pr_created", pr_number=pr_number, pr_url=pr_url)

        item = self._work_item(run)
        pr_item = self._store.upsert_work_item(
            project.project_id,
            Issue(
                number=pr_number,
                title=item.title if item is not None else f"Agent run {run.id}",
                body="",
                html_url=pr_url,
                labels=(project.generated_label,),
                is_pull_request=True,
            ),
        )
        if item is not None:
            self._store.set_work_item_parent(pr_item.id, item.id)
            self._store.set_orchestration_state(item.id, "completed")
            self._comment(project, item.number, f"Opened pull request {pr_url}", run_id=run.id)
        log_event(LOGGER, "run_completed", run_id=run.id, reason="pr_created", pr_number=pr_number)
        return {"pr_number": pr_number, "pr_url": pr_url}

    def complete_existing_pr_run(
        self, payload: StepPayload, invocation: StepInvocation
    ) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        if run.source_pr_number is None:
            raise NonRetryableStepError(f"Run {run.id} is not a follow-up run")
        snapshot = self._github(project).get_pull_request(run.source_pr_number)
        self._store.complete_run(
            run.id,
            reason="pr_updated",
            pr_number=snapshot.number,
            pr_url=snapshot.html_url,
        )
        self._comment(project, snapshot.number, "Agent pushed updates to this PR.", run_id=run.id)
        log_event(
            LOGGER,
            "run_completed",
            run_id=run.id,
            reason="pr_updated",
            pr_number=snapshot.number,
        )
        return {"pr_number": snapshot.number, "pr_url": snapshot.html_url}

    def resolve_review_threads(
        self, payload: StepPayload, invocation: StepInvocation
    ) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        if run.source_pr_number is None:
            return {"resolved": 0}
        github = self._github(project)
        resolved = 0
        try:
            threads = trusted_unresolved_threads(
                github.list_review_threads(run.source_pr_number), project
            )
            for thread in threads:
                github.resolve_review_thread(thread.thread_id)
                resolved += 1
        except GitHubApiError as exc:
            LOGGER.warning(
                "event=resolve_review_threads_failed run_id=%s pr_number=%s error=%s",
                run.id,
                run.source_pr_number,
                exc,
            )
        return {"resolved": resolved}

    def post_plan(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        project = self._require_project(run.project_id)
        item = self._work_item(run)
        plan = str(payload.get("summary") or "").strip()
        if item is not None and plan:
            self._github(project).post_issue_comment(
                item.number, build_plan_comment(plan=plan, run_id=run.id)
            )
        self._store.complete_run(run.id, reason="plan_posted")
        if item is not None:
            self._store.set_orchestration_state(item.id, "completed")
        log_event(LOGGER, "run_completed", run_id=run.id, reason="plan_posted")
        return {"posted": item is not None and bool(plan)}

    def mark_run_complete(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        reason = _optional_str(payload, "reason") or "completed"
        changed = self._store.complete_run(run.id, reason=reason)
        item = self._work_item(run)
        if changed and item is not None and run.source_pr_number is None:
            self._store.set_orchestration_state(item.id, "completed")
        log_event(LOGGER, "run_completed", run_id=run.id, reason=reason)
        return {"changed": changed}

    def mark_run_failed(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        error = _optional_str(payload, "error") or "unknown error"
        changed = self._store.fail_run(run.id, error)
        self._settle_item_after_abort(run.id)
        log_event(LOGGER, "run_failed", run_id=run.id, error=error)
        return {"changed": changed}

    def mark_run_cancelled(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run = self._require_run(payload)
        changed = self._store.cancel_run(run.id)
        self._settle_item_after_abort(run.id)
        log_event(LOGGER, "run_cancelled", run_id=run.id)
        return {"changed": changed}

    # Cleanup; never raises

    def cleanup_environment(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run_id = _require_int(payload, "run_id")
        try:
            run = self._store.get_run(run_id)
            if run is None or not run.environment_ref:
                return {"status": "skipped"}
            self._provisioner.release(run.environment_ref)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=cleanup_failed step=cleanup_environment run_id=%s error_type=%s error=%s",
                run_id,
                type(exc).__name__,
                exc,
            )
            return {"status": "failed", "error": str(exc)}
        log_event(LOGGER, "environment_released", run_id=run_id)
        return {"status": "released"}

    def cleanup_worktree(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        run_id = _require_int(payload, "run_id")
        try:
            worktree = self._store.get_worktree_for_run(run_id)
            if worktree is None or worktree.status != "active":
                return {"status": "skipped"}
            if self._provisioner.remove_checkout(Path(worktree.path)):
                self._store.mark_worktree_cleaned(worktree.id)
                status = "cleaned"
            else:
                self._store.mark_worktree_cleanup_failed(worktree.id)
                status = "cleanup_failed"
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning(
                "event=cleanup_failed step=cleanup_worktree run_id=%s error_type=%s error=%s",
                run_id,
                type(exc).__name__,
                exc,
            )
            return {"status": "failed", "error": str(exc)}
        log_event(LOGGER, "worktree_reconciled", run_id=run_id, status=status)
        return {"status": status}

    # Poll loop

    def fetch_items(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        project = self._store.get_project(_require_str(payload, "project_id"))
        if project is None:
            return {"found": False, "work_item_ids": []}
        github = self._github(project)
        items = github.list_open_items_with_any_labels(project.watched_labels)
        candidate_ids: list[int] = []
        for issue in items:
            item = self._store.upsert_work_item(project.project_id, issue)
            if not item.is_pull_request and item.orchestration_state == "new":
                candidate_ids.append(item.id)
        log_event(
            LOGGER,
            "items_fetched",
            project_id=project.project_id,
            fetched=len(items),
            candidates=len(candidate_ids),
        )
        return {"found": True, "work_item_ids": candidate_ids}

    def detect_action(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        action = detect_action(
            self._store,
            _require_str(payload, "project_id"),
            _require_int(payload, "work_item_id"),
            claim_key=invocation.idempotency_key,
        )
        return {"action": action}

    def scan_followups(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        project = self._store.get_project(_require_str(payload, "project_id"))
        if project is None:
            return {"found": False, "triggers": []}
        triggers = FollowupScanner(self._store, self._github(project)).scan(
            project, pass_key=invocation.idempotency_key
        )
        return {
            "found": True,
            "triggers": [
                {
                    "pr_number": trigger.pr_number,
                    "work_item_id": trigger.work_item_id,
                    "types": list(trigger.types),
                    "details": list(trigger.details),
                }
                for trigger in triggers
            ],
        }

    def get_poll_interval(self, payload: StepPayload, invocation: StepInvocation) -> StepPayload:
        project = self._store.get_project(_require_str(payload, "project_id"))
        if project is None:
            return {"found": False}
        return {
            "found": True,
            "active": project.active,
            "poll_interval_seconds": project.poll_interval_seconds,
        }

    # Helpers

    def _github(self, project: ProjectConfig) -> GitHubGateway:
        github = self._github_by_project.get(project.project_id)
        if github is None:
            github = self._github_factory(project)
            self._github_by_project[project.project_id] = github
        return github

    def _require_project(self, project_id: str) -> ProjectConfig:
        project = self._store.get_project(project_id)
        if project is None:
            raise NonRetryableStepError(f"Unknown project {project_id!r}")
        return project

    def _require_run(self, payload: Mapping[str, object]) -> RunRecord:
        run_id = _require_int(payload, "run_id")
        run = self._store.get_run(run_id)
        if run is None:
            raise NonRetryableStepError(f"Unknown run id {run_id}")
        return run

    def _work_item(self, run: RunRecord) -> WorkItem | None:
        if run.work_item_id is None:
            return None
        return self._store.get_work_item(run.work_item_id)

    def _resolve_prompt(self, run: RunRecord, project: ProjectConfig) -> str:
        if run.source_pr_number is not None:
            if not run.custom_prompt:
                raise NonRetryableStepError(f"Follow-up run {run.id} has no prepared prompt")
            return run.custom_prompt
        if run.custom_prompt:
            return build_custom_prompt(
                prompt=run.custom_prompt,
                repo_full_name=project.full_name,
                default_branch=project.default_branch,
            )
        item = self._work_item(run)
        if item is None:
            raise NonRetryableStepError(f"No prompt available for run {run.id}")
        if not project.allows(item.creator_login):
            raise NonRetryableStepError(
                f"Refusing to run agent for issue #{item.number} opened by untrusted user "
                f"{item.creator_login or '<unknown>'!r}"
            )
        build = build_plan_prompt if run.mode == "plan" else build_issue_prompt
        return build(
            item=item, repo_full_name=project.full_name, default_branch=project.default_branch
        )

    def _settle_item_after_abort(self, run_id: int) -> None:
        # Only a run that actually ended failed or cancelled releases its item as failed.
        run = self._store.get_run(run_id)
        if run is None or run.status not in ("failed", "cancelled"):
            return
        if run.work_item_id is None or run.source_pr_number is not None:
            return
        self._store.set_orchestration_state(run.work_item_id, "failed")

    def _comment(self, project: ProjectConfig, number: int, body: str, *, run_id: int) -> None:
        try:
            self._github(project).post_issue_comment(number, body)
        except GitHubApiError as exc:
            LOGGER.warning(
                "event=run_comment_failed run_id=%s issue_number=%s error=%s",
                run_id,
                number,
                exc,
            )


def _pull_request_text(run: RunRecord, item: WorkItem | None, summary: str) -> tuple[str, str]:
    if item is not None:
        title = item.title
        body = f"Closes #{item.number}\n\nAutomated changes from agent run {run.id}."
    else:
        title = f"Agent changes from run {run.id}"
        body = f"Automated changes from agent run {run.id}."
    if summary.strip():
        body = f"{body}\n\nAgent summary:\n{summary.strip()}"
    return title, body


def _best_effort(source: str, fetch: Callable[[], T], default: T) -> T:
    try:
        return fetch()
    except GitHubApiError as exc:
        LOGGER.warning("event=followup_context_unavailable source=%s error=%s", source, exc)
        return default


def _require_checkout(run: RunRecord) -> Path:
    if not run.checkout_path:
        raise NonRetryableStepError(f"Run {run.id} has no provisioned checkout")
    return Path(run.checkout_path)


def _require_str(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise NonRetryableStepError(f"Step payload field {key!r} must be a non-empty string")
    return value


def _optional_str(payload: Mapping[str, object], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise NonRetryableStepError(f"Step payload field {key!r} must be a string")
    return value or None


def _require_int(payload: Mapping[str, object], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise NonRetryableStepError(f"Step payload field {key!r} must be an integer")
    return value


def _optional_int(payload: Mapping[str, object], key: str) -> int | None:
    if payload.get(key) is None:
        return None
    return _require_int(payload, key)
