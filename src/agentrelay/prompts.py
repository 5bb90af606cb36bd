from __future__ import annotations

from dataclasses import dataclass

from agentrelay.models import CheckRunSnapshot, PullRequestIssueComment, ReviewThread, WorkItem


_RULES = """
Rules:
- Lint and tests MUST pass before every commit.
- Never use --no-verify or any flag that skips git hooks.
- Never disable linters to silence failures; fix the code instead.
- Work within the existing codebase style and conventions.
- Do not modify unrelated files.
- When you are done, commit all your changes. Do not push.
""".strip()


@dataclass(frozen=True)
class FollowupContext:
    """Everything gathered about an existing pull request before a follow-up run."""

    pr_number: int
    title: str
    body: str
    base_ref: str
    rebase_succeeded: bool
    failing_checks: tuple[CheckRunSnapshot, ...] = ()
    unresolved_threads: tuple[ReviewThread, ...] = ()
    trusted_comments: tuple[PullRequestIssueComment, ...] = ()
    changes_requested_by: tuple[str, ...] = ()
    action_labels: tuple[str, ...] = ()
    linked_item: WorkItem | None = None


def build_issue_prompt(*, item: WorkItem, repo_full_name: str, default_branch: str) -> str:
    return f"""
You are the coding agent for repository {repo_full_name}.

Task:
- Resolve issue #{item.number} with focused code changes.
- Base branch is: {default_branch}
- Analyze the issue and make the necessary code changes.
- Add or update tests covering the change.

{_RULES}

Issue title:
{item.title}

Issue URL:
{item.html_url}

Issue body:
{item.body}
""".strip()


def build_plan_prompt(*, item: WorkItem, repo_full_name: str, default_branch: str) -> str:
    return f"""
You are the planning agent for repository {repo_full_name}.

Task:
- Read the codebase and write an implementation plan for issue #{item.number}.
- Base branch is: {default_branch}
- Do not change any files.

Output requirements:
- Print the plan as markdown: approach, files to touch, risks, and test strategy.
- Keep it concrete and repository-relative.

Issue title:
{item.title}

Issue URL:
{item.html_url}

Issue body:
{item.body}
""".strip()


def build_custom_prompt(*, prompt: str, repo_full_name: str, default_branch: str) -> str:
    return f"""
You are the coding agent for repository {repo_full_name}.
Base branch is: {default_branch}

{prompt.strip()}

{_RULES}
""".strip()


def build_followup_prompt(*, context: FollowupContext, repo_full_name: str) -> str:
    sections = [
        f"""
You are the coding agent for repository {repo_full_name}, working on an existing pull request.

Pull request #{context.pr_number}: {context.title}
Base branch: {context.base_ref}

{context.body}
""".strip()
    ]

    priorities: list[str] = []
    if context.linked_item is not None:
        item = context.linked_item
        sections.append(
            f"""
Issue requirements:
This PR is linked to issue #{item.number}: {item.title}

{item.body}

Check whether the PR fully implements the issue and close any gaps.
""".strip()
        )
    if not context.rebase_succeeded:
        priorities.append("Resolve merge conflicts")
        sections.append(
            f"""
Merge conflicts:
Automatic rebase onto {context.base_ref} failed due to conflicts.
Run `git merge origin/{context.base_ref}` and resolve all conflicts.
""".strip()
        )
    if context.failing_checks:
        priorities.append("Fix CI failures")
        names = "\n".join(
            f"- {check.name} ({check.conclusion or 'unknown'})" for check in context.failing_checks
        )
        sections.append(
            "CI failures:\n"
            f"{names}\n"
            "Reproduce these failures locally and fix the underlying issue."
        )
    if context.linked_item is not None:
        priorities.append("Close implementation gaps against the linked issue")
    if context.unresolved_threads or context.changes_requested_by:
        priorities.append("Address code review feedback")
    if context.unresolved_threads:
        threads = "\n".join(
            f"- [{thread.path or 'general'}] {thread.author_login}: {thread.body.strip()}"
            for thread in context.unresolved_threads
        )
        sections.append(f"Unresolved review threads:\n{threads}")
    if context.changes_requested_by:
        reviewers = ", ".join(context.changes_requested_by)
        sections.append(f"Changes were requested by: {reviewers}")
    if context.trusted_comments:
        priorities.append("Address conversation comments")
        comments = "\n".join(
            f"- {comment.user_login}: {comment.body.strip()}"
            for comment in context.trusted_comments
        )
        sections.append(f"Conversation comments:\n{comments}")
    if context.action_labels:
        priorities.append("Handle the requested label actions")
        sections.append(
            "The PR was labeled for agent action: " + ", ".join(context.action_labels)
        )

    if priorities:
        ordered = "\n".join(f"{index}. {item}" for index, item in enumerate(priorities, start=1))
        sections.append(f"Priority order:\n{ordered}")
    sections.append(_RULES)
    return "\n\n".join(sections)


def build_plan_comment(*, plan: str, run_id: int) -> str:
    return f"Implementation plan (run {run_id}):\n\n{plan.strip()}"
