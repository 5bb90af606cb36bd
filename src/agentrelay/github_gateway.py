from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
from typing import Literal, cast
from urllib.parse import quote, urlencode

from agentrelay.models import (
    CheckRunSnapshot,
    Issue,
    PullRequest,
    PullRequestIssueComment,
    PullRequestReview,
    PullRequestSnapshot,
    ReviewThread,
)
from agentrelay.observability import log_event
from agentrelay.shell import CommandError, run


LOGGER = logging.getLogger("agentrelay.github_gateway")

_REVIEW_THREADS_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          path
          comments(first: 1) {
            nodes {
              body
              author { login }
            }
          }
        }
      }
    }
  }
}
"""

_RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) {
    thread { id isResolved }
  }
}
"""


class GitHubApiError(RuntimeError):
    """GitHub could not be reached or answered with something unusable."""


class GitHubPollingError(GitHubApiError):
    """Recoverable GitHub read failure; caller should retry next poll."""


class GitHubRateLimitError(GitHubApiError):
    pass


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_items_with_any_labels(self, labels: tuple[str, ...]) -> list[Issue]:
        """Open issues and pull requests carrying at least one of ``labels``, by number."""
        deduped: dict[int, Issue] = {}
        for label in labels:
            for item in self.list_open_items_with_label(label):
                existing = deduped.get(item.number)
                if existing is None:
                    deduped[item.number] = item
                    continue
                merged_labels: list[str] = list(existing.labels)
                for candidate in item.labels:
                    if candidate not in merged_labels:
                        merged_labels.append(candidate)
                deduped[item.number] = Issue(
                    number=item.number,
                    title=item.title,
                    body=item.body,
                    html_url=item.html_url,
                    labels=tuple(merged_labels),
                    author_login=existing.author_login or item.author_login,
                    external_id=existing.external_id or item.external_id,
                    is_pull_request=existing.is_pull_request or item.is_pull_request,
                    state=item.state,
                )

        items = [deduped[number] for number in sorted(deduped)]
        log_event(
            LOGGER,
            "issues_deduped",
            fetched_label_count=len(labels),
            deduped_issue_count=len(items),
        )
        return items

    def list_open_items_with_label(self, label: str) -> list[Issue]:
        query = urlencode({"state": "open", "labels": label, "per_page": "100"})
        path = f"/repos/{self.owner}/{self.name}/issues?{query}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list for issues")

        items: list[Issue] = []
        for entry in payload:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            items.append(_parse_issue(entry_obj))
        log_event(
            LOGGER,
            "github_read",
            endpoint="issues",
            label=label,
            count=len(items),
        )
        return items

    def create_pull_request(self, title: str, head: str, base: str, body: str) -> PullRequest:
        path = f"/repos/{self.owner}/{self.name}/pulls"
        try:
            payload = self._api_json(
                "POST",
                path,
                payload={"title": title, "head": head, "base": base, "body": body},
            )
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise GitHubApiError("Unexpected GitHub response: expected object for PR")
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def find_pull_request_by_head(
        self,
        *,
        head: str,
        base: str | None = None,
        state: Literal["open", "all"] = "open",
    ) -> PullRequest | None:
        if state not in {"open", "all"}:
            raise ValueError("state must be 'open' or 'all'")
        query_items: dict[str, str] = {
            "state": state,
            "head": f"{self.owner}:{head}",
            "per_page": "100",
        }
        if base is not None:
            query_items["base"] = base
        path = f"/repos/{self.owner}/{self.name}/pulls?{urlencode(query_items)}"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError(
                "Unexpected GitHub response: expected list for pull request lookup"
            )

        candidates: list[PullRequest] = []
        for entry in payload:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            candidates.append(
                PullRequest(
                    number=_as_int(entry_obj.get("number"), field="number"),
                    html_url=_as_string(entry_obj.get("html_url")),
                )
            )

        selected = max(candidates, key=lambda pr: pr.number) if candidates else None
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            base=base,
            state=state,
            found=selected is not None,
            pr_number=selected.number if selected is not None else None,
        )
        return selected

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base")

        mergeable_raw = payload_obj.get("mergeable")
        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            body=_as_string(payload_obj.get("body")),
            state=_as_string(payload_obj.get("state")).strip().lower(),
            html_url=_as_string(payload_obj.get("html_url")),
            head_sha=_as_string(head.get("sha")),
            head_ref=_as_string(head.get("ref")),
            base_ref=_as_string(base.get("ref")),
            mergeable=mergeable_raw if isinstance(mergeable_raw, bool) else None,
            labels=_label_names(payload_obj.get("labels")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable=snapshot.mergeable,
        )
        return snapshot

    def list_check_runs(self, head_sha: str) -> tuple[CheckRunSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?per_page=100"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for check runs")
        runs_payload = payload_obj.get("check_runs")
        if not isinstance(runs_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected check_runs list")

        checks: list[CheckRunSnapshot] = []
        for entry in runs_payload:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            checks.append(
                CheckRunSnapshot(
                    check_run_id=_as_int(entry_obj.get("id"), field="id"),
                    name=_as_string(entry_obj.get("name")),
                    status=_as_string(entry_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(entry_obj.get("conclusion")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="check_runs",
            head_sha=head_sha,
            count=len(checks),
        )
        return tuple(sorted(checks, key=lambda check: check.check_run_id))

    def list_review_threads(self, pr_number: int) -> tuple[ReviewThread, ...]:
        data = self._api_graphql(
            _REVIEW_THREADS_QUERY,
            strings={"owner": self.owner, "name": self.name},
            integers={"number": pr_number},
        )
        repository = _as_object_dict(data.get("repository"))
        pull_request = _as_object_dict(repository.get("pullRequest")) if repository else None
        threads_obj = _as_object_dict(pull_request.get("reviewThreads")) if pull_request else None
        nodes = threads_obj.get("nodes") if threads_obj else None
        if not isinstance(nodes, list):
            raise GitHubApiError("Unexpected GitHub response: expected reviewThreads nodes")

        threads: list[ReviewThread] = []
        for node in nodes:
            node_obj = _as_object_dict(node)
            if node_obj is None:
                continue
            author_login = ""
            body = ""
            comments_obj = _as_object_dict(node_obj.get("comments"))
            comment_nodes = comments_obj.get("nodes") if comments_obj else None
            if isinstance(comment_nodes, list) and comment_nodes:
                first = _as_object_dict(comment_nodes[0])
                if first is not None:
                    author = _as_object_dict(first.get("author"))
                    author_login = _as_login(author.get("login") if author else None)
                    body = _as_string(first.get("body"))
            threads.append(
                ReviewThread(
                    thread_id=_as_string(node_obj.get("id")),
                    is_resolved=node_obj.get("isResolved") is True,
                    author_login=author_login,
                    body=body,
                    path=_as_optional_str(node_obj.get("path")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="review_threads",
            pr_number=pr_number,
            count=len(threads),
        )
        return tuple(threads)

    def list_issue_comments(
        self,
        issue_number: int,
        *,
        since: str | None = None,
    ) -> list[PullRequestIssueComment]:
        comments: list[PullRequestIssueComment] = []
        page = 1
        while True:
            query_items: dict[str, object] = {"per_page": 100, "page": page}
            if since is not None:
                query_items["since"] = since
            path = (
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?"
                f"{urlencode(query_items)}"
            )
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubApiError("Unexpected GitHub response: expected list of issue comments")

            for entry in payload:
                entry_obj = _as_object_dict(entry)
                if entry_obj is None:
                    continue
                user_obj = _as_object_dict(entry_obj.get("user"))
                comments.append(
                    PullRequestIssueComment(
                        comment_id=_as_int(entry_obj.get("id"), field="id"),
                        body=_as_string(entry_obj.get("body")),
                        user_login=_as_login(user_obj.get("login") if user_obj else None),
                        html_url=_as_string(entry_obj.get("html_url")),
                        created_at=_as_string(entry_obj.get("created_at")),
                        updated_at=_as_string(entry_obj.get("updated_at")),
                    )
                )
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            since=since,
            count=len(comments),
        )
        return comments

    def list_pull_request_reviews(self, pr_number: int) -> list[PullRequestReview]:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/reviews?per_page=100"
        payload = self._api_json("GET", path)
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of reviews")

        reviews: list[PullRequestReview] = []
        for entry in payload:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            user_obj = _as_object_dict(entry_obj.get("user"))
            reviews.append(
                PullRequestReview(
                    review_id=_as_int(entry_obj.get("id"), field="id"),
                    user_login=_as_login(user_obj.get("login") if user_obj else None),
                    state=_as_string(entry_obj.get("state")).strip().upper(),
                    body=_as_string(entry_obj.get("body")),
                    submitted_at=_as_string(entry_obj.get("submitted_at")),
                )
            )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_reviews",
            pr_number=pr_number,
            count=len(reviews),
        )
        return reviews

    def add_labels(self, issue_number: int, labels: tuple[str, ...]) -> None:
        if not labels:
            return
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": list(labels)})
        log_event(LOGGER, "github_labels_added", issue_number=issue_number, labels=labels)

    def remove_label(self, issue_number: int, label: str) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/"
            f"{quote(label, safe='')}"
        )
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def resolve_review_thread(self, thread_id: str) -> None:
        self._api_graphql(_RESOLVE_THREAD_MUTATION, strings={"threadId": thread_id})
        log_event(LOGGER, "github_review_thread_resolved", thread_id=thread_id)

    def _api_graphql(
        self,
        query: str,
        *,
        strings: dict[str, str] | None = None,
        integers: dict[str, int] | None = None,
    ) -> dict[str, object]:
        cmd = ["gh", "api", "graphql", "-f", f"query={query}"]
        for key, value in (strings or {}).items():
            cmd.extend(["-f", f"{key}={value}"])
        for key, int_value in (integers or {}).items():
            cmd.extend(["-F", f"{key}={int_value}"])
        try:
            raw = run(cmd)
            payload = json.loads(raw)
        except (CommandError, json.JSONDecodeError) as exc:
            log_event(
                LOGGER,
                "github_graphql_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise GitHubApiError(f"GitHub GraphQL request failed: {exc}") from exc
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for GraphQL")
        errors = payload_obj.get("errors")
        if isinstance(errors, list) and errors:
            raise GitHubApiError(f"GitHub GraphQL returned errors: {_preview_for_log(str(errors))}")
        data = _as_object_dict(payload_obj.get("data"))
        if data is None:
            raise GitHubApiError("Unexpected GitHub response: GraphQL payload missing data")
        return data

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    cached_payload = self._cached_get_payload_by_path.get(path)
                    if cached_payload is None:
                        raise GitHubApiError(f"GitHub returned 304 for uncached path: {path}")
                    return cached_payload

                if _is_rate_limited(status_code, headers):
                    raise GitHubRateLimitError(
                        f"GitHub rate limit exceeded (status {status_code}, "
                        f"reset={headers.get('x-ratelimit-reset', '?')})"
                    )

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise GitHubApiError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._etags_by_path[path] = etag
                    self._cached_get_payload_by_path[path] = payload_obj
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                if isinstance(exc, GitHubRateLimitError):
                    raise
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        try:
            raw = run(cmd, input_text=stdin_payload)
        except CommandError as exc:
            raise GitHubApiError(f"GitHub {method_upper} failed for path {path}: {exc}") from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(
                f"Unexpected GitHub response for {method_upper} {path}: {_preview_for_log(raw)}"
            ) from exc


def _parse_issue(entry_obj: dict[str, object]) -> Issue:
    user_obj = _as_object_dict(entry_obj.get("user"))
    raw_id = entry_obj.get("id")
    return Issue(
        number=_as_int(entry_obj.get("number"), field="number"),
        title=_as_string(entry_obj.get("title")),
        body=_as_string(entry_obj.get("body")),
        html_url=_as_string(entry_obj.get("html_url")),
        labels=_label_names(entry_obj.get("labels")),
        author_login=_as_login(user_obj.get("login") if user_obj else None),
        external_id=_as_int(raw_id, field="id") if raw_id is not None else None,
        # The issues endpoint also returns pull requests, tagged with this key.
        is_pull_request="pull_request" in entry_obj,
        state=_as_string(entry_obj.get("state")).strip().lower() or "open",
    )


def _label_names(labels_obj: object) -> tuple[str, ...]:
    names: list[str] = []
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                names.append(name)
    return tuple(names)


def _is_rate_limited(status_code: int, headers: dict[str, str]) -> bool:
    if status_code == 429:
        return True
    return status_code == 403 and headers.get("x-ratelimit-remaining") == "0"


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")
