from __future__ import annotations

import json
from pathlib import Path
from urllib.parse import parse_qs, urlparse

import pytest

from agentrelay import github_gateway
from agentrelay.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    GitHubPollingError,
    GitHubRateLimitError,
    _as_int,
    _as_login,
    _parse_http_response,
    _preview_for_log,
)
from agentrelay.models import Issue
from agentrelay.shell import CommandError


def _http(status: int, body: object, **headers: str) -> str:
    header_lines = "".join(f"{key}: {value}\r\n" for key, value in headers.items())
    text = body if isinstance(body, str) else json.dumps(body)
    return f"HTTP/2 {status} OK\r\n{header_lines}\r\n{text}"


class _FakeRun:
    """Replays queued ``gh`` outputs and records every invocation."""

    def __init__(self, *outputs: str | Exception) -> None:
        self.outputs = list(outputs)
        self.calls: list[tuple[list[str], str | None, bool]] = []

    def __call__(
        self,
        argv: list[str],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
        timeout_seconds: float | None = None,
        env: object = None,
    ) -> str:
        _ = cwd, timeout_seconds, env
        self.calls.append((argv, input_text, check))
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return output


def _install(monkeypatch: pytest.MonkeyPatch, *outputs: str | Exception) -> _FakeRun:
    fake = _FakeRun(*outputs)
    monkeypatch.setattr(github_gateway, "run", fake)
    return fake


def test_list_open_items_with_any_labels_dedupes(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("acme", "site")

    def fake_list(self: GitHubGateway, label: str) -> list[Issue]:
        _ = self
        if label == "agent:build":
            return [
                Issue(2, "Two", "b", "u2", ("agent:build",), author_login="alice", external_id=20),
                Issue(1, "One", "b", "u1", ("agent:build",), author_login="bob"),
            ]
        return [Issue(2, "Two", "b", "u2", ("agent-generated",), is_pull_request=True)]

    monkeypatch.setattr(GitHubGateway, "list_open_items_with_label", fake_list)

    items = gateway.list_open_items_with_any_labels(("agent:build", "agent-generated"))

    assert [item.number for item in items] == [1, 2]
    assert items[1].labels == ("agent:build", "agent-generated")
    assert items[1].author_login == "alice"
    assert items[1].external_id == 20
    assert items[1].is_pull_request is True


def test_list_open_items_with_label_parses_issues_and_pull_requests(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    fake = _install(
        monkeypatch,
        _http(
            200,
            [
                {
                    "id": 901,
                    "number": 7,
                    "title": "Fix it",
                    "body": None,
                    "html_url": "https://github.com/acme/site/issues/7",
                    "state": "open",
                    "user": {"login": "  Alice "},
                    "labels": [{"name": "agent:build"}, 3],
                },
                {"number": 8, "pull_request": {"url": "x"}, "user": None},
                "skip",
            ],
        ),
    )

    items = GitHubGateway("acme", "site").list_open_items_with_label("agent:build")

    argv, input_text, check = fake.calls[0]
    assert argv[:4] == ["gh", "api", "--method", "GET"]
    assert "--include" in argv
    params = parse_qs(urlparse(argv[-1]).query)
    assert params == {"state": ["open"], "labels": ["agent:build"], "per_page": ["100"]}
    assert input_text is None
    assert check is False

    assert [item.number for item in items] == [7, 8]
    assert items[0].body == ""
    assert items[0].author_login == "alice"
    assert items[0].labels == ("agent:build",)
    assert items[0].external_id == 901
    assert items[0].is_pull_request is False
    assert items[1].is_pull_request is True
    assert items[1].external_id is None
    assert items[1].state == "open"


def test_get_requests_use_etag_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(
        monkeypatch,
        _http(200, [], etag='W/"abc"'),
        "HTTP/2 304 Not Modified\r\netag: W/\"abc\"\r\n\r\n",
    )
    gateway = GitHubGateway("acme", "site")

    assert gateway.list_open_items_with_label("x") == []
    assert gateway.list_open_items_with_label("x") == []

    second_argv = fake.calls[1][0]
    assert "If-None-Match: W/\"abc\"" in second_argv


def test_get_304_without_cache_is_polling_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, "HTTP/2 304 Not Modified\r\n\r\n")

    with pytest.raises(GitHubPollingError, match="304 for uncached path"):
        GitHubGateway("acme", "site").get_pull_request(3)


@pytest.mark.parametrize(
    "raw",
    [
        _http(429, {"message": "slow down"}),
        _http(403, {"message": "limit"}, **{"x-ratelimit-remaining": "0"}),
    ],
)
def test_rate_limits_are_distinguished(monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
    _install(monkeypatch, raw)

    with pytest.raises(GitHubRateLimitError, match="rate limit exceeded"):
        GitHubGateway("acme", "site").list_pull_request_reviews(3)


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        (_http(500, "boom"), "status 500: boom"),
        (_http(403, {"message": "forbidden"}), "status 403"),
        ("no status line", "missing HTTP status line"),
        (_http(200, "{not json"), "Expecting property name"),
    ],
)
def test_failed_reads_become_polling_errors(
    monkeypatch: pytest.MonkeyPatch, raw: str, message: str
) -> None:
    _install(monkeypatch, raw)

    with pytest.raises(GitHubPollingError, match=message):
        GitHubGateway("acme", "site").list_check_runs("abc")


def test_create_pull_request_sends_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(monkeypatch, json.dumps({"number": "12", "html_url": "https://x/pull/12"}))

    pr = GitHubGateway("acme", "site").create_pull_request(
        "Fix it", "agent/7-fix-it-r1", "main", "Closes #7"
    )

    assert pr.number == 12
    assert pr.html_url == "https://x/pull/12"
    argv, input_text, _ = fake.calls[0]
    assert argv == ["gh", "api", "--method", "POST", "/repos/acme/site/pulls", "--input", "-"]
    assert input_text is not None
    assert json.loads(input_text) == {
        "title": "Fix it",
        "head": "agent/7-fix-it-r1",
        "base": "main",
        "body": "Closes #7",
    }


def test_create_pull_request_wraps_command_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, CommandError("422 head already has a PR"))

    with pytest.raises(GitHubApiError, match="GitHub POST failed"):
        GitHubGateway("acme", "site").create_pull_request("t", "h", "main", "b")


def test_find_pull_request_by_head_picks_newest(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(
        monkeypatch,
        _http(200, [{"number": 9, "html_url": "u9"}, {"number": 11, "html_url": "u11"}]),
    )

    pr = GitHubGateway("acme", "site").find_pull_request_by_head(
        head="agent/7-r1", base="main", state="all"
    )

    assert pr is not None and pr.number == 11
    params = parse_qs(urlparse(fake.calls[0][0][-1]).query)
    assert params["head"] == ["acme:agent/7-r1"]
    assert params["base"] == ["main"]
    assert params["state"] == ["all"]


def test_find_pull_request_by_head_validates_state() -> None:
    with pytest.raises(ValueError, match="state must be"):
        GitHubGateway("acme", "site").find_pull_request_by_head(
            head="h", state="closed"  # type: ignore[arg-type]
        )


def test_get_pull_request_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _http(
            200,
            {
                "number": 12,
                "title": "Fix it",
                "body": "Closes #7",
                "state": "OPEN",
                "html_url": "https://x/pull/12",
                "mergeable": None,
                "head": {"sha": "abc", "ref": "agent/7-r1"},
                "base": {"ref": "main"},
                "labels": [{"name": "agent-generated"}],
            },
        ),
    )

    snapshot = GitHubGateway("acme", "site").get_pull_request(12)

    assert snapshot.state == "open"
    assert snapshot.head_sha == "abc"
    assert snapshot.head_ref == "agent/7-r1"
    assert snapshot.base_ref == "main"
    assert snapshot.mergeable is None
    assert snapshot.labels == ("agent-generated",)


def test_list_check_runs_sorts_and_normalizes(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _http(
            200,
            {
                "check_runs": [
                    {"id": 5, "name": "lint", "status": "COMPLETED", "conclusion": "FAILURE"},
                    {"id": 2, "name": "unit", "status": "in_progress", "conclusion": None},
                ]
            },
        ),
    )

    checks = GitHubGateway("acme", "site").list_check_runs("abc")

    assert [check.check_run_id for check in checks] == [2, 5]
    assert checks[0].conclusion is None
    assert checks[1].status == "completed"
    assert checks[1].conclusion == "failure"


def test_list_issue_comments_paginates(monkeypatch: pytest.MonkeyPatch) -> None:
    page_one = [
        {
            "id": index,
            "body": f"comment {index}",
            "user": {"login": "Alice"},
            "html_url": f"u{index}",
            "created_at": "2026-01-01T00:00:00Z",
            "updated_at": "2026-01-01T00:00:00Z",
        }
        for index in range(100)
    ]
    fake = _install(monkeypatch, _http(200, page_one), _http(200, page_one[:1]))

    comments = GitHubGateway("acme", "site").list_issue_comments(12, since="2026-01-01T00:00:00Z")

    assert len(comments) == 101
    assert comments[0].user_login == "alice"
    pages = [parse_qs(urlparse(call[0][-1]).query)["page"] for call in fake.calls]
    assert pages == [["1"], ["2"]]
    assert parse_qs(urlparse(fake.calls[0][0][-1]).query)["since"] == ["2026-01-01T00:00:00Z"]


def test_list_pull_request_reviews(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        _http(
            200,
            [
                {
                    "id": 1,
                    "user": {"login": "Bob"},
                    "state": "changes_requested",
                    "body": "",
                    "submitted_at": "2026-01-02T00:00:00Z",
                }
            ],
        ),
    )

    (review,) = GitHubGateway("acme", "site").list_pull_request_reviews(12)

    assert review.user_login == "bob"
    assert review.state == "CHANGES_REQUESTED"


def test_review_threads_via_graphql(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(
        monkeypatch,
        json.dumps(
            {
                "data": {
                    "repository": {
                        "pullRequest": {
                            "reviewThreads": {
                                "nodes": [
                                    {
                                        "id": "T1",
                                        "isResolved": False,
                                        "path": "src/app.py",
                                        "comments": {
                                            "nodes": [
                                                {"body": "Rename", "author": {"login": "Bob"}}
                                            ]
                                        },
                                    },
                                    {"id": "T2", "isResolved": True, "path": None},
                                ]
                            }
                        }
                    }
                }
            }
        ),
    )

    threads = GitHubGateway("acme", "site").list_review_threads(12)

    argv = fake.calls[0][0]
    assert argv[:3] == ["gh", "api", "graphql"]
    assert "owner=acme" in argv
    assert "number=12" in argv
    assert threads[0].author_login == "bob"
    assert threads[0].body == "Rename"
    assert threads[0].is_resolved is False
    assert threads[1].is_resolved is True
    assert threads[1].path is None
    assert threads[1].author_login == ""


@pytest.mark.parametrize(
    ("output", "message"),
    [
        (json.dumps({"errors": [{"message": "bad"}]}), "returned errors"),
        (json.dumps({"data": None}), "missing data"),
        (json.dumps([1]), "expected object for GraphQL"),
        ("not json", "GraphQL request failed"),
        (CommandError("gh failed"), "GraphQL request failed"),
        (json.dumps({"data": {"repository": None}}), "expected reviewThreads nodes"),
    ],
)
def test_graphql_failures(
    monkeypatch: pytest.MonkeyPatch, output: str | Exception, message: str
) -> None:
    _install(monkeypatch, output)

    with pytest.raises(GitHubApiError, match=message):
        GitHubGateway("acme", "site").list_review_threads(12)


def test_label_and_comment_writes(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(monkeypatch, "[]", "", "{}", json.dumps({"data": {"resolve": {}}}))
    gateway = GitHubGateway("acme", "site")

    gateway.add_labels(12, ())
    gateway.add_labels(12, ("agent-generated",))
    gateway.remove_label(12, "agent:fix now")
    gateway.post_issue_comment(7, "Opened pull request https://x/pull/12")
    gateway.resolve_review_thread("T1")

    assert fake.calls[0][0][3:5] == ["POST", "/repos/acme/site/issues/12/labels"]
    assert json.loads(fake.calls[0][1] or "") == {"labels": ["agent-generated"]}
    assert fake.calls[1][0][3:5] == [
        "DELETE",
        "/repos/acme/site/issues/12/labels/agent%3Afix%20now",
    ]
    assert fake.calls[1][1] is None
    assert fake.calls[2][0][4] == "/repos/acme/site/issues/7/comments"
    assert "threadId=T1" in fake.calls[3][0]


def test_non_get_rejects_unparseable_output(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, "<html>")

    with pytest.raises(GitHubApiError, match="Unexpected GitHub response for POST"):
        GitHubGateway("acme", "site").post_issue_comment(7, "hi")


def test_parse_http_response_uses_last_status_block() -> None:
    raw = "HTTP/1.1 100 Continue\r\n\r\nHTTP/2 200 OK\r\nETag: x\r\nbad-header\r\n\r\n[1]"
    assert _parse_http_response(raw) == (200, {"etag": "x"}, "[1]")

    with pytest.raises(GitHubApiError, match="status line"):
        _parse_http_response("HTTP/2")
    with pytest.raises(GitHubApiError, match="status line"):
        _parse_http_response("HTTP/2 abc")


def test_scalar_helpers() -> None:
    assert _as_int("5", field="n") == 5
    with pytest.raises(GitHubApiError):
        _as_int(True, field="n")
    with pytest.raises(GitHubApiError):
        _as_int("x", field="n")
    with pytest.raises(GitHubApiError):
        _as_int(None, field="n")
    assert _as_login("  Bob ") == "bob"
    assert _as_login(None) == ""
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("a" * 300).endswith("...")
