from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import pytest

from issue_pilot.control_plane.github.github_auth import GitHubAuth, load_github_auth_from_env
from issue_pilot.control_plane.github.repository_client import (
    RetryableGitHubError,
    build_client_from_env,
    label_names,
)
from issue_pilot.control_plane.github.repository_client_api import GitHubAPIRepositoryClient
from issue_pilot.control_plane.github.repository_client_inmemory import InMemoryRepositoryClient


@dataclass
class FakeResponse:
    status_code: int
    payload: Any
    headers: dict[str, str] | None = None

    @property
    def content(self) -> bytes:
        if self.payload is None:
            return b""
        return b"json"

    def json(self) -> Any:
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")


class FakeSession:
    def __init__(self, responses: list[FakeResponse]) -> None:
        self.responses = responses
        self.calls: list[dict[str, Any]] = []

    def request(self, **kwargs: Any) -> FakeResponse:
        self.calls.append(kwargs)
        if not self.responses:
            raise RuntimeError("No fake response left")
        return self.responses.pop(0)


def _client(responses: list[FakeResponse]) -> tuple[GitHubAPIRepositoryClient, FakeSession]:
    session = FakeSession(responses)
    client = GitHubAPIRepositoryClient(
        full_repo="acme/widgets",
        auth=GitHubAuth(read_token="read-token", write_token="write-token"),
        session=session,
    )
    return client, session


def test_build_client_from_env_selects_implementation() -> None:
    assert isinstance(
        build_client_from_env("acme/widgets", env={"ISSUE_PILOT_GITHUB_CLIENT": "in_memory"}),
        InMemoryRepositoryClient,
    )
    api = build_client_from_env("acme/widgets", env={"GITHUB_TOKEN": "shared"})
    assert isinstance(api, GitHubAPIRepositoryClient)
    assert api.auth.read_token == "shared"


def test_auth_prefers_specific_tokens_and_redacts() -> None:
    auth = load_github_auth_from_env(
        {
            "ISSUE_PILOT_GITHUB_READ_TOKEN": " read-token-123456 ",
            "ISSUE_PILOT_GITHUB_TOKEN": "shared-token",
        }
    )
    assert auth.read_token == "read-token-123456"
    assert auth.write_token == "shared-token"
    assert auth.redacted() == {"read_token": "read...3456", "write_token": "shar...oken"}
    assert load_github_auth_from_env({}).redacted()["write_token"] == "unset"


def test_label_names_accepts_objects_and_strings() -> None:
    assert label_names({"labels": [{"name": "bug"}, "plan", {"name": " "}]}) == ["bug", "plan"]


def test_list_issues_excludes_pull_requests_and_sends_labels() -> None:
    client, session = _client(
        [
            FakeResponse(
                200,
                [
                    {"number": 1, "title": "One", "state": "open", "labels": [{"name": "plan"}]},
                    {"number": 2, "title": "PR", "state": "open", "pull_request": {"url": "x"}},
                ],
            )
        ]
    )

    issues = client.list_issues(labels=["plan", "ready"])

    assert [issue["number"] for issue in issues] == [1]
    assert issues[0]["state"] == "OPEN"
    assert issues[0]["labels"] == ["plan"]
    assert session.calls[0]["params"]["labels"] == "plan,ready"
    assert session.calls[0]["headers"]["Authorization"] == "Bearer read-token"


def test_fetch_pull_request_maps_merged_state() -> None:
    client, _ = _client(
        [
            FakeResponse(
                200,
                {
                    "number": 42,
                    "state": "closed",
                    "merged_at": "2026-01-01T00:00:00Z",
                    "base": {"ref": "main"},
                    "head": {"ref": "issue-pilot/issue-7-login"},
                },
            ),
            FakeResponse(200, {"number": 43, "state": "closed", "merged_at": None}),
            FakeResponse(404, {"message": "Not Found"}),
        ]
    )

    merged = client.fetch_pull_request(42)
    closed = client.fetch_pull_request(43)
    missing = client.fetch_pull_request(44)

    assert merged["state"] == "MERGED"
    assert merged["base_branch"] == "main"
    assert merged["head_branch"] == "issue-pilot/issue-7-login"
    assert closed["state"] == "CLOSED"
    assert missing is None


def test_find_pull_request_for_branch_queries_head() -> None:
    client, session = _client([FakeResponse(200, [{"number": 55}]), FakeResponse(200, [])])

    assert client.find_pull_request_for_branch("issue-pilot/x") == 55
    assert client.find_pull_request_for_branch("issue-pilot/y") is None
    assert session.calls[0]["params"]["head"] == "acme:issue-pilot/x"
    assert session.calls[0]["params"]["state"] == "all"


def test_fetch_ci_status_summarises_check_runs() -> None:
    client, _ = _client(
        [
            FakeResponse(200, {"number": 9, "head": {"sha": "abc123"}}),
            FakeResponse(
                200,
                {
                    "check_runs": [
                        {"name": "lint", "status": "completed", "conclusion": "success"},
                        {"name": "tests", "status": "completed", "conclusion": "failure"},
                    ]
                },
            ),
        ]
    )

    status = client.fetch_ci_status(9)

    assert status["sha"] == "abc123"
    assert status["state"] == "failure"
    assert [check["name"] for check in status["checks"]] == ["lint", "tests"]


def test_writes_use_write_token_and_encode_label_names() -> None:
    client, session = _client(
        [
            FakeResponse(200, [{"name": "done"}]),
            FakeResponse(404, {"message": "Label does not exist"}),
            FakeResponse(201, {"id": 7, "body": "hi"}),
            FakeResponse(200, {"merged": True}),
        ]
    )

    client.add_labels(3, ["done"])
    client.remove_labels(3, ["needs review"])
    comment = client.post_comment(3, "hi")
    merged = client.merge_pull_request(3)

    assert comment["id"] == 7
    assert merged == {"merged": True}
    assert session.calls[1]["method"] == "DELETE"
    assert session.calls[1]["url"].endswith("/issues/3/labels/needs%20review")
    assert session.calls[3]["json"] == {"merge_method": "squash"}
    assert all(call["headers"]["Authorization"] == "Bearer write-token" for call in session.calls)


def test_rate_limit_raises_retryable_error_with_retry_after() -> None:
    client, _ = _client(
        [FakeResponse(403, {"message": "API rate limit exceeded"}, headers={"Retry-After": "30"})]
    )

    with pytest.raises(RetryableGitHubError) as exc_info:
        client.list_issues()

    assert exc_info.value.reason_code == "github_rate_limited"
    assert exc_info.value.retry_after_s == 30.0


def test_server_error_is_retryable() -> None:
    client, _ = _client([FakeResponse(502, {})])

    with pytest.raises(RetryableGitHubError) as exc_info:
        client.fetch_issue(1)

    assert exc_info.value.reason_code == "github_502"


def test_invalid_repo_name_rejected() -> None:
    with pytest.raises(ValueError, match="invalid_repo"):
        GitHubAPIRepositoryClient(full_repo="widgets")


def test_in_memory_client_tracks_labels_comments_and_transient_failures() -> None:
    client = InMemoryRepositoryClient("acme/widgets")
    client.add_issue(1, labels=["plan"])
    client.fail_next["fetch_issue"] = 1

    with pytest.raises(RetryableGitHubError):
        client.fetch_issue(1)

    client.replace_labels(1, ["plan"], ["build"])
    posted = client.post_comment(1, "<!-- marker --> hello")
    client.update_comment(posted["id"], "<!-- marker --> updated")

    issue = client.fetch_issue(1)
    assert issue["labels"] == ["build"]
    assert client.find_comment(1, "<!-- marker -->")["body"].endswith("updated")
    assert client.find_comment(1, "nope") is None


def test_list_issues_follows_pages_until_short_page() -> None:
    first_page = [{"number": n, "title": f"Issue {n}", "state": "open"} for n in range(1, 101)]
    client, session = _client(
        [FakeResponse(200, first_page), FakeResponse(200, [{"number": 101, "state": "open"}])]
    )

    issues = client.list_issues(labels=["plan"])

    assert len(issues) == 101
    assert issues[-1]["number"] == 101
    assert [call["params"]["page"] for call in session.calls] == ["1", "2"]
    assert all(call["params"]["per_page"] == "100" for call in session.calls)


def test_find_comment_searches_later_pages() -> None:
    first_page = [{"id": n, "body": "noise"} for n in range(100)]
    client, session = _client(
        [FakeResponse(200, first_page), FakeResponse(200, [{"id": 500, "body": "<!-- marker --> hi"}])]
    )

    assert client.find_comment(3, "<!-- marker -->")["id"] == 500
    assert len(session.calls) == 2


def test_auth_headers_split_read_and_write_tokens() -> None:
    auth = GitHubAuth(read_token="r-token", write_token=None)

    assert auth.headers() == {"Authorization": "Bearer r-token"}
    assert auth.headers(write=True) == {}
    assert auth.token_for(write=True) is None


def test_api_client_logs_redacted_tokens(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    build_client_from_env("acme/widgets", env={"GITHUB_TOKEN": "ghp_secretvalue1234"})

    assert "ghp_...1234" in caplog.text
    assert "secretvalue" not in caplog.text
