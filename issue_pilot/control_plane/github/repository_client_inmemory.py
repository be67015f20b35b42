"""In-memory repository client for deterministic tests."""

from __future__ import annotations

from typing import Any

from issue_pilot.control_plane.github.repository_client import RetryableGitHubError


class InMemoryRepositoryClient:
    """Holds issues and pull requests in dicts and records every write."""

    def __init__(self, full_repo: str = "acme/widgets") -> None:
        self.full_repo = full_repo
        self.issues: dict[int, dict[str, Any]] = {}
        self.pull_requests: dict[int, dict[str, Any]] = {}
        self.comments: dict[int, list[dict[str, Any]]] = {}
        self.ci_statuses: dict[int, dict[str, Any]] = {}
        self.branch_prs: dict[str, int] = {}
        self.writes: list[tuple[str, dict[str, Any]]] = []
        self.fail_next: dict[str, int] = {}
        self._next_comment_id = 1000
        self._next_pr_number = 500

    def add_issue(
        self,
        number: int,
        *,
        title: str = "",
        labels: list[str] | None = None,
        state: str = "OPEN",
        body: str = "",
        author: str = "octocat",
    ) -> dict[str, Any]:
        issue = {
            "number": number,
            "title": title or f"Issue {number}",
            "body": body,
            "state": state.upper(),
            "labels": list(labels or []),
            "author": author,
            "comments": [],
        }
        self.issues[number] = issue
        return issue

    def add_pull_request(
        self,
        number: int,
        *,
        title: str = "",
        labels: list[str] | None = None,
        state: str = "OPEN",
        head_branch: str = "",
        base_branch: str = "main",
        merged_at: str | None = None,
    ) -> dict[str, Any]:
        pull = {
            "number": number,
            "title": title or f"PR {number}",
            "body": "",
            "state": state.upper(),
            "labels": list(labels or []),
            "author": "octocat",
            "base_branch": base_branch,
            "head_branch": head_branch,
            "merged_at": merged_at,
        }
        self.pull_requests[number] = pull
        if head_branch:
            self.branch_prs[head_branch] = number
        return pull

    def list_issues(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]:
        self._maybe_fail("list_issues")
        return _filter(self.issues.values(), labels, state)

    def list_pull_requests(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]:
        self._maybe_fail("list_pull_requests")
        return _filter(self.pull_requests.values(), labels, state)

    def fetch_issue(self, number: int) -> dict[str, Any] | None:
        self._maybe_fail("fetch_issue")
        issue = self.issues.get(number)
        if issue is None:
            return None
        return {**issue, "comments": list(self.comments.get(number, []))}

    def fetch_pull_request(self, number: int) -> dict[str, Any] | None:
        self._maybe_fail("fetch_pull_request")
        pull = self.pull_requests.get(number)
        return dict(pull) if pull is not None else None

    def find_pull_request_for_branch(self, branch: str) -> int | None:
        return self.branch_prs.get(branch)

    def fetch_ci_status(self, number: int) -> dict[str, Any]:
        return dict(self.ci_statuses.get(number, {"sha": "", "state": "unknown", "checks": []}))

    def add_labels(self, number: int, labels: list[str]) -> None:
        entity = self._entity(number)
        for label in labels:
            if label not in entity["labels"]:
                entity["labels"].append(label)
        self.writes.append(("add_labels", {"number": number, "labels": list(labels)}))

    def remove_labels(self, number: int, labels: list[str]) -> None:
        entity = self._entity(number)
        entity["labels"] = [label for label in entity["labels"] if label not in labels]
        self.writes.append(("remove_labels", {"number": number, "labels": list(labels)}))

    def replace_labels(self, number: int, old_labels: list[str], new_labels: list[str]) -> None:
        self.remove_labels(number, [label for label in old_labels if label not in new_labels])
        self.add_labels(number, new_labels)

    def post_comment(self, number: int, body: str) -> dict[str, Any]:
        self._maybe_fail("post_comment")
        self._next_comment_id += 1
        comment = {"id": self._next_comment_id, "body": body, "author": "issue-pilot"}
        self.comments.setdefault(number, []).append(comment)
        self.writes.append(("post_comment", {"number": number, "id": comment["id"]}))
        return dict(comment)

    def update_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        for comments in self.comments.values():
            for comment in comments:
                if comment["id"] == comment_id:
                    comment["body"] = body
                    self.writes.append(("update_comment", {"id": comment_id}))
                    return dict(comment)
        raise ValueError(f"comment_not_found:{comment_id}")

    def find_comment(self, number: int, marker: str) -> dict[str, Any] | None:
        for comment in self.comments.get(number, []):
            if marker in comment["body"]:
                return dict(comment)
        return None

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> dict[str, Any]:
        self._maybe_fail("create_pull_request")
        self._next_pr_number += 1
        pull = self.add_pull_request(
            self._next_pr_number, title=title, head_branch=head, base_branch=base
        )
        pull["body"] = body
        pull["url"] = f"https://github.com/{self.full_repo}/pull/{pull['number']}"
        self.writes.append(("create_pull_request", {"number": pull["number"], "head": head}))
        return dict(pull)

    def merge_pull_request(self, number: int, merge_method: str = "squash") -> dict[str, Any]:
        pull = self.pull_requests.get(number)
        if pull is None:
            raise ValueError(f"pull_request_not_found:{number}")
        pull["state"] = "MERGED"
        pull["merged_at"] = "2026-01-01T00:00:00Z"
        self.writes.append(("merge_pull_request", {"number": number, "method": merge_method}))
        return {"merged": True}

    def _entity(self, number: int) -> dict[str, Any]:
        entity = self.issues.get(number) or self.pull_requests.get(number)
        if entity is None:
            raise ValueError(f"entity_not_found:{number}")
        return entity

    def _maybe_fail(self, operation: str) -> None:
        remaining = self.fail_next.get(operation, 0)
        if remaining > 0:
            self.fail_next[operation] = remaining - 1
            raise RetryableGitHubError(
                "Transient repository client failure", reason_code="transient_failure"
            )


def _filter(
    entities: Any, labels: list[str] | None, state: str
) -> list[dict[str, Any]]:
    wanted_state = state.upper()
    matched: list[dict[str, Any]] = []
    for entity in entities:
        if wanted_state != "ALL" and entity["state"] != wanted_state:
            continue
        if labels and not all(label in entity["labels"] for label in labels):
            continue
        matched.append(dict(entity, labels=list(entity["labels"])))
    return sorted(matched, key=lambda entity: entity["number"])
