"""GitHub REST API repository client."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import requests

from issue_pilot.control_plane.github.github_auth import GitHubAuth
from issue_pilot.control_plane.github.repository_client import RetryableGitHubError, label_names

_MISSING = object()
PER_PAGE = 100
MAX_PAGES = 50


class GitHubAPIRepositoryClient:
    def __init__(
        self,
        full_repo: str,
        auth: GitHubAuth | None = None,
        base_url: str = "https://api.github.com",
        session: requests.Session | None = None,
    ) -> None:
        if "/" not in full_repo:
            raise ValueError(f"invalid_repo:{full_repo}")
        self.full_repo = full_repo
        self.auth = auth or GitHubAuth()
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    @property
    def owner(self) -> str:
        return self.full_repo.split("/", 1)[0]

    def list_issues(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]:
        rows = self._list_issue_rows(labels=labels, state=state)
        return [_normalize_issue(row) for row in rows if "pull_request" not in row]

    def list_pull_requests(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]:
        rows = self._list_issue_rows(labels=labels, state=state)
        return [_normalize_issue(row) for row in rows if "pull_request" in row]

    def fetch_issue(self, number: int) -> dict[str, Any] | None:
        row = self._request("GET", f"/repos/{self.full_repo}/issues/{int(number)}", missing_ok=True)
        if row is _MISSING or not isinstance(row, dict):
            return None
        issue = _normalize_issue(row)
        if issue["comments_count"]:
            comments = self._paginate(f"/repos/{self.full_repo}/issues/{int(number)}/comments")
            issue["comments"] = [
                {
                    "id": comment.get("id"),
                    "body": str(comment.get("body") or ""),
                    "author": str((comment.get("user") or {}).get("login", "")),
                }
                for comment in comments
            ]
        return issue

    def fetch_pull_request(self, number: int) -> dict[str, Any] | None:
        row = self._request("GET", f"/repos/{self.full_repo}/pulls/{int(number)}", missing_ok=True)
        if row is _MISSING or not isinstance(row, dict):
            return None
        return _normalize_pull_request(row)

    def find_pull_request_for_branch(self, branch: str) -> int | None:
        rows = self._request(
            "GET",
            f"/repos/{self.full_repo}/pulls",
            params={"head": f"{self.owner}:{branch}", "state": "all", "per_page": "1"},
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            number = rows[0].get("number")
            return int(number) if number else None
        return None

    def fetch_ci_status(self, number: int) -> dict[str, Any]:
        pull = self._request("GET", f"/repos/{self.full_repo}/pulls/{int(number)}")
        sha = str(((pull or {}).get("head") or {}).get("sha", ""))
        if not sha:
            return {"sha": "", "state": "unknown", "checks": []}
        payload = self._request(
            "GET",
            f"/repos/{self.full_repo}/commits/{sha}/check-runs",
            params={"per_page": "100"},
        )
        checks = [
            {
                "name": str(run.get("name", "")),
                "status": str(run.get("status", "")),
                "conclusion": run.get("conclusion"),
            }
            for run in (payload or {}).get("check_runs", [])
            if isinstance(run, dict)
        ]
        return {"sha": sha, "state": _summarize_checks(checks), "checks": checks}

    def add_labels(self, number: int, labels: list[str]) -> None:
        if not labels:
            return
        self._request(
            "POST",
            f"/repos/{self.full_repo}/issues/{int(number)}/labels",
            write=True,
            json={"labels": list(labels)},
        )

    def remove_labels(self, number: int, labels: list[str]) -> None:
        for label in labels:
            self._request(
                "DELETE",
                f"/repos/{self.full_repo}/issues/{int(number)}/labels/{quote(label, safe='')}",
                write=True,
                missing_ok=True,
            )

    def replace_labels(self, number: int, old_labels: list[str], new_labels: list[str]) -> None:
        self.remove_labels(number, [label for label in old_labels if label not in new_labels])
        self.add_labels(number, new_labels)

    def post_comment(self, number: int, body: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/repos/{self.full_repo}/issues/{int(number)}/comments",
            write=True,
            json={"body": body},
        )

    def update_comment(self, comment_id: int, body: str) -> dict[str, Any]:
        return self._request(
            "PATCH",
            f"/repos/{self.full_repo}/issues/comments/{int(comment_id)}",
            write=True,
            json={"body": body},
        )

    def find_comment(self, number: int, marker: str) -> dict[str, Any] | None:
        for comment in self._paginate(f"/repos/{self.full_repo}/issues/{int(number)}/comments"):
            if marker in str(comment.get("body") or ""):
                return comment
        return None

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> dict[str, Any]:
        row = self._request(
            "POST",
            f"/repos/{self.full_repo}/pulls",
            write=True,
            json={"title": title, "body": body, "head": head, "base": base},
        )
        return _normalize_pull_request(row) if isinstance(row, dict) else {}

    def merge_pull_request(self, number: int, merge_method: str = "squash") -> dict[str, Any]:
        return self._request(
            "PUT",
            f"/repos/{self.full_repo}/pulls/{int(number)}/merge",
            write=True,
            json={"merge_method": merge_method},
        )

    def _list_issue_rows(self, labels: list[str] | None, state: str) -> list[dict[str, Any]]:
        params = {"state": state}
        if labels:
            params["labels"] = ",".join(labels)
        rows = self._paginate(f"/repos/{self.full_repo}/issues", params)
        return [row for row in rows if row.get("number")]

    def _paginate(self, path: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = self._request(
                "GET", path, params={**(params or {}), "per_page": str(PER_PAGE), "page": str(page)}
            )
            if not isinstance(batch, list):
                break
            rows.extend(row for row in batch if isinstance(row, dict))
            if len(batch) < PER_PAGE:
                break
        return rows

    def _request(
        self,
        method: str,
        path: str,
        write: bool = False,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        missing_ok: bool = False,
    ) -> Any:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            **self.auth.headers(write),
        }

        response = self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            headers=headers,
            json=json,
            params=params,
            timeout=15,
        )

        if response.status_code in {429, 403} and _looks_like_rate_limit(response):
            raise RetryableGitHubError(
                "GitHub API rate limited",
                reason_code="github_rate_limited",
                retry_after_s=_parse_retry_after((response.headers or {}).get("Retry-After")),
            )
        if response.status_code in {500, 502, 503, 504}:
            raise RetryableGitHubError(
                "GitHub API 5xx response",
                reason_code=f"github_{response.status_code}",
            )
        if missing_ok and response.status_code == 404:
            return _MISSING

        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()


def _normalize_issue(row: dict[str, Any]) -> dict[str, Any]:
    return {
        "number": int(row.get("number", 0)),
        "title": str(row.get("title", "")),
        "body": str(row.get("body") or ""),
        "state": str(row.get("state", "open")).upper(),
        "labels": label_names(row),
        "author": str((row.get("user") or {}).get("login", "")),
        "url": str(row.get("html_url", "")),
        "comments_count": int(row.get("comments", 0) or 0),
        "comments": [],
    }


def _normalize_pull_request(row: dict[str, Any]) -> dict[str, Any]:
    merged_at = row.get("merged_at")
    state = "MERGED" if merged_at or row.get("merged") else str(row.get("state", "open")).upper()
    return {
        "number": int(row.get("number", 0)),
        "title": str(row.get("title", "")),
        "body": str(row.get("body") or ""),
        "state": state,
        "labels": label_names(row),
        "author": str((row.get("user") or {}).get("login", "")),
        "url": str(row.get("html_url", "")),
        "base_branch": str((row.get("base") or {}).get("ref", "")),
        "head_branch": str((row.get("head") or {}).get("ref", "")),
        "merged_at": merged_at,
    }


def _summarize_checks(checks: list[dict[str, Any]]) -> str:
    if not checks:
        return "unknown"
    if any(check["status"] != "completed" for check in checks):
        return "pending"
    failing = {"failure", "timed_out", "cancelled", "action_required"}
    if any(check["conclusion"] in failing for check in checks):
        return "failure"
    return "success"


def _looks_like_rate_limit(response: requests.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    message = str(payload.get("message", "")).lower()
    return "rate limit" in message


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    return parsed if parsed >= 0 else None
