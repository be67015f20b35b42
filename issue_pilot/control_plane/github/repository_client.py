"""RepositoryClient contract, shared errors, and factory helpers.

Issues are normalised to ``{number, title, body, state, labels, author}`` with
``state`` in ``OPEN``/``CLOSED``; pull requests additionally carry
``base_branch``, ``head_branch`` and ``merged_at``, with ``state`` in
``OPEN``/``CLOSED``/``MERGED``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Protocol

from issue_pilot.control_plane.github.github_auth import load_github_auth_from_env

logger = logging.getLogger(__name__)


class RetryableGitHubError(RuntimeError):
    def __init__(self, message: str, reason_code: str, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.retry_after_s = retry_after_s


class RepositoryClient(Protocol):
    """Operations the watch core consumes from GitHub. All must be safe to repeat."""

    full_repo: str

    def list_issues(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]: ...

    def list_pull_requests(
        self, labels: list[str] | None = None, state: str = "open"
    ) -> list[dict[str, Any]]: ...

    def fetch_issue(self, number: int) -> dict[str, Any] | None: ...

    def fetch_pull_request(self, number: int) -> dict[str, Any] | None: ...

    def find_pull_request_for_branch(self, branch: str) -> int | None: ...

    def fetch_ci_status(self, number: int) -> dict[str, Any]: ...

    def add_labels(self, number: int, labels: list[str]) -> None: ...

    def remove_labels(self, number: int, labels: list[str]) -> None: ...

    def replace_labels(self, number: int, old_labels: list[str], new_labels: list[str]) -> None: ...

    def post_comment(self, number: int, body: str) -> dict[str, Any]: ...

    def update_comment(self, comment_id: int, body: str) -> dict[str, Any]: ...

    def find_comment(self, number: int, marker: str) -> dict[str, Any] | None: ...

    def create_pull_request(
        self, *, title: str, body: str, head: str, base: str
    ) -> dict[str, Any]: ...

    def merge_pull_request(self, number: int, merge_method: str = "squash") -> dict[str, Any]: ...


def label_names(entity: dict[str, Any]) -> list[str]:
    """Label names from either raw GitHub label objects or plain strings."""

    names: list[str] = []
    for label in entity.get("labels") or []:
        if isinstance(label, dict):
            name = str(label.get("name", "")).strip()
        else:
            name = str(label).strip()
        if name:
            names.append(name)
    return names


def build_client_from_env(repo: str, env: dict[str, str] | None = None) -> RepositoryClient:
    env_map = os.environ if env is None else env
    client_type = (env_map.get("ISSUE_PILOT_GITHUB_CLIENT") or "api").strip().lower()

    if client_type == "in_memory":
        from issue_pilot.control_plane.github.repository_client_inmemory import (
            InMemoryRepositoryClient,
        )

        return InMemoryRepositoryClient(full_repo=repo)

    from issue_pilot.control_plane.github.repository_client_api import GitHubAPIRepositoryClient

    auth = load_github_auth_from_env(env_map)
    logger.info("GitHub API client for %s (tokens: %s)", repo, auth.redacted())
    return GitHubAPIRepositoryClient(full_repo=repo, auth=auth)


__all__ = [
    "RepositoryClient",
    "RetryableGitHubError",
    "build_client_from_env",
    "label_names",
]
