"""Token resolution for the GitHub client.

Listing and fetching use the read token; labels, comments and pull requests go
through the write token. Either falls back to the shared token.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SHARED_TOKEN_VARS = ("ISSUE_PILOT_GITHUB_TOKEN", "GITHUB_TOKEN")


@dataclass(frozen=True)
class GitHubAuth:
    read_token: str | None = None
    write_token: str | None = None

    def token_for(self, write: bool = False) -> str | None:
        return self.write_token if write else self.read_token

    def headers(self, write: bool = False) -> dict[str, str]:
        token = self.token_for(write)
        return {"Authorization": f"Bearer {token}"} if token else {}

    def redacted(self) -> dict[str, str]:
        return {
            "read_token": _redact_token(self.read_token),
            "write_token": _redact_token(self.write_token),
        }


def load_github_auth_from_env(env: dict[str, str] | None = None) -> GitHubAuth:
    env_map = os.environ if env is None else env

    shared = None
    for name in SHARED_TOKEN_VARS:
        shared = _clean(env_map.get(name))
        if shared:
            break
    auth = GitHubAuth(
        read_token=_clean(env_map.get("ISSUE_PILOT_GITHUB_READ_TOKEN")) or shared,
        write_token=_clean(env_map.get("ISSUE_PILOT_GITHUB_WRITE_TOKEN")) or shared,
    )
    if auth.write_token is None:
        logger.warning("No GitHub write token configured; label and comment updates will fail")
    return auth


def _clean(token: str | None) -> str | None:
    if token is None:
        return None
    value = token.strip()
    return value or None


def _redact_token(token: str | None) -> str:
    if token is None:
        return "unset"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"
