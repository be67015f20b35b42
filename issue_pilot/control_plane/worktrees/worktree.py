"""Git worktree management for per-issue workstreams.

Every workstream lives at ``<project_dir>/.worktrees/<slug>`` on branch
``issue-pilot/<slug>``. Slugs follow ``issue-<N>-<rest>`` or ``pr-<N>-<rest>``;
reconciliation and cleanup recover the originating number from the slug, so
the naming is part of the contract.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from issue_pilot.shared.settings import StorageSettings

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "issue-pilot/"
ISSUE_SLUG_PATTERN = re.compile(r"^issue-(\d+)-")
PR_SLUG_PATTERN = re.compile(r"^pr-(\d+)-")


class WorktreeError(RuntimeError):
    pass


class NotInGitRepo(WorktreeError):
    pass


class WorktreeExists(WorktreeError):
    pass


class WorktreeNotFound(WorktreeError):
    pass


@dataclass(frozen=True)
class SlugRef:
    kind: str
    number: int | None = None

    @property
    def is_issue(self) -> bool:
        return self.kind == "issue"

    @property
    def is_pr(self) -> bool:
        return self.kind == "pr"


def parse_slug(slug: str) -> SlugRef:
    match = ISSUE_SLUG_PATTERN.match(slug)
    if match:
        return SlugRef(kind="issue", number=int(match.group(1)))
    match = PR_SLUG_PATTERN.match(slug)
    if match:
        return SlugRef(kind="pr", number=int(match.group(1)))
    return SlugRef(kind="orphan")


@dataclass(frozen=True)
class WorktreeInfo:
    slug: str
    path: Path
    branch: str
    created_at: str = ""

    @property
    def active(self) -> bool:
        return self.path.is_dir()


@dataclass(frozen=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stderr.strip() or self.stdout.strip())


def run_git(args: list[str], cwd: Path) -> GitResult:
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    return GitResult(completed.returncode, completed.stdout, completed.stderr)


class WorktreeManager:
    def __init__(self, project_dir: Path | str, settings: StorageSettings | None = None) -> None:
        self.project_dir = Path(project_dir)
        self.settings = settings or StorageSettings.from_env(self.project_dir)

    @property
    def registry_path(self) -> Path:
        return self.settings.worktree_registry_path

    def path_for(self, slug: str) -> Path:
        return self.settings.worktrees_dir / slug

    def list(self) -> list[WorktreeInfo]:
        return [self._info_from_entry(slug, entry) for slug, entry in self._load_registry().items()]

    def info(self, slug: str) -> WorktreeInfo | None:
        entry = self._load_registry().get(slug)
        return self._info_from_entry(slug, entry) if entry else None

    def find_by_branch(self, branch: str) -> WorktreeInfo | None:
        for slug, entry in self._load_registry().items():
            if entry.get("branch") == branch:
                return self._info_from_entry(slug, entry)
        return None

    def create(
        self, slug: str, branch: str | None = None, base_branch: str | None = None
    ) -> WorktreeInfo:
        if not run_git(["rev-parse", "--git-dir"], self.project_dir).ok:
            raise NotInGitRepo(f"not_a_git_repository:{self.project_dir}")

        branch = branch or f"{BRANCH_PREFIX}{slug}"
        path = self.path_for(slug)
        if path.exists():
            raise WorktreeExists(f"worktree_exists:{path}")
        path.parent.mkdir(parents=True, exist_ok=True)

        branch_exists = run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], self.project_dir
        ).ok
        pruned = False
        while True:
            if branch_exists:
                args = ["worktree", "add", str(path), branch]
            else:
                args = ["worktree", "add", "-b", branch, str(path)]
                if base_branch:
                    args.append(base_branch)
            result = run_git(args, self.project_dir)
            if result.ok:
                break
            message = result.output.lower()
            if not branch_exists and "already exists" in message and branch.lower() in message:
                branch_exists = True
                continue
            if not pruned and "missing but already registered worktree" in message:
                run_git(["worktree", "prune"], self.project_dir)
                pruned = True
                continue
            raise WorktreeError(f"worktree_add_failed:{result.output}")

        registry = self._load_registry()
        created_at = datetime.now(timezone.utc).isoformat()
        registry[slug] = {"path": str(path), "branch": branch, "created_at": created_at}
        self._save_registry(registry)
        logger.info("Created worktree %s on branch %s", slug, branch)
        return WorktreeInfo(slug=slug, path=path, branch=branch, created_at=created_at)

    def remove(self, slug: str, delete_branch: bool = False) -> None:
        registry = self._load_registry()
        entry = registry.get(slug)
        if entry is None:
            raise WorktreeNotFound(f"worktree_not_found:{slug}")

        path = Path(entry["path"])
        if path.exists():
            result = run_git(["worktree", "remove", str(path), "--force"], self.project_dir)
            if not result.ok:
                raise WorktreeError(f"worktree_remove_failed:{result.output}")
        if delete_branch:
            result = run_git(["branch", "-D", entry["branch"]], self.project_dir)
            if not result.ok:
                logger.warning("Could not delete branch %s: %s", entry["branch"], result.output)

        registry.pop(slug, None)
        self._save_registry(registry)
        logger.info("Removed worktree %s", slug)

    def is_clean(self, path: Path) -> bool:
        # Unreadable status counts as clean so nothing acts on a worktree it cannot inspect.
        try:
            result = run_git(["status", "--porcelain"], path)
        except OSError as exc:
            logger.warning("git status failed for %s: %s", path, exc)
            return True
        return not result.ok or not result.stdout.strip()

    def branch_merged(self, branch: str, base_branch: str) -> bool:
        result = run_git(["merge-base", "--is-ancestor", branch, base_branch], self.project_dir)
        return result.ok

    def fetch(self, path: Path, branch: str) -> bool:
        result = run_git(["fetch", "origin", branch], path)
        if not result.ok:
            logger.warning("git fetch origin %s failed in %s: %s", branch, path, result.output)
        return result.ok

    def remaining_diff(self, path: Path, target_branch: str) -> list[str]:
        """Changed files in the worktree whose content still differs from ``origin/<target>``."""

        status = run_git(["status", "--porcelain", "-z"], path)
        if not status.ok:
            return []
        remaining: list[str] = []
        for code, file_name in _porcelain_entries(status.stdout):
            # git diff never reports untracked files.
            if code == "??":
                remaining.append(file_name)
                continue
            diff = run_git(["diff", f"origin/{target_branch}", "--", file_name], path)
            if diff.ok and diff.stdout.strip():
                remaining.append(file_name)
        return remaining

    def commit_followup_branch(self, path: Path, branch: str, message: str) -> None:
        steps = (
            ["checkout", "-b", branch],
            ["add", "-A"],
            ["commit", "-m", message],
            ["push", "-u", "origin", branch],
        )
        for args in steps:
            result = run_git(args, path)
            if not result.ok:
                raise WorktreeError(f"git_{args[0]}_failed:{result.output}")

    def _info_from_entry(self, slug: str, entry: dict[str, Any]) -> WorktreeInfo:
        return WorktreeInfo(
            slug=slug,
            path=Path(entry.get("path") or self.path_for(slug)),
            branch=str(entry.get("branch") or f"{BRANCH_PREFIX}{slug}"),
            created_at=str(entry.get("created_at") or ""),
        )

    def _load_registry(self) -> dict[str, dict[str, Any]]:
        if not self.registry_path.exists():
            return {}
        try:
            payload = json.loads(self.registry_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable worktree registry %s: %s", self.registry_path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(slug): entry for slug, entry in payload.items() if isinstance(entry, dict)}

    def _save_registry(self, registry: dict[str, dict[str, Any]]) -> None:
        self.registry_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.registry_path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(registry, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, self.registry_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _porcelain_entries(output: str) -> list[tuple[str, str]]:
    """Parse ``git status --porcelain -z`` into ``(code, path)`` pairs.

    Paths arrive unquoted; renames and copies carry the original path as an
    extra NUL-separated field, which is dropped.
    """

    entries: list[tuple[str, str]] = []
    fields = output.split("\0")
    index = 0
    while index < len(fields):
        field = fields[index]
        index += 1
        if len(field) < 4:
            continue
        code, name = field[:2], field[3:]
        if code[0] in "RC":
            index += 1
        entries.append((code, name))
    return entries
