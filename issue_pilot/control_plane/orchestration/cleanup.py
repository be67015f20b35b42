"""Periodic removal of clean worktrees whose branch already merged."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from issue_pilot.control_plane.worktrees.worktree import WorktreeManager
from issue_pilot.shared.settings import WorktreeCleanupConfig

logger = logging.getLogger(__name__)

FREQUENCY_SECONDS = {"daily": 86_400, "weekly": 604_800}
DEFAULT_FREQUENCY = "weekly"


class WorktreeCleanupJob:
    def __init__(self, worktrees: WorktreeManager, config: WorktreeCleanupConfig | None = None) -> None:
        self.worktrees = worktrees
        self.config = config or WorktreeCleanupConfig()

    @property
    def cleanup_interval_seconds(self) -> int:
        frequency = self.config.frequency.strip().lower()
        return FREQUENCY_SECONDS.get(frequency, FREQUENCY_SECONDS[DEFAULT_FREQUENCY])

    def cleanup_due(self, last_run: datetime | None) -> bool:
        # A disabled job is always "due": execute() then returns zero counters.
        if not self.config.enabled or last_run is None:
            return True
        elapsed = (datetime.now(timezone.utc) - last_run).total_seconds()
        return elapsed >= self.cleanup_interval_seconds

    def execute(self) -> dict[str, Any]:
        result: dict[str, Any] = {"cleaned": 0, "skipped": 0, "errors": []}
        if not self.config.enabled:
            return result

        for worktree in self.worktrees.list():
            if not worktree.active or not self.worktrees.is_clean(worktree.path):
                result["skipped"] += 1
                continue
            if not self.worktrees.branch_merged(worktree.branch, self.config.base_branch):
                result["skipped"] += 1
                continue
            try:
                self.worktrees.remove(worktree.slug, delete_branch=self.config.delete_branch)
            except Exception as exc:
                logger.error("Removing merged worktree %s failed: %s", worktree.slug, exc)
                result["errors"].append({"slug": worktree.slug, "error": str(exc)})
                continue
            result["cleaned"] += 1

        logger.info(
            "Worktree cleanup: cleaned=%d skipped=%d errors=%d",
            result["cleaned"],
            result["skipped"],
            len(result["errors"]),
        )
        return result
