"""Reconciliation loop for worktrees left dirty by earlier runs.

A worktree with uncommitted changes is either resumed through the build
processor, cleaned up because its PR merged with nothing left over, turned
into a follow-up PR, or skipped with a reason. One worktree failing never
stops the batch.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from issue_pilot.control_plane.github.repository_client import RepositoryClient, label_names
from issue_pilot.control_plane.orchestration.processors import Processor
from issue_pilot.control_plane.worktrees.worktree import WorktreeInfo, WorktreeManager, parse_slug
from issue_pilot.shared.settings import WorktreeReconciliationConfig

logger = logging.getLogger(__name__)

RESUMED = "resumed"
RECONCILED = "reconciled"
CLEANED = "cleaned"
SKIPPED = "skipped"
ERROR = "error"


@dataclass(frozen=True)
class ReconcileOutcome:
    action: str
    reason: str = ""
    error: str = ""


def _skip(reason: str) -> ReconcileOutcome:
    return ReconcileOutcome(action=SKIPPED, reason=reason)


def empty_result() -> dict[str, Any]:
    return {"resumed": 0, "reconciled": 0, "cleaned": 0, "skipped": 0, "errors": []}


class WorktreeReconciler:
    def __init__(
        self,
        worktrees: WorktreeManager,
        repository: RepositoryClient,
        build_processor: Processor,
        state_store: Any,
        config: WorktreeReconciliationConfig | None = None,
        build_label: str = "issue-pilot-build",
    ) -> None:
        self.worktrees = worktrees
        self.repository = repository
        self.build_processor = build_processor
        self.state_store = state_store
        self.config = config or WorktreeReconciliationConfig()
        self.build_label = build_label

    def reconciliation_due(self, last_run_time: datetime | None) -> bool:
        if not self.config.enabled:
            return False
        if last_run_time is None:
            return True
        elapsed = (datetime.now(timezone.utc) - last_run_time).total_seconds()
        return elapsed >= self.config.interval_seconds

    def execute(self) -> dict[str, Any]:
        result = empty_result()
        if not self.config.enabled:
            return result

        try:
            dirty = [
                worktree
                for worktree in self.worktrees.list()
                if worktree.active and not self.worktrees.is_clean(worktree.path)
            ]
        except Exception as exc:
            logger.error("Listing worktrees for reconciliation failed: %s", exc)
            result["errors"].append({"slug": None, "error": str(exc)})
            return result

        for worktree in dirty:
            outcome = self.process_worktree(worktree)
            if outcome.action == ERROR:
                result["errors"].append({"slug": worktree.slug, "error": outcome.error})
            else:
                result[outcome.action] += 1

        logger.info(
            "Worktree reconciliation: resumed=%d reconciled=%d cleaned=%d skipped=%d errors=%d",
            result["resumed"],
            result["reconciled"],
            result["cleaned"],
            result["skipped"],
            len(result["errors"]),
        )
        return result

    def process_worktree(self, worktree: WorktreeInfo) -> ReconcileOutcome:
        try:
            ref = parse_slug(worktree.slug)
            issue_number = ref.number if ref.is_issue else None
            pr_number = ref.number if ref.is_pr else self._find_pr_for_branch(worktree.branch)

            if pr_number is not None:
                if issue_number is None:
                    build = self.state_store.find_build_by_pr(pr_number)
                    issue_number = build["issue_number"] if build else None
                return self._process_pr_worktree(worktree, pr_number, issue_number)
            if issue_number is not None:
                return self._process_issue_worktree(worktree, issue_number)
            logger.debug("Worktree %s has no linked issue or PR", worktree.slug)
            return _skip("orphan_worktree")
        except Exception as exc:
            logger.error("Reconciling worktree %s failed: %s", worktree.slug, exc)
            return ReconcileOutcome(action=ERROR, error=str(exc))

    def _process_pr_worktree(
        self, worktree: WorktreeInfo, pr_number: int, issue_number: int | None
    ) -> ReconcileOutcome:
        pr = self.repository.fetch_pull_request(pr_number)
        if pr is None:
            return _skip("pr_not_found")

        state = str(pr.get("state", "")).upper()
        if state == "MERGED":
            return self._reconcile_merged_pr(worktree, pr, issue_number)
        if state == "OPEN":
            if not self.config.auto_resume:
                return _skip("auto_resume_disabled")
            logger.info("Open PR #%d has uncommitted changes in %s", pr_number, worktree.slug)
            if issue_number is None:
                return _skip("open_pr_needs_manual_attention")
            return self._resume(worktree, issue_number)
        if state == "CLOSED":
            # Left in place so the unmerged work can be reviewed by hand.
            logger.info("Closed PR #%d still has changes in %s", pr_number, worktree.slug)
            return _skip("pr_closed_without_merge")
        return _skip("unknown_pr_state")

    def _process_issue_worktree(self, worktree: WorktreeInfo, issue_number: int) -> ReconcileOutcome:
        issue = self.repository.fetch_issue(issue_number)
        if issue is None:
            return _skip("issue_not_found")
        if str(issue.get("state", "")).upper() != "OPEN":
            return _skip("issue_closed_with_uncommitted_changes")
        if not self.config.auto_resume:
            return _skip("auto_resume_disabled")
        if self.build_label not in label_names(issue):
            return _skip("issue_missing_build_label")
        return self._resume(worktree, issue_number, issue)

    def _reconcile_merged_pr(
        self, worktree: WorktreeInfo, pr: dict[str, Any], issue_number: int | None
    ) -> ReconcileOutcome:
        if not self.config.auto_reconcile:
            return _skip("auto_reconcile_disabled")

        target = str(pr.get("base_branch") or self.config.base_branch)
        self.worktrees.fetch(worktree.path, target)
        remaining = self.worktrees.remaining_diff(worktree.path, target)
        if not remaining:
            logger.info("PR #%s merged with nothing left in %s", pr.get("number"), worktree.slug)
            self.worktrees.remove(worktree.slug, delete_branch=True)
            return ReconcileOutcome(action=CLEANED, reason="no_remaining_changes_after_merge")

        self._create_followup_pr(worktree, pr, remaining, issue_number, target)
        return ReconcileOutcome(action=RECONCILED, reason="followup_pr_created")

    def _create_followup_pr(
        self,
        worktree: WorktreeInfo,
        pr: dict[str, Any],
        changed_files: list[str],
        issue_number: int | None,
        base: str,
    ) -> None:
        number = pr.get("number")
        branch = f"{worktree.branch}-followup-{int(time.time())}"
        issue_line = f"Related issue: #{issue_number}\n" if issue_number else ""
        files = "\n".join(f"- {name}" for name in changed_files)

        message = (
            f"Follow-up changes from PR #{number}\n\n"
            f"These changes were left in a local worktree after PR #{number} was merged.\n\n"
            f"Original PR: #{number} - {pr.get('title', '')}\n"
            f"{issue_line}\n"
            f"Changed files:\n{files}\n"
        )
        self.worktrees.commit_followup_branch(worktree.path, branch, message)

        body = (
            "## Summary\n\n"
            f"Changes found in a local worktree after PR #{number} was merged.\n\n"
            "## Context\n\n"
            f"- Original PR: #{number}\n"
            + (f"- Related issue: #{issue_number}\n" if issue_number else "")
            + "\n## Changed Files\n\n"
            + "\n".join(f"- `{name}`" for name in changed_files)
            + "\n"
        )
        created = self.repository.create_pull_request(
            title=f"Follow-up: Additional changes from PR #{number}",
            body=body,
            head=branch,
            base=base,
        )
        logger.info(
            "Opened follow-up PR #%s for %s (%d files)",
            created.get("number"),
            worktree.slug,
            len(changed_files),
        )

    def _resume(
        self, worktree: WorktreeInfo, issue_number: int, issue: dict[str, Any] | None = None
    ) -> ReconcileOutcome:
        logger.info("Resuming issue #%d from worktree %s", issue_number, worktree.slug)
        issue = issue or self.repository.fetch_issue(issue_number)
        if issue is None:
            return ReconcileOutcome(action=ERROR, error="failed_to_fetch_issue")
        self.build_processor.process(issue)
        return ReconcileOutcome(action=RESUMED, reason="build_processor_triggered")

    def _find_pr_for_branch(self, branch: str) -> int | None:
        try:
            return self.repository.find_pull_request_for_branch(branch)
        except Exception as exc:
            logger.debug("PR lookup for branch %s failed: %s", branch, exc)
            return None
