"""Top-level watch cycle: collect, schedule, dispatch, then run maintenance."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from issue_pilot.control_plane.db.state_store import StateStore
from issue_pilot.control_plane.github.repository_client import RepositoryClient
from issue_pilot.control_plane.models.work_items import WorkItem
from issue_pilot.control_plane.orchestration.cleanup import WorktreeCleanupJob
from issue_pilot.control_plane.orchestration.processors import Processor
from issue_pilot.control_plane.orchestration.reconciler import WorktreeReconciler, empty_result
from issue_pilot.control_plane.orchestration.scheduler import RoundRobinScheduler
from issue_pilot.control_plane.worktrees.worktree import WorktreeManager
from issue_pilot.shared.settings import WatchConfig

logger = logging.getLogger(__name__)

ISSUE_PROCESSORS = ("plan", "build")
PR_PROCESSORS = ("review", "ci_fix", "change_request", "rebase")


class WatchRunner:
    def __init__(
        self,
        repository: RepositoryClient,
        state_store: StateStore,
        processors: dict[str, Processor],
        worktrees: WorktreeManager,
        config: WatchConfig | None = None,
        once: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.state_store = state_store
        self.processors = dict(processors)
        self.config = config or WatchConfig()
        self.once = once
        self.sleep = sleep
        self.scheduler = RoundRobinScheduler(state_store)
        self.cleanup_job = WorktreeCleanupJob(worktrees, self.config.worktree_cleanup)
        self.reconciler = WorktreeReconciler(
            worktrees=worktrees,
            repository=repository,
            build_processor=self.processors["build"],
            state_store=state_store,
            config=self.config.worktree_reconciliation,
            build_label=self.config.labels.build,
        )

    def start(self, max_cycles: int | None = None) -> None:
        logger.info("Watching %s", self.repository.full_repo)
        try:
            self.process_worktree_reconciliation(force=True)
        except Exception as exc:
            logger.error("Startup reconciliation failed: %s", exc)
        cycles = 0
        while True:
            cycles += 1
            try:
                summary = self.process_cycle()
            except Exception:
                logger.exception("Cycle %d failed", cycles)
            else:
                logger.info(
                    "Cycle %d: queued=%d dispatched=%d skipped=%d failed=%d paused=%d",
                    cycles,
                    summary["queued"],
                    summary["dispatched"],
                    summary["skipped"],
                    summary["failed"],
                    summary["paused"],
                )
            if self.once or (max_cycles is not None and cycles >= max_cycles):
                return
            self.sleep(self.config.interval_seconds)

    def collect_work_items(self) -> list[WorkItem]:
        labels = self.config.labels
        items: list[WorkItem] = []
        for processor_type in ISSUE_PROCESSORS:
            label = getattr(labels, processor_type)
            for entity in self._safe_list(self.repository.list_issues, label):
                items.append(_work_item(entity, "issue", processor_type, label))
        for processor_type in PR_PROCESSORS:
            label = getattr(labels, processor_type)
            for entity in self._safe_list(self.repository.list_pull_requests, label):
                items.append(_work_item(entity, "pr", processor_type, label))
        return items

    def paused_numbers(self) -> set[int]:
        label = self.config.labels.paused
        entities = self._safe_list(self.repository.list_issues, label) + self._safe_list(
            self.repository.list_pull_requests, label
        )
        return {int(entity["number"]) for entity in entities}

    def process_cycle(self) -> dict[str, Any]:
        items = self.collect_work_items()
        paused = self.paused_numbers()
        self.scheduler.refresh_queue(items)
        summary = {
            "queued": len(items),
            "dispatched": 0,
            "skipped": 0,
            "failed": 0,
            "paused": len(paused),
            "cleanup": None,
            "reconciliation": None,
        }

        seen: set[str] = set()
        for _ in range(len(self.scheduler.queue)):
            item = self.scheduler.next_item(paused)
            if item is None or item.key in seen:
                break
            seen.add(item.key)
            try:
                if self.state_store.is_processed(item.processor_type, item.number):
                    summary["skipped"] += 1
                else:
                    self.dispatch(item)
                    summary["dispatched"] += 1
            except Exception as exc:
                logger.error("Processing %s failed: %s", item.key, exc)
                summary["failed"] += 1
            # The in-memory cursor advances even when persisting it fails.
            try:
                self.scheduler.mark_processed(item)
            except Exception as exc:
                logger.error("Saving scheduler position after %s failed: %s", item.key, exc)

        summary["cleanup"] = self.process_worktree_cleanup()
        summary["reconciliation"] = self.process_worktree_reconciliation()
        return summary

    def dispatch(self, item: WorkItem) -> Any:
        processor = self.processors.get(item.processor_type)
        if processor is None:
            raise ValueError(f"no_processor:{item.processor_type}")
        if item.is_issue:
            detail = self.repository.fetch_issue(item.number)
        else:
            detail = self.repository.fetch_pull_request(item.number)
        logger.info("Dispatching %s", item.key)
        return processor.process(detail or dict(item.data))

    def process_worktree_cleanup(self) -> dict[str, Any] | None:
        if not self.cleanup_job.config.enabled:
            return None
        if not self.cleanup_job.cleanup_due(self.state_store.last_worktree_cleanup):
            return None
        try:
            result = self.cleanup_job.execute()
        except Exception as exc:
            logger.error("Worktree cleanup failed: %s", exc)
            return None
        self.state_store.record_worktree_cleanup(
            cleaned=result["cleaned"], skipped=result["skipped"], errors=result["errors"]
        )
        if result["cleaned"]:
            logger.info("Worktree cleanup: %d cleaned", result["cleaned"])
        return result

    def process_worktree_reconciliation(self, force: bool = False) -> dict[str, Any] | None:
        if not self.reconciler.config.enabled:
            return None
        if not force and not self.reconciler.reconciliation_due(
            self.state_store.last_worktree_reconciliation
        ):
            return None
        try:
            result = self.reconciler.execute()
        except Exception as exc:
            logger.error("Worktree reconciliation failed: %s", exc)
            result = empty_result()
            result["errors"].append({"slug": None, "error": str(exc)})
        self.state_store.record_worktree_reconciliation(result)
        return result

    def _safe_list(self, listing: Callable[..., list[dict[str, Any]]], label: str) -> list[dict[str, Any]]:
        try:
            return list(listing(labels=[label], state="open"))
        except Exception as exc:
            logger.warning("Listing items labelled %s failed: %s", label, exc)
            return []


def _work_item(entity: dict[str, Any], item_type: str, processor_type: str, label: str) -> WorkItem:
    return WorkItem(
        number=int(entity["number"]),
        item_type=item_type,
        processor_type=processor_type,
        label=label,
        data=dict(entity),
    )
