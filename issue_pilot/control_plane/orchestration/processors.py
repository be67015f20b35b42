"""Processor contract, the background build processor and the inline harness processor."""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Protocol

from issue_pilot.control_plane.db.state_store import StateStore
from issue_pilot.control_plane.jobs.harness import HarnessRunner
from issue_pilot.control_plane.worktrees.worktree import WorktreeExists, WorktreeInfo

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"completed", "success", "ok"}
SLUG_TITLE_LIMIT = 32


class Processor(Protocol):
    def process(self, entity: dict[str, Any]) -> Any: ...


class HarnessFactory(Protocol):
    def __call__(self, mode: str, options: dict[str, Any]) -> HarnessRunner: ...


def workstream_slug(number: int, title: str) -> str:
    words = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return f"issue-{int(number)}-{words[:SLUG_TITLE_LIMIT]}".rstrip("-")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _entity_options(entity: dict[str, Any], repository: str) -> dict[str, Any]:
    return {
        "number": int(entity["number"]),
        "title": str(entity.get("title", "")),
        "body": str(entity.get("body", "")),
        "repository": repository,
    }


class BuildProcessor:
    """Prepares the issue's worktree and hands the build to a detached job.

    ``process`` returns as soon as the job is started. The build record stays
    ``running`` until the job itself records the final status through
    :func:`recording_harness_factory`.
    """

    def __init__(
        self,
        state_store: Any,
        worktrees: Any,
        background_runner: Any,
        base_branch: str = "main",
    ) -> None:
        self.state_store = state_store
        self.worktrees = worktrees
        self.background_runner = background_runner
        self.base_branch = base_branch

    def process(self, entity: dict[str, Any]) -> dict[str, Any]:
        options = _entity_options(entity, getattr(self.state_store, "repository", ""))
        number = options["number"]
        worktree = self._prepare_worktree(number, options["title"])
        self.state_store.record_build_status(
            number,
            status="running",
            branch=worktree.branch,
            workstream=worktree.slug,
            started_at=_now(),
        )
        job_id = self.background_runner.start("build", worktree=str(worktree.path), **options)
        self.state_store.record_build_status(number, status="running", job_id=job_id)
        logger.info("Build #%d started as job %s in %s", number, job_id, worktree.slug)
        return {"status": "started", "job_id": job_id, "workstream": worktree.slug}

    def _prepare_worktree(self, number: int, title: str) -> WorktreeInfo:
        recorded = self.state_store.workstream_for_issue(number) or {}
        slug = recorded.get("workstream")
        if not slug:
            # A worktree left behind for this issue wins over a slug from the current title.
            prefix = f"issue-{int(number)}-"
            left_behind = [wt for wt in self.worktrees.list() if wt.slug.startswith(prefix) and wt.active]
            slug = left_behind[0].slug if left_behind else workstream_slug(number, title)
        existing = self.worktrees.info(slug)
        if existing is not None and existing.active:
            logger.info("Reusing worktree %s for build #%d", slug, number)
            return existing
        try:
            return self.worktrees.create(slug, base_branch=self.base_branch)
        except WorktreeExists:
            existing = self.worktrees.info(slug)
            if existing is None:
                raise
            return existing


class _BuildResultHarness:
    def __init__(self, harness: HarnessRunner, state_store: StateStore, number: int, job_id: Any) -> None:
        self.harness = harness
        self.state_store = state_store
        self.number = number
        self.job_id = job_id

    def run(self) -> dict[str, Any]:
        result = self.harness.run()
        status = str(result.get("status", "error"))
        # Runs inside the forked job: open a fresh connection to the same database.
        store = StateStore(
            self.state_store.project_dir,
            self.state_store.repository,
            db_path=self.state_store.db_path,
        )
        try:
            store.record_build_status(
                self.number,
                status="completed" if status in SUCCESS_STATUSES else "failed",
                message=str(result.get("message", "")),
                job_id=self.job_id,
                finished_at=_now(),
            )
        finally:
            store.close()
        return result


def recording_harness_factory(harness_factory: HarnessFactory, state_store: StateStore) -> HarnessFactory:
    """Wrap ``harness_factory`` so build jobs write their final status to the state store."""

    def factory(mode: str, options: dict[str, Any]) -> HarnessRunner:
        harness = harness_factory(mode, options)
        if mode != "build" or "number" not in options:
            return harness
        return _BuildResultHarness(harness, state_store, int(options["number"]), options.get("job_id"))

    return factory


class HarnessProcessor:
    """Runs the configured harness for one PR or plan item and records the outcome.

    Plan, review and change-request records are terminal as soon as they exist,
    so a failed harness run leaves no record and the item is retried next cycle.
    """

    def __init__(self, processor_type: str, state_store: Any, harness_factory: HarnessFactory) -> None:
        if processor_type == "build":
            raise ValueError("build_requires_background_processor")
        self.processor_type = processor_type
        self.state_store = state_store
        self.harness_factory = harness_factory

    def process(self, entity: dict[str, Any]) -> dict[str, Any]:
        options = _entity_options(entity, getattr(self.state_store, "repository", ""))
        number = options["number"]
        result = self.harness_factory(self.processor_type, options).run()
        status = str(result.get("status", "error"))
        message = str(result.get("message", ""))
        logger.info("%s #%d finished with status %s", self.processor_type, number, status)
        self._record(number, succeeded=status in SUCCESS_STATUSES, message=message)
        return result

    def _record(self, number: int, *, succeeded: bool, message: str) -> None:
        now = _now()
        if self.processor_type in {"plan", "review", "change_request"} and not succeeded:
            logger.warning(
                "%s #%d failed, leaving it unrecorded for retry: %s",
                self.processor_type,
                number,
                message,
            )
            return
        if self.processor_type == "plan":
            self.state_store.record_plan(number, summary=message, posted_at=now)
        elif self.processor_type == "review":
            self.state_store.record_review(number, total_findings=0, timestamp=now)
        elif self.processor_type == "ci_fix":
            self.state_store.record_ci_fix(
                number, status="completed" if succeeded else "failed", reason=message, timestamp=now
            )
        elif self.processor_type == "change_request":
            self.state_store.record_change_request(
                number, status="completed", reason=message, timestamp=now
            )
        elif self.processor_type == "rebase":
            self.state_store.record_rebase(
                number, status="completed" if succeeded else "failed", reason=message
            )
        else:
            raise ValueError(f"unknown_processor_type:{self.processor_type}")
