"""SQLite persistence for per-repository watch progress.

Every issue/PR/category combination owns one JSON document. Writes are full
read-modify-write cycles inside an immediate transaction, so a crash mid-write
leaves the previous document intact and a concurrent reader never sees a
half-written one.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from issue_pilot.control_plane.models.state_records import (
    BuildRecord,
    ChangeRequestRecord,
    CiFixRecord,
    PlanRecord,
    RebaseRecord,
    ReviewRecord,
    RoundRobinPosition,
)
from issue_pilot.shared.settings import StorageSettings

logger = logging.getLogger(__name__)

PLANS = "plans"
BUILDS = "builds"
REVIEWS = "reviews"
CI_FIXES = "ci_fixes"
CHANGE_REQUESTS = "change_requests"
REBASES = "rebases"
ROUND_ROBIN = "round_robin"
SUB_ISSUES = "sub_issues"
PARENT_ISSUES = "parent_issues"
BLOCKING = "blocking"
PROJECT_ITEMS = "project_items"
FEEDBACK_COMMENTS = "feedback_comments"
PROCESSED_REACTIONS = "processed_reactions"
DETECTION_COMMENTS = "detection_comments"
MAINTENANCE = "maintenance"

PROCESSOR_CATEGORIES = {
    "plan": PLANS,
    "build": BUILDS,
    "review": REVIEWS,
    "ci_fix": CI_FIXES,
    "change_request": CHANGE_REQUESTS,
    "rebase": REBASES,
}

BUILD_PROCESSED_STATUSES = {"running", "completed", "failed"}
ROUND_ROBIN_KEY = "position"
LAST_CLEANUP_KEY = "worktree_cleanup"
LAST_RECONCILIATION_KEY = "worktree_reconciliation"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _without_none(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in fields.items() if value is not None}


class StateStore:
    """Namespaced key-value store scoped to one ``(project_dir, repository)`` pair."""

    def __init__(
        self,
        project_dir: Path | str,
        repository: str,
        db_path: Path | str | None = None,
    ) -> None:
        self.project_dir = str(Path(project_dir).resolve())
        self.repository = repository
        if db_path is None:
            db_path = StorageSettings.from_env(self.project_dir).sqlite_path
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            # Unrecoverable at startup: let it raise.
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS watch_records (
                project_dir TEXT NOT NULL,
                repository TEXT NOT NULL,
                category TEXT NOT NULL,
                record_key TEXT NOT NULL,
                document_json TEXT NOT NULL,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (project_dir, repository, category, record_key)
            );
            """
        )

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Low-level document access
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    def _read(self, category: str, key: Any) -> dict[str, Any] | None:
        row = self.conn.execute(
            """
            SELECT document_json FROM watch_records
            WHERE project_dir = ? AND repository = ? AND category = ? AND record_key = ?
            """,
            (self.project_dir, self.repository, category, str(key)),
        ).fetchone()
        if row is None:
            return None
        return self._decode(category, key, row["document_json"])

    def _decode(self, category: str, key: Any, raw: str) -> dict[str, Any] | None:
        try:
            document = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring corrupt %s record %s in %s", category, key, self.repository)
            return None
        if not isinstance(document, dict):
            logger.warning("Ignoring non-object %s record %s in %s", category, key, self.repository)
            return None
        return document

    def _write(self, conn: sqlite3.Connection, category: str, key: Any, document: dict) -> None:
        conn.execute(
            """
            INSERT INTO watch_records (project_dir, repository, category, record_key,
                                       document_json, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_dir, repository, category, record_key)
            DO UPDATE SET document_json = excluded.document_json,
                          updated_at = excluded.updated_at
            """,
            (
                self.project_dir,
                self.repository,
                category,
                str(key),
                json.dumps(document, sort_keys=True),
                _now(),
            ),
        )

    def _update(
        self,
        category: str,
        key: Any,
        fields: dict[str, Any],
        model: type[BaseModel] | None = None,
    ) -> dict[str, Any]:
        """Merge ``fields`` over the stored document and write it back atomically."""

        with self._transaction() as conn:
            existing = self._read(category, key) or {}
            merged = {**existing, **fields}
            if model is not None:
                try:
                    merged = model.model_validate(merged).model_dump(exclude_none=True)
                except ValidationError as exc:
                    raise ValueError(f"invalid_{category}_record:{exc.errors()}") from exc
            self._write(conn, category, key, merged)
        return merged

    def _replace(self, category: str, key: Any, document: dict[str, Any]) -> None:
        with self._transaction() as conn:
            self._write(conn, category, key, document)

    def _delete(self, category: str, key: Any) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM watch_records
                WHERE project_dir = ? AND repository = ? AND category = ? AND record_key = ?
                """,
                (self.project_dir, self.repository, category, str(key)),
            )
        return cursor.rowcount > 0

    def _all(self, category: str) -> dict[str, dict[str, Any]]:
        rows = self.conn.execute(
            """
            SELECT record_key, document_json FROM watch_records
            WHERE project_dir = ? AND repository = ? AND category = ?
            ORDER BY record_key ASC
            """,
            (self.project_dir, self.repository, category),
        ).fetchall()
        documents: dict[str, dict[str, Any]] = {}
        for row in rows:
            document = self._decode(category, row["record_key"], row["document_json"])
            if document is not None:
                documents[str(row["record_key"])] = document
        return documents

    # ------------------------------------------------------------------
    # Idempotency gate
    # ------------------------------------------------------------------

    def is_processed(self, processor_type: str, number: int) -> bool:
        category = PROCESSOR_CATEGORIES.get(processor_type)
        if category is None:
            raise ValueError(f"unknown_processor_type:{processor_type}")
        record = self._read(category, number)
        if record is None:
            return False
        if category == BUILDS:
            return record.get("status") in BUILD_PROCESSED_STATUSES
        if category in {CI_FIXES, REBASES}:
            return record.get("status") == "completed"
        return True

    def remove_entity(self, number: int) -> int:
        """Drop every per-entity record for ``number``; returns the number of rows removed."""

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM watch_records
                WHERE project_dir = ? AND repository = ? AND record_key = ?
                  AND category NOT IN (?, ?)
                """,
                (self.project_dir, self.repository, str(number), ROUND_ROBIN, MAINTENANCE),
            )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def plan_processed(self, issue_number: int) -> bool:
        return self.is_processed("plan", issue_number)

    def plan_data(self, issue_number: int) -> dict[str, Any] | None:
        return self._read(PLANS, issue_number)

    def plan_iteration_count(self, issue_number: int) -> int:
        plan = self.plan_data(issue_number)
        if plan is None:
            return 0
        return int(plan.get("iteration") or 1)

    def record_plan(
        self,
        issue_number: int,
        *,
        summary: str | None = None,
        tasks: list[Any] | None = None,
        questions: list[Any] | None = None,
        comment_body: str | None = None,
        comment_hint: str | None = None,
        comment_id: str | int | None = None,
        posted_at: str | None = None,
    ) -> dict[str, Any]:
        with self._transaction() as conn:
            existing = self._read(PLANS, issue_number)
            iteration = int(existing.get("iteration") or 1) + 1 if existing else 1
            record = PlanRecord(
                summary=summary,
                tasks=list(tasks or []),
                questions=list(questions or []),
                comment_body=comment_body,
                comment_hint=comment_hint,
                comment_id=str(comment_id) if comment_id is not None else None,
                posted_at=posted_at or _now(),
                iteration=iteration,
                previous_iteration_at=existing.get("posted_at") if existing else None,
            ).model_dump(exclude_none=True)
            self._write(conn, PLANS, issue_number, record)
        return record

    def reset_plan_state(self, issue_number: int) -> bool:
        return self._delete(PLANS, issue_number)

    # ------------------------------------------------------------------
    # Builds
    # ------------------------------------------------------------------

    def build_processed(self, issue_number: int) -> bool:
        return self.is_processed("build", issue_number)

    def build_status(self, issue_number: int) -> dict[str, Any]:
        return self._read(BUILDS, issue_number) or {}

    def record_build_status(
        self, issue_number: int, *, status: str, **details: Any
    ) -> dict[str, Any]:
        fields = _without_none(details)
        if "comment_id" in fields:
            fields["comment_id"] = str(fields["comment_id"])
        fields.update(status=status, updated_at=_now())
        return self._update(BUILDS, issue_number, fields, BuildRecord)

    def workstream_for_issue(self, issue_number: int) -> dict[str, Any] | None:
        data = self.build_status(issue_number)
        if not data:
            return None
        return {
            "issue_number": int(issue_number),
            "branch": data.get("branch"),
            "workstream": data.get("workstream"),
            "pr_url": data.get("pr_url"),
            "status": data.get("status"),
        }

    def find_build_by_pr(self, pr_number: int) -> dict[str, Any] | None:
        pattern = re.compile(rf"/pull/{int(pr_number)}\b")
        for issue_number, data in self._all(BUILDS).items():
            pr_url = data.get("pr_url")
            if pr_url and pattern.search(str(pr_url)):
                return self.workstream_for_issue(int(issue_number))
        return None

    def reset_build_state(self, issue_number: int) -> bool:
        return self._delete(BUILDS, issue_number)

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------

    def review_processed(self, pr_number: int) -> bool:
        return self.is_processed("review", pr_number)

    def review_data(self, pr_number: int) -> dict[str, Any] | None:
        return self._read(REVIEWS, pr_number)

    def record_review(
        self,
        pr_number: int,
        *,
        reviewers: list[str] | None = None,
        total_findings: int | None = None,
        comment_id: str | int | None = None,
        timestamp: str | None = None,
        **details: Any,
    ) -> dict[str, Any]:
        fields = _without_none(
            {
                "reviewers": reviewers,
                "total_findings": total_findings,
                "comment_id": str(comment_id) if comment_id is not None else None,
                **details,
            }
        )
        fields["timestamp"] = timestamp or _now()
        return self._update(REVIEWS, pr_number, fields, ReviewRecord)

    def reset_review_state(self, pr_number: int) -> bool:
        return self._delete(REVIEWS, pr_number)

    # ------------------------------------------------------------------
    # CI fixes
    # ------------------------------------------------------------------

    def ci_fix_completed(self, pr_number: int) -> bool:
        return self.is_processed("ci_fix", pr_number)

    def ci_fix_data(self, pr_number: int) -> dict[str, Any] | None:
        return self._read(CI_FIXES, pr_number)

    def record_ci_fix(
        self,
        pr_number: int,
        *,
        status: str,
        reason: str | None = None,
        root_causes: list[Any] | None = None,
        fixes_count: int | None = None,
        timestamp: str | None = None,
        **details: Any,
    ) -> dict[str, Any]:
        fields = _without_none(
            {
                "reason": reason,
                "root_causes": root_causes,
                "fixes_count": fixes_count,
                **details,
            }
        )
        fields.update(status=status, timestamp=timestamp or _now())
        return self._update(CI_FIXES, pr_number, fields, CiFixRecord)

    def reset_ci_fix_state(self, pr_number: int) -> bool:
        return self._delete(CI_FIXES, pr_number)

    # ------------------------------------------------------------------
    # Change requests
    # ------------------------------------------------------------------

    def change_request_processed(self, pr_number: int) -> bool:
        return self.is_processed("change_request", pr_number)

    def change_request_data(self, pr_number: int) -> dict[str, Any] | None:
        return self._read(CHANGE_REQUESTS, pr_number)

    def record_change_request(
        self,
        pr_number: int,
        *,
        status: str,
        changes_applied: int | None = None,
        commits: list[str] | None = None,
        reason: str | None = None,
        verification_reasons: list[str] | None = None,
        missing_items: list[str] | None = None,
        additional_work: list[str] | None = None,
        timestamp: str | None = None,
        **details: Any,
    ) -> dict[str, Any]:
        """Record a change-request outcome.

        List fields replace the stored ones. ``clarification_count`` is bumped
        each time the outcome is ``needs_clarification``; other outcomes keep
        the stored count.
        """

        with self._transaction() as conn:
            existing = self._read(CHANGE_REQUESTS, pr_number) or {}
            count = int(existing.get("clarification_count") or 0)
            if status == "needs_clarification":
                count += 1
            fields = _without_none(
                {
                    "changes_applied": changes_applied,
                    "commits": commits,
                    "reason": reason,
                    "verification_reasons": verification_reasons,
                    "missing_items": missing_items,
                    "additional_work": additional_work,
                    **details,
                }
            )
            fields.update(
                status=status,
                timestamp=timestamp or _now(),
                clarification_count=count,
            )
            try:
                record = ChangeRequestRecord.model_validate({**existing, **fields}).model_dump(
                    exclude_none=True
                )
            except ValidationError as exc:
                raise ValueError(f"invalid_change_requests_record:{exc.errors()}") from exc
            self._write(conn, CHANGE_REQUESTS, pr_number, record)
        return record

    def reset_change_request_state(self, pr_number: int) -> bool:
        return self._delete(CHANGE_REQUESTS, pr_number)

    # ------------------------------------------------------------------
    # Rebases
    # ------------------------------------------------------------------

    def rebase_completed(self, pr_number: int) -> bool:
        return self.is_processed("rebase", pr_number)

    def rebase_data(self, pr_number: int) -> dict[str, Any] | None:
        return self._read(REBASES, pr_number)

    def record_rebase(
        self,
        pr_number: int,
        *,
        status: str,
        branch: str | None = None,
        reason: str | None = None,
        **details: Any,
    ) -> dict[str, Any]:
        fields = _without_none({"branch": branch, "reason": reason, **details})
        fields.update(status=status, timestamp=_now())
        return self._update(REBASES, pr_number, fields, RebaseRecord)

    def reset_rebase_state(self, pr_number: int) -> bool:
        return self._delete(REBASES, pr_number)

    # ------------------------------------------------------------------
    # Round-robin position
    # ------------------------------------------------------------------

    def record_round_robin_position(self, last_key: str, processed_at: str | None = None) -> None:
        position = RoundRobinPosition(last_key=last_key, processed_at=processed_at or _now())
        self._replace(ROUND_ROBIN, ROUND_ROBIN_KEY, position.model_dump())

    @property
    def round_robin_last_key(self) -> str | None:
        data = self._read(ROUND_ROBIN, ROUND_ROBIN_KEY) or {}
        value = data.get("last_key")
        return str(value) if value else None

    @property
    def round_robin_last_processed_at(self) -> datetime | None:
        data = self._read(ROUND_ROBIN, ROUND_ROBIN_KEY) or {}
        return _parse_timestamp(data.get("processed_at"))

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def record_sub_issues(self, parent_number: int, sub_issue_numbers: list[int]) -> None:
        children = sorted({int(number) for number in sub_issue_numbers})
        with self._transaction() as conn:
            self._write(
                conn,
                SUB_ISSUES,
                parent_number,
                {"sub_issues": children, "updated_at": _now()},
            )
            for child in children:
                self._write(conn, PARENT_ISSUES, child, {"parent_issue": int(parent_number)})

    def sub_issues(self, parent_number: int) -> list[int]:
        data = self._read(SUB_ISSUES, parent_number) or {}
        return [int(number) for number in data.get("sub_issues", [])]

    def parent_issue(self, issue_number: int) -> int | None:
        data = self._read(PARENT_ISSUES, issue_number) or {}
        parent = data.get("parent_issue")
        return int(parent) if parent is not None else None

    def record_blocking_status(
        self, issue_number: int, *, blockers: list[int], blocked: bool | None = None
    ) -> dict[str, Any]:
        unique_blockers = sorted({int(number) for number in blockers})
        document = {
            "blockers": unique_blockers,
            "blocked": bool(unique_blockers) if blocked is None else bool(blocked),
            "checked_at": _now(),
        }
        self._replace(BLOCKING, issue_number, document)
        return document

    def blocking_status(self, issue_number: int) -> dict[str, Any]:
        return self._read(BLOCKING, issue_number) or {"blockers": [], "blocked": False}

    def record_project_item_id(self, issue_number: int, item_id: str) -> None:
        self._update(PROJECT_ITEMS, issue_number, {"item_id": str(item_id)})

    def project_item_id(self, issue_number: int) -> str | None:
        data = self._read(PROJECT_ITEMS, issue_number) or {}
        value = data.get("item_id")
        return str(value) if value else None

    def record_project_sync(self, issue_number: int, **fields: Any) -> None:
        self._update(PROJECT_ITEMS, issue_number, {**fields, "synced_at": _now()})

    # ------------------------------------------------------------------
    # Feedback collection
    # ------------------------------------------------------------------

    def track_comment_for_feedback(
        self, *, comment_id: str | int, processor_type: str, number: int
    ) -> None:
        self._replace(
            FEEDBACK_COMMENTS,
            f"{processor_type}_{number}",
            {
                "comment_id": str(comment_id),
                "processor_type": processor_type,
                "number": int(number),
                "posted_at": _now(),
            },
        )

    def tracked_comments(self) -> list[dict[str, Any]]:
        comments: list[dict[str, Any]] = []
        sources = (
            (PLANS, "plan", "posted_at"),
            (REVIEWS, "review", "timestamp"),
            (BUILDS, "build", "updated_at"),
        )
        for category, processor_type, timestamp_field in sources:
            for number, data in self._all(category).items():
                if not data.get("comment_id"):
                    continue
                comments.append(
                    {
                        "comment_id": str(data["comment_id"]),
                        "processor_type": processor_type,
                        "number": int(number),
                        "posted_at": data.get(timestamp_field),
                    }
                )
        for data in self._all(FEEDBACK_COMMENTS).values():
            comments.append(
                {
                    "comment_id": str(data.get("comment_id")),
                    "processor_type": data.get("processor_type"),
                    "number": int(data.get("number", 0)),
                    "posted_at": data.get("posted_at"),
                }
            )
        return comments

    def processed_reaction_ids(self, comment_id: str | int) -> list[str]:
        data = self._read(PROCESSED_REACTIONS, comment_id) or {}
        return [str(value) for value in data.get("reaction_ids", [])]

    def mark_reaction_processed(self, comment_id: str | int, reaction_id: str | int) -> None:
        with self._transaction() as conn:
            data = self._read(PROCESSED_REACTIONS, comment_id) or {}
            reaction_ids = [str(value) for value in data.get("reaction_ids", [])]
            if str(reaction_id) not in reaction_ids:
                reaction_ids.append(str(reaction_id))
            self._write(
                conn,
                PROCESSED_REACTIONS,
                comment_id,
                {"reaction_ids": reaction_ids, "last_checked": _now()},
            )

    def detection_comment_posted(self, detection_key: str) -> bool:
        return self._read(DETECTION_COMMENTS, detection_key) is not None

    def record_detection_comment(self, detection_key: str, *, timestamp: str) -> None:
        self._replace(
            DETECTION_COMMENTS,
            detection_key,
            {"timestamp": timestamp, "posted_at": _now()},
        )

    # ------------------------------------------------------------------
    # Maintenance loops
    # ------------------------------------------------------------------

    def record_worktree_cleanup(self, *, cleaned: int, skipped: int, errors: list[Any]) -> None:
        self._replace(
            MAINTENANCE,
            LAST_CLEANUP_KEY,
            {"ran_at": _now(), "cleaned": cleaned, "skipped": skipped, "errors": list(errors)},
        )

    @property
    def last_worktree_cleanup(self) -> datetime | None:
        data = self._read(MAINTENANCE, LAST_CLEANUP_KEY) or {}
        return _parse_timestamp(data.get("ran_at"))

    def record_worktree_reconciliation(self, result: dict[str, Any]) -> None:
        self._replace(MAINTENANCE, LAST_RECONCILIATION_KEY, {**result, "ran_at": _now()})

    @property
    def last_worktree_reconciliation(self) -> datetime | None:
        data = self._read(MAINTENANCE, LAST_RECONCILIATION_KEY) or {}
        return _parse_timestamp(data.get("ran_at"))
