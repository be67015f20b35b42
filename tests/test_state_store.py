from __future__ import annotations

from pathlib import Path

import pytest

from issue_pilot.control_plane.db.state_store import StateStore


def _store(tmp_path: Path, repository: str = "acme/widgets") -> StateStore:
    return StateStore(tmp_path, repository, db_path=tmp_path / "state" / "watch.sqlite")


def test_connection_uses_wal_and_busy_timeout(tmp_path: Path) -> None:
    store = _store(tmp_path)

    journal_mode = store.conn.execute("PRAGMA journal_mode").fetchone()[0]
    busy_timeout = store.conn.execute("PRAGMA busy_timeout").fetchone()[0]

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) == 5000


def test_default_db_path_follows_storage_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ISSUE_PILOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("ISSUE_PILOT_SQLITE_PATH", raising=False)

    store = StateStore(tmp_path, "acme/widgets")

    assert Path(store.db_path) == tmp_path / "data" / "state" / "watch_state.sqlite"
    assert Path(store.db_path).exists()


def test_unwritable_state_directory_fails_at_construction(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")

    with pytest.raises(OSError):
        StateStore(tmp_path, "acme/widgets", db_path=blocker / "state.sqlite")


def test_plan_records_increment_iteration(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first = store.record_plan(5, summary="Add login", tasks=["a"], posted_at="2026-01-01T00:00:00+00:00")
    second = store.record_plan(5, summary="Add login v2", tasks=["b", "c"], comment_id=77)

    assert first["iteration"] == 1
    assert second["iteration"] == 2
    assert second["previous_iteration_at"] == "2026-01-01T00:00:00+00:00"
    assert second["tasks"] == ["b", "c"]
    assert second["comment_id"] == "77"
    assert store.plan_iteration_count(5) == 2
    assert store.plan_processed(5) is True
    assert store.plan_iteration_count(6) == 0


def test_build_status_merges_details_and_gates_processing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.build_processed(9) is False

    store.record_build_status(9, status="pending", branch="issue-pilot/issue-9-login")
    assert store.build_processed(9) is False

    store.record_build_status(
        9, status="completed", pr_url="https://github.com/acme/widgets/pull/42"
    )

    data = store.build_status(9)
    assert data["status"] == "completed"
    assert data["branch"] == "issue-pilot/issue-9-login"
    assert store.build_processed(9) is True
    assert store.workstream_for_issue(9)["pr_url"].endswith("/pull/42")
    assert store.find_build_by_pr(42)["issue_number"] == 9
    assert store.find_build_by_pr(4) is None


def test_invalid_write_rolls_back_and_keeps_previous_value(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_build_status(3, status="running")

    with pytest.raises(ValueError, match="invalid_builds_record"):
        store.record_build_status(3, status="exploded")

    assert store.build_status(3)["status"] == "running"


def test_terminality_rules_per_category(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_ci_fix(10, status="failed", reason="flaky")
    store.record_rebase(11, status="conflict")
    store.record_review(12, reviewers=["security"], total_findings=3)
    store.record_change_request(13, status="no_changes")

    assert store.is_processed("ci_fix", 10) is False
    assert store.is_processed("rebase", 11) is False
    assert store.is_processed("review", 12) is True
    assert store.is_processed("change_request", 13) is True

    store.record_ci_fix(10, status="completed", fixes_count=2)
    store.record_rebase(11, status="completed", branch="feature")
    assert store.ci_fix_completed(10) is True
    assert store.rebase_completed(11) is True
    assert store.ci_fix_data(10)["reason"] == "flaky"

    with pytest.raises(ValueError, match="unknown_processor_type"):
        store.is_processed("deploy", 1)


def test_change_request_clarification_count_and_statuses(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_change_request(20, status="needs_clarification", reason="which file?")
    store.record_change_request(20, status="needs_clarification", reason="still unclear")
    record = store.record_change_request(
        20,
        status="incomplete_implementation",
        missing_items=["tests"],
        additional_work=["docs"],
    )

    assert record["clarification_count"] == 2
    assert record["missing_items"] == ["tests"]

    verification = store.record_change_request(
        21, status="verification_error", verification_reasons=["verifier timed out"]
    )
    assert verification["status"] == "verification_error"
    assert verification["clarification_count"] == 0


def test_reset_helpers_reopen_processing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_plan(1, summary="s")
    store.record_change_request(2, status="error", reason="boom")

    assert store.reset_plan_state(1) is True
    assert store.reset_change_request_state(2) is True
    assert store.reset_change_request_state(2) is False
    assert store.plan_processed(1) is False
    assert store.change_request_processed(2) is False


def test_remove_entity_keeps_round_robin_position(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_plan(4, summary="s")
    store.record_build_status(4, status="running")
    store.record_round_robin_position("issue_4_build")

    removed = store.remove_entity(4)

    assert removed == 2
    assert store.plan_data(4) is None
    assert store.build_status(4) == {}
    assert store.round_robin_last_key == "issue_4_build"


def test_records_survive_reopen_and_are_scoped_by_repository(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_review(8, reviewers=["perf"], total_findings=1)
    store.close()

    reopened = _store(tmp_path)
    other_repo = _store(tmp_path, repository="acme/gadgets")

    assert reopened.review_data(8)["reviewers"] == ["perf"]
    assert other_repo.review_data(8) is None


def test_corrupt_document_reads_as_missing(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    store.record_plan(30, summary="s")
    store.conn.execute(
        "UPDATE watch_records SET document_json = ? WHERE category = 'plans'", ("{not json",)
    )

    assert store.plan_data(30) is None
    assert store.plan_processed(30) is False
    assert "corrupt" in caplog.text


def test_relationships_and_project_items(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_sub_issues(100, [102, 101, 102])
    store.record_blocking_status(101, blockers=[100])
    store.record_project_item_id(101, "PVTI_abc")
    store.record_project_sync(101, status="In Progress")

    assert store.sub_issues(100) == [101, 102]
    assert store.parent_issue(102) == 100
    assert store.parent_issue(100) is None
    assert store.blocking_status(101)["blocked"] is True
    assert store.blocking_status(999) == {"blockers": [], "blocked": False}
    assert store.project_item_id(101) == "PVTI_abc"


def test_feedback_tracking(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_plan(1, summary="s", comment_id=501)
    store.track_comment_for_feedback(comment_id=777, processor_type="ci_fix", number=3)

    comments = store.tracked_comments()
    assert {(c["comment_id"], c["processor_type"]) for c in comments} == {
        ("501", "plan"),
        ("777", "ci_fix"),
    }

    store.mark_reaction_processed(501, 9001)
    store.mark_reaction_processed(501, 9001)
    assert store.processed_reaction_ids(501) == ["9001"]

    assert store.detection_comment_posted("issue_1_plan") is False
    store.record_detection_comment("issue_1_plan", timestamp="2026-01-01T00:00:00+00:00")
    assert store.detection_comment_posted("issue_1_plan") is True


def test_maintenance_timestamps(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert store.last_worktree_cleanup is None
    assert store.last_worktree_reconciliation is None

    store.record_worktree_cleanup(cleaned=1, skipped=2, errors=[])
    store.record_worktree_reconciliation(
        {"resumed": 0, "reconciled": 0, "cleaned": 0, "skipped": 1, "errors": []}
    )

    assert store.last_worktree_cleanup is not None
    assert store.last_worktree_cleanup.tzinfo is not None
    assert store.last_worktree_reconciliation is not None
