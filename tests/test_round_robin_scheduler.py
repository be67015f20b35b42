from __future__ import annotations

from pathlib import Path

import pytest

from issue_pilot.control_plane.db.state_store import StateStore
from issue_pilot.control_plane.models.work_items import WorkItem
from issue_pilot.control_plane.orchestration.scheduler import RoundRobinScheduler


class FakePositionStore:
    def __init__(self, last_key: str | None = None) -> None:
        self.last_key = last_key
        self.writes: list[tuple[str, str | None]] = []

    @property
    def round_robin_last_key(self) -> str | None:
        return self.last_key

    def record_round_robin_position(self, last_key: str, processed_at: str | None = None) -> None:
        self.last_key = last_key
        self.writes.append((last_key, processed_at))


def _item(number: int, processor_type: str = "build", item_type: str = "issue") -> WorkItem:
    if processor_type in {"review", "ci_fix", "change_request", "rebase"}:
        item_type = "pr"
    return WorkItem(number=number, item_type=item_type, processor_type=processor_type, label="x")


def test_scheduler_starts_with_empty_queue() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    assert scheduler.queue == []
    assert scheduler.last_processed_key is None
    assert scheduler.next_item() is None
    assert scheduler.has_work() is False


def test_scheduler_restores_cursor_from_store() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore("issue_2_build"))
    assert scheduler.last_processed_key == "issue_2_build"


def test_refresh_queue_sorts_plan_items_first_and_keeps_discovery_order() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue(
        [_item(1, "build"), _item(2, "plan"), _item(3, "review"), _item(4, "plan")]
    )

    assert [item.key for item in scheduler.queue] == [
        "issue_2_plan",
        "issue_4_plan",
        "issue_1_build",
        "pr_3_review",
    ]


def test_refresh_queue_replaces_existing_queue_without_touching_cursor() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue([_item(1), _item(2)])
    scheduler.mark_processed(scheduler.queue[0])

    scheduler.refresh_queue([_item(3)])

    assert [item.number for item in scheduler.queue] == [3]
    assert scheduler.last_processed_key == "issue_1_build"


def test_next_item_rotates_and_wraps_around() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    a, b, c = _item(1), _item(2), _item(3)
    scheduler.refresh_queue([a, b, c])

    assert scheduler.next_item() == a
    scheduler.mark_processed(a)
    assert scheduler.next_item() == b
    scheduler.mark_processed(b)
    assert scheduler.next_item() == c
    scheduler.mark_processed(c)
    assert scheduler.next_item() == a


def test_next_item_skips_paused_numbers() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue([_item(1), _item(2), _item(3)])

    assert scheduler.next_item(paused_numbers={1}).number == 2
    assert scheduler.next_item(paused_numbers={1, 2, 3}) is None


def test_rotation_position_survives_paused_items() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    a, b, c = _item(1), _item(2), _item(3)
    scheduler.refresh_queue([a, b, c])
    scheduler.mark_processed(a)

    assert scheduler.next_item(paused_numbers={2}) == c
    scheduler.mark_processed(c)
    assert scheduler.next_item(paused_numbers={2}) == a


def test_mark_processed_persists_position_with_timestamp() -> None:
    store = FakePositionStore()
    scheduler = RoundRobinScheduler(store)
    item = _item(7, "plan")

    scheduler.mark_processed(item)

    assert scheduler.last_processed_key == "issue_7_plan"
    assert store.writes[0][0] == "issue_7_plan"
    assert store.writes[0][1]


def test_has_work_honours_paused_numbers() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue([_item(1), _item(2)])

    assert scheduler.has_work() is True
    assert scheduler.has_work(paused_numbers={1}) is True
    assert scheduler.has_work(paused_numbers={1, 2}) is False


def test_stats_counts_by_processor_and_priority() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue([_item(1, "plan"), _item(2, "build"), _item(3, "review")])
    scheduler.mark_processed(scheduler.queue[0])

    stats = scheduler.stats()

    assert stats["total"] == 3
    assert stats["by_processor"] == {"plan": 1, "build": 1, "review": 1}
    assert stats["by_priority"] == {1: 1, 2: 2}
    assert stats["last_processed_key"] == "issue_1_plan"


def test_plan_items_are_returned_before_other_items() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore())
    scheduler.refresh_queue(
        [_item(1, "build"), _item(2, "plan"), _item(3, "ci_fix"), _item(4, "plan")]
    )

    seen = []
    for _ in range(2):
        item = scheduler.next_item()
        seen.append(item.processor_type)
        scheduler.mark_processed(item)

    assert seen == ["plan", "plan"]


def test_cursor_survives_scheduler_recreation(tmp_path: Path) -> None:
    store = StateStore(tmp_path, "acme/widgets", db_path=tmp_path / "state.sqlite")
    items = [_item(1), _item(2), _item(3)]
    first = RoundRobinScheduler(store)
    first.refresh_queue(items)
    first.mark_processed(items[0])
    store.close()

    reopened = StateStore(tmp_path, "acme/widgets", db_path=tmp_path / "state.sqlite")
    second = RoundRobinScheduler(reopened)
    second.refresh_queue(items)

    assert second.next_item() == items[1]
    assert reopened.round_robin_last_processed_at is not None


def test_removed_cursor_item_restarts_from_head() -> None:
    scheduler = RoundRobinScheduler(FakePositionStore("issue_99_build"))
    scheduler.refresh_queue([_item(4), _item(5)])

    assert scheduler.next_item().number == 4


def test_work_item_key_and_validation() -> None:
    item = WorkItem(number=12, item_type="pr", processor_type="ci_fix", label="fix", data={"a": 1})
    assert item.key == "pr_12_ci_fix"
    assert item.priority == 2
    assert item.is_pr and not item.is_issue
    assert item == WorkItem(number=12, item_type="pr", processor_type="ci_fix", label="fix")

    with pytest.raises(ValueError, match="unknown_item_type"):
        WorkItem(number=1, item_type="discussion", processor_type="plan", label="x")
    with pytest.raises(ValueError, match="unknown_processor_type"):
        WorkItem(number=1, item_type="issue", processor_type="deploy", label="x")
