"""Priority round-robin scheduler for watch-mode work items."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Collection, Iterable
from datetime import datetime, timezone
from typing import Any, Protocol

from issue_pilot.control_plane.models.work_items import WorkItem

logger = logging.getLogger(__name__)


class RoundRobinPositionStore(Protocol):
    @property
    def round_robin_last_key(self) -> str | None: ...

    def record_round_robin_position(
        self, last_key: str, processed_at: str | None = None
    ) -> None: ...


class RoundRobinScheduler:
    """Rotates fairly through a priority-ordered snapshot of work items.

    Only the cursor is persisted; the queue itself is rebuilt from live GitHub
    listings every cycle. When the persisted cursor no longer matches any item
    in the current queue, rotation restarts from the head of the queue.
    """

    def __init__(self, state_store: RoundRobinPositionStore) -> None:
        self.state_store = state_store
        self.queue: list[WorkItem] = []
        self.last_processed_key: str | None = state_store.round_robin_last_key

    def refresh_queue(self, items: Iterable[WorkItem]) -> None:
        # sorted() is stable, so discovery order is kept within a priority band.
        self.queue = sorted(items, key=lambda item: item.priority)
        logger.debug("Scheduler queue refreshed with %d items", len(self.queue))

    def next_item(self, paused_numbers: Collection[int] = ()) -> WorkItem | None:
        if not self.queue:
            return None
        paused = set(paused_numbers)
        start = self._start_index()
        size = len(self.queue)
        for offset in range(size):
            item = self.queue[(start + offset) % size]
            if item.number not in paused:
                return item
        return None

    def mark_processed(self, item: WorkItem) -> None:
        self.last_processed_key = item.key
        self.state_store.record_round_robin_position(
            last_key=item.key,
            processed_at=datetime.now(timezone.utc).isoformat(),
        )

    def has_work(self, paused_numbers: Collection[int] = ()) -> bool:
        paused = set(paused_numbers)
        return any(item.number not in paused for item in self.queue)

    def stats(self) -> dict[str, Any]:
        return {
            "total": len(self.queue),
            "by_processor": dict(Counter(item.processor_type for item in self.queue)),
            "by_priority": dict(Counter(item.priority for item in self.queue)),
            "last_processed_key": self.last_processed_key,
        }

    def _start_index(self) -> int:
        if not self.last_processed_key:
            return 0
        for index, item in enumerate(self.queue):
            if item.key == self.last_processed_key:
                return index + 1
        logger.debug(
            "Last processed key %s not in queue, restarting rotation", self.last_processed_key
        )
        return 0
