"""Schedulable work item contract shared by the watch cycle and the scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ITEM_TYPES = ("issue", "pr")
PROCESSOR_TYPES = ("plan", "build", "review", "ci_fix", "change_request", "rebase")

# Plans gate all downstream work on an issue.
PROCESSOR_PRIORITIES: dict[str, int] = {"plan": 1}
DEFAULT_PRIORITY = 2


def processor_priority(processor_type: str) -> int:
    return PROCESSOR_PRIORITIES.get(processor_type, DEFAULT_PRIORITY)


@dataclass(frozen=True)
class WorkItem:
    number: int
    item_type: str
    processor_type: str
    label: str
    data: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if self.item_type not in ITEM_TYPES:
            raise ValueError(f"unknown_item_type:{self.item_type}")
        if self.processor_type not in PROCESSOR_TYPES:
            raise ValueError(f"unknown_processor_type:{self.processor_type}")

    @property
    def key(self) -> str:
        return f"{self.item_type}_{self.number}_{self.processor_type}"

    @property
    def priority(self) -> int:
        return processor_priority(self.processor_type)

    @property
    def is_issue(self) -> bool:
        return self.item_type == "issue"

    @property
    def is_pr(self) -> bool:
        return self.item_type == "pr"
