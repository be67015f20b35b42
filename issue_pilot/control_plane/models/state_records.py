from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

BuildStatus = Literal["pending", "running", "completed", "failed"]
ChangeRequestStatus = Literal[
    "completed",
    "no_changes",
    "needs_clarification",
    "cannot_implement",
    "incomplete_implementation",
    "verification_error",
    "error",
]


class PlanRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: str = "plan/v1"
    summary: str | None = None
    tasks: list[Any] = Field(default_factory=list)
    questions: list[Any] = Field(default_factory=list)
    comment_body: str | None = None
    comment_hint: str | None = None
    comment_id: str | None = None
    posted_at: str
    iteration: int = Field(default=1, ge=1)
    previous_iteration_at: str | None = None


class BuildRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = "build/v1"
    status: BuildStatus
    branch: str | None = None
    workstream: str | None = None
    pr_url: str | None = None
    comment_id: str | None = None
    updated_at: str


class ReviewRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = "review/v1"
    timestamp: str
    reviewers: list[str] = Field(default_factory=list)
    total_findings: int | None = None
    comment_id: str | None = None


class CiFixRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = "ci_fix/v1"
    status: str = Field(min_length=1)
    timestamp: str
    reason: str | None = None
    root_causes: list[Any] = Field(default_factory=list)
    fixes_count: int | None = None


class ChangeRequestRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = "change_request/v1"
    status: ChangeRequestStatus
    timestamp: str
    changes_applied: int | None = None
    commits: list[str] = Field(default_factory=list)
    reason: str | None = None
    clarification_count: int = Field(default=0, ge=0)
    verification_reasons: list[str] = Field(default_factory=list)
    missing_items: list[str] = Field(default_factory=list)
    additional_work: list[str] = Field(default_factory=list)


class RebaseRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    schema_version: str = "rebase/v1"
    status: str = Field(min_length=1)
    timestamp: str
    branch: str | None = None
    reason: str | None = None


class RoundRobinPosition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    last_key: str | None = None
    processed_at: str | None = None
