"""Shared runtime settings for local-first disk-backed storage and watch config."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIRNAME = ".issue-pilot"
CONFIG_FILENAME = "config.yml"


@dataclass(frozen=True)
class StorageSettings:
    """Filesystem and SQLite locations for one project checkout."""

    project_dir: Path
    data_dir: Path
    sqlite_path: Path
    jobs_dir: Path
    worktrees_dir: Path

    @classmethod
    def from_env(
        cls, project_dir: Path | str = ".", env: dict[str, str] | None = None
    ) -> "StorageSettings":
        source = os.environ if env is None else env
        project = Path(project_dir).resolve()
        data_dir = Path(source.get("ISSUE_PILOT_DATA_DIR", str(project / DEFAULT_DATA_DIRNAME)))
        sqlite_path = Path(
            source.get("ISSUE_PILOT_SQLITE_PATH", str(data_dir / "state" / "watch_state.sqlite"))
        )
        jobs_dir = Path(source.get("ISSUE_PILOT_JOBS_DIR", str(data_dir / "jobs")))
        worktrees_dir = Path(source.get("ISSUE_PILOT_WORKTREES_DIR", str(project / ".worktrees")))
        return cls(
            project_dir=project,
            data_dir=data_dir,
            sqlite_path=sqlite_path,
            jobs_dir=jobs_dir,
            worktrees_dir=worktrees_dir,
        )

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME

    @property
    def worktree_registry_path(self) -> Path:
        return self.data_dir / "worktrees.json"

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self.jobs_dir.mkdir(parents=True, exist_ok=True)


def get_storage_settings(
    project_dir: Path | str = ".", env: dict[str, str] | None = None
) -> StorageSettings:
    """Build and hydrate storage settings from environment variables."""

    settings = StorageSettings.from_env(project_dir, env)
    settings.ensure_directories()
    return settings


class LabelConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan: str = "issue-pilot-plan"
    build: str = "issue-pilot-build"
    review: str = "issue-pilot-review"
    ci_fix: str = "issue-pilot-fix-ci"
    change_request: str = "issue-pilot-request-changes"
    rebase: str = "issue-pilot-rebase"
    paused: str = "issue-pilot-paused"


class WorktreeCleanupConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    frequency: str = "weekly"
    base_branch: str = "main"
    delete_branch: bool = True


class WorktreeReconciliationConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    interval_seconds: int = Field(default=300, ge=0)
    base_branch: str = "main"
    auto_resume: bool = True
    auto_reconcile: bool = True


class HarnessConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    command: list[str] = Field(default_factory=lambda: ["claude", "--print"])
    timeout_seconds: int = Field(default=3600, ge=1)


class WatchConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval_seconds: float = Field(default=60.0, ge=0)
    labels: LabelConfig = Field(default_factory=LabelConfig)
    worktree_cleanup: WorktreeCleanupConfig = Field(default_factory=WorktreeCleanupConfig)
    worktree_reconciliation: WorktreeReconciliationConfig = Field(
        default_factory=WorktreeReconciliationConfig
    )
    harness: HarnessConfig = Field(default_factory=HarnessConfig)


_SECTION_MODELS: dict[str, type[BaseModel]] = {
    "labels": LabelConfig,
    "worktree_cleanup": WorktreeCleanupConfig,
    "worktree_reconciliation": WorktreeReconciliationConfig,
    "harness": HarnessConfig,
}


def parse_watch_config(raw: Any) -> WatchConfig:
    """Build a WatchConfig, replacing any invalid section with its defaults.

    The daemon runs unattended, so a bad value never stops it from starting.
    """

    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Ignoring watch config of type %s", type(raw).__name__)
        return WatchConfig()

    values: dict[str, Any] = {}
    for key, model in _SECTION_MODELS.items():
        section = raw.get(key)
        if section is None:
            continue
        try:
            values[key] = model.model_validate(section)
        except ValidationError as exc:
            logger.warning("Invalid %s config, using defaults: %s", key, exc.errors())

    if "interval_seconds" in raw:
        try:
            interval = float(raw["interval_seconds"])
        except (TypeError, ValueError):
            logger.warning("Invalid interval_seconds %r, using default", raw["interval_seconds"])
        else:
            if interval >= 0:
                values["interval_seconds"] = interval
            else:
                logger.warning("Negative interval_seconds %r, using default", interval)
    return WatchConfig(**values)


def load_watch_config(path: Path | str) -> WatchConfig:
    """Load watch configuration from a YAML file; missing or unreadable files yield defaults."""

    config_path = Path(path)
    if not config_path.exists():
        return WatchConfig()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Could not read watch config %s: %s", config_path, exc)
        return WatchConfig()
    return parse_watch_config(raw)
