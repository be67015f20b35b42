"""issue-pilot CLI."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import typer

from issue_pilot.control_plane.db.state_store import StateStore
from issue_pilot.control_plane.github.repository_client import build_client_from_env
from issue_pilot.control_plane.jobs.background_runner import BackgroundRunner
from issue_pilot.control_plane.jobs.harness import command_harness_factory
from issue_pilot.control_plane.models.work_items import PROCESSOR_TYPES
from issue_pilot.control_plane.orchestration.cleanup import WorktreeCleanupJob
from issue_pilot.control_plane.orchestration.processors import (
    BuildProcessor,
    HarnessProcessor,
    recording_harness_factory,
)
from issue_pilot.control_plane.orchestration.reconciler import WorktreeReconciler
from issue_pilot.control_plane.orchestration.watch_runner import WatchRunner
from issue_pilot.control_plane.worktrees.worktree import WorktreeManager
from issue_pilot.shared.settings import WatchConfig, get_storage_settings, load_watch_config

app = typer.Typer(add_completion=False, help="issue-pilot: GitHub issue automation daemon")
jobs_app = typer.Typer(add_completion=False, help="Background harness jobs")
worktrees_app = typer.Typer(add_completion=False, help="Worktree maintenance")
app.add_typer(jobs_app, name="jobs")
app.add_typer(worktrees_app, name="worktrees")

PROJECT_DIR_OPTION = typer.Option(Path("."), "--project-dir", help="Project checkout root")


def configure_logging(level: str | None = None) -> None:
    name = (level or os.getenv("ISSUE_PILOT_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _load_config(project_dir: Path) -> WatchConfig:
    settings = get_storage_settings(project_dir)
    return load_watch_config(settings.config_path)


def _parse_options(raw_options: list[str]) -> dict[str, str]:
    options: dict[str, str] = {}
    for raw in raw_options:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected key=value, got {raw!r}")
        options[key.strip()] = value
    return options


def _build_watch_runner(project_dir: Path, repo: str, once: bool) -> WatchRunner:
    config = _load_config(project_dir)
    repository = build_client_from_env(repo)
    state_store = StateStore(project_dir, repo)
    worktrees = WorktreeManager(project_dir)
    factory = command_harness_factory(config.harness, project_dir)
    background = BackgroundRunner(
        project_dir, harness_factory=recording_harness_factory(factory, state_store)
    )
    processors: dict[str, Any] = {
        processor_type: HarnessProcessor(processor_type, state_store, factory)
        for processor_type in PROCESSOR_TYPES
        if processor_type != "build"
    }
    processors["build"] = BuildProcessor(
        state_store,
        worktrees,
        background,
        base_branch=config.worktree_reconciliation.base_branch,
    )
    return WatchRunner(
        repository=repository,
        state_store=state_store,
        processors=processors,
        worktrees=worktrees,
        config=config,
        once=once,
    )


@app.callback()
def main(
    log_level: str = typer.Option(None, "--log-level", help="Logging level (default INFO)"),
) -> None:
    configure_logging(log_level)


@app.command()
def watch(
    repo: str = typer.Option(..., "--repo", help="owner/name of the watched repository"),
    once: bool = typer.Option(False, "--once", help="Run a single cycle and exit"),
    interval: float = typer.Option(None, "--interval", help="Seconds between cycles"),
    project_dir: Path = PROJECT_DIR_OPTION,
) -> None:
    """Watch a repository and dispatch labelled issues and pull requests."""

    runner = _build_watch_runner(project_dir, repo, once)
    if interval is not None:
        if interval < 0:
            raise typer.BadParameter("--interval must be >= 0")
        runner.config = runner.config.model_copy(update={"interval_seconds": interval})
    try:
        runner.start()
    except KeyboardInterrupt:
        typer.echo("Watch stopped.")


@jobs_app.command("list")
def jobs_list(project_dir: Path = PROJECT_DIR_OPTION) -> None:
    runner = BackgroundRunner(project_dir)
    rows = []
    for job in runner.list_jobs():
        status = runner.job_status(str(job["job_id"])) or job
        rows.append(
            {
                "job_id": status.get("job_id"),
                "mode": status.get("mode"),
                "status": status.get("status"),
                "started_at": status.get("started_at"),
            }
        )
    _echo_json(rows)


@jobs_app.command("status")
def jobs_status(job_id: str, project_dir: Path = PROJECT_DIR_OPTION) -> None:
    status = BackgroundRunner(project_dir).job_status(job_id)
    if status is None:
        typer.echo(f"Job not found: {job_id}", err=True)
        raise typer.Exit(code=1)
    _echo_json(status)


@jobs_app.command("stop")
def jobs_stop(job_id: str, project_dir: Path = PROJECT_DIR_OPTION) -> None:
    result = BackgroundRunner(project_dir).stop_job(job_id)
    _echo_json(result)
    if not result["success"]:
        raise typer.Exit(code=1)


@jobs_app.command("logs")
def jobs_logs(
    job_id: str,
    tail: int = typer.Option(None, "--tail", help="Only show the last N lines"),
    project_dir: Path = PROJECT_DIR_OPTION,
) -> None:
    logs = BackgroundRunner(project_dir).job_logs(job_id, tail=tail)
    if logs is None:
        typer.echo(f"No logs for job: {job_id}", err=True)
        raise typer.Exit(code=1)
    typer.echo(logs, nl=False)


@jobs_app.command("start")
def jobs_start(
    mode: str,
    option: list[str] = typer.Option(None, "--option", help="Harness option as key=value"),
    project_dir: Path = PROJECT_DIR_OPTION,
) -> None:
    options = _parse_options(option or [])
    job_id = BackgroundRunner(project_dir).start(mode, **options)
    typer.echo(job_id)


@worktrees_app.command("reconcile")
def worktrees_reconcile(
    repo: str = typer.Option(..., "--repo"),
    project_dir: Path = PROJECT_DIR_OPTION,
) -> None:
    runner = _build_watch_runner(project_dir, repo, once=True)
    reconciler: WorktreeReconciler = runner.reconciler
    result = reconciler.execute()
    runner.state_store.record_worktree_reconciliation(result)
    _echo_json(result)


@worktrees_app.command("cleanup")
def worktrees_cleanup(project_dir: Path = PROJECT_DIR_OPTION) -> None:
    config = _load_config(project_dir)
    result = WorktreeCleanupJob(WorktreeManager(project_dir), config.worktree_cleanup).execute()
    _echo_json(result)


if __name__ == "__main__":
    app()
