"""Detached background execution of harness runs with file-based job tracking.

Each job owns ``<jobs_dir>/<job_id>/`` holding ``metadata.yml`` and
``output.log``. The parent writes the initial metadata and the pid, then hands
ownership to the detached child, which alone writes the final status. The
parent writes again only when asked to stop the job.
"""

from __future__ import annotations

import logging
import os
import secrets
import signal
import sys
import tempfile
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, NoReturn

import yaml

from issue_pilot.control_plane.jobs.harness import HarnessRunner, command_harness_factory
from issue_pilot.shared.settings import StorageSettings, load_watch_config

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.yml"
LOG_FILENAME = "output.log"
STUCK_AFTER_SECONDS = 600
STOP_POLL_ATTEMPTS = 10
STOP_POLL_INTERVAL_SECONDS = 0.5
FAILED_RESULT_STATUSES = {"error", "failed"}

HarnessFactory = Callable[[str, dict[str, Any]], HarnessRunner]


def generate_job_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{secrets.token_hex(4)}"


def process_running(pid: int | None) -> bool:
    if not pid:
        return False
    try:
        os.kill(int(pid), 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BackgroundRunner:
    def __init__(
        self,
        project_dir: Path | str,
        jobs_dir: Path | str | None = None,
        harness_factory: HarnessFactory | None = None,
    ) -> None:
        self.project_dir = Path(project_dir)
        settings = StorageSettings.from_env(self.project_dir)
        self.jobs_dir = Path(jobs_dir) if jobs_dir is not None else settings.jobs_dir
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        if harness_factory is None:
            config = load_watch_config(settings.config_path)
            harness_factory = command_harness_factory(config.harness, self.project_dir)
        self.harness_factory = harness_factory

    def job_dir(self, job_id: str) -> Path:
        return self.jobs_dir / job_id

    def log_path(self, job_id: str) -> Path:
        return self.job_dir(job_id) / LOG_FILENAME

    def start(self, mode: str, **options: Any) -> str:
        """Launch ``mode`` in a detached process and return its job id immediately."""

        job_id = generate_job_id()
        self.job_dir(job_id).mkdir(parents=True)
        self._write_metadata(
            job_id,
            {
                "job_id": job_id,
                "mode": mode,
                "status": "running",
                "pid": None,
                "started_at": _now(),
                "finished_at": None,
                "options": dict(options),
            },
        )

        pid_read, pid_write = os.pipe()
        go_read, go_write = os.pipe()
        child = os.fork()
        if child == 0:
            os.close(pid_read)
            os.close(go_write)
            self._detach(job_id, mode, dict(options), pid_write, go_read)

        os.close(pid_write)
        os.close(go_read)
        os.waitpid(child, 0)
        with os.fdopen(pid_read, "rb") as reader:
            raw_pid = reader.read().strip()

        if not raw_pid:
            os.close(go_write)
            self._update_metadata(
                job_id, status="error", finished_at=_now(), error={"message": "fork_failed"}
            )
            logger.error("Background job %s failed to start", job_id)
            return job_id

        pid = int(raw_pid)
        self._update_metadata(job_id, pid=pid)
        os.write(go_write, b"1")
        os.close(go_write)
        logger.info("Started background job %s (%s) as pid %d", job_id, mode, pid)
        return job_id

    def list_jobs(self) -> list[dict[str, Any]]:
        jobs: list[dict[str, Any]] = []
        if not self.jobs_dir.is_dir():
            return jobs
        for entry in self.jobs_dir.iterdir():
            if not entry.is_dir():
                continue
            metadata = self._load_metadata(entry.name)
            if metadata is not None:
                jobs.append(metadata)
        return sorted(
            jobs,
            key=lambda job: (str(job.get("started_at") or ""), str(job.get("job_id"))),
            reverse=True,
        )

    def job_status(self, job_id: str) -> dict[str, Any] | None:
        metadata = self._load_metadata(job_id)
        if metadata is None:
            return None

        running = process_running(metadata.get("pid"))
        status = metadata.get("status")
        reason = None
        if status == "running" and not running:
            status, reason = "error", "process_exited_without_status"
        elif status == "running" and self._seconds_since_activity(job_id) > STUCK_AFTER_SECONDS:
            status, reason = "stuck", "no_activity"

        return {
            **metadata,
            "status": status,
            "reason": reason,
            "running": running,
            "log_file": str(self.log_path(job_id)),
        }

    def stop_job(self, job_id: str) -> dict[str, Any]:
        metadata = self._load_metadata(job_id)
        if metadata is None:
            return {"success": False, "message": "Job not found"}
        if metadata.get("status") == "stopped":
            return {"success": True, "message": "Job already stopped"}
        pid = metadata.get("pid")
        if not pid:
            return {"success": False, "message": "Job has no recorded pid"}
        if not process_running(pid):
            return {"success": False, "message": "Job is not running"}

        try:
            os.kill(pid, signal.SIGTERM)
            for _ in range(STOP_POLL_ATTEMPTS):
                time.sleep(STOP_POLL_INTERVAL_SECONDS)
                if not process_running(pid):
                    break
            if process_running(pid):
                logger.warning("Job %s ignored SIGTERM, sending SIGKILL", job_id)
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

        self._update_metadata(job_id, status="stopped", finished_at=_now())
        logger.info("Stopped background job %s", job_id)
        return {"success": True, "message": f"Job {job_id} stopped"}

    def job_logs(self, job_id: str, tail: int | None = None) -> str | None:
        path = self.log_path(job_id)
        if not path.exists():
            return None
        content = path.read_text(encoding="utf-8", errors="replace")
        if tail is None:
            return content
        if tail <= 0:
            return ""
        return "".join(content.splitlines(keepends=True)[-tail:])

    def _detach(
        self, job_id: str, mode: str, options: dict[str, Any], pid_write: int, go_read: int
    ) -> NoReturn:
        # Intermediate child: new session, fork the worker, report its pid, exit.
        try:
            os.setsid()
            worker = os.fork()
            if worker == 0:
                os.close(pid_write)
                self._run_job(job_id, mode, options, go_read)
            os.write(pid_write, str(worker).encode())
        finally:
            os._exit(0)

    def _run_job(self, job_id: str, mode: str, options: dict[str, Any], go_read: int) -> NoReturn:
        exit_code = 0
        try:
            os.read(go_read, 1)
            os.close(go_read)
            devnull = os.open(os.devnull, os.O_RDONLY)
            os.dup2(devnull, 0)
            log_fd = os.open(self.log_path(job_id), os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            os.dup2(log_fd, 1)
            os.dup2(log_fd, 2)

            print(f"[{_now()}] Starting {mode} mode in background", flush=True)
            print(f"[{_now()}] Job ID: {job_id}", flush=True)
            print(f"[{_now()}] PID: {os.getpid()}", flush=True)

            result = self.harness_factory(mode, {**options, "job_id": job_id}).run()
            result = _plain(result)
            status = "error" if result.get("status") in FAILED_RESULT_STATUSES else "completed"
            print(f"[{_now()}] Job finished with status: {result.get('status')}", flush=True)
            self._update_metadata(job_id, status=status, finished_at=_now(), result=result)
        except Exception as exc:
            exit_code = 1
            trace = traceback.format_exc()
            print(f"[{_now()}] Job failed with error: {exc}", flush=True)
            print(trace, file=sys.stderr, flush=True)
            self._update_metadata(
                job_id,
                status="error",
                finished_at=_now(),
                error={"message": str(exc), "type": type(exc).__name__, "traceback": trace},
            )
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(exit_code)

    def _seconds_since_activity(self, job_id: str) -> float:
        candidates = [self.log_path(job_id), self.job_dir(job_id) / METADATA_FILENAME]
        mtimes = [path.stat().st_mtime for path in candidates if path.exists()]
        if not mtimes:
            return 0.0
        return time.time() - max(mtimes)

    def _load_metadata(self, job_id: str) -> dict[str, Any] | None:
        path = self.job_dir(job_id) / METADATA_FILENAME
        if not path.exists():
            return None
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Skipping unreadable job metadata %s: %s", path, exc)
            return None
        if not isinstance(payload, dict) or not payload.get("job_id"):
            logger.warning("Skipping malformed job metadata %s", path)
            return None
        return payload

    def _update_metadata(self, job_id: str, **fields: Any) -> None:
        metadata = self._load_metadata(job_id) or {"job_id": job_id}
        metadata.update(fields)
        self._write_metadata(job_id, metadata)

    def _write_metadata(self, job_id: str, metadata: dict[str, Any]) -> None:
        job_dir = self.job_dir(job_id)
        fd, tmp_name = tempfile.mkstemp(dir=job_dir, prefix=".metadata-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(metadata, handle, sort_keys=False)
            os.replace(tmp_name, job_dir / METADATA_FILENAME)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def _plain(value: Any) -> Any:
    """Reduce a harness result to YAML-safe builtins."""

    if isinstance(value, dict):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
