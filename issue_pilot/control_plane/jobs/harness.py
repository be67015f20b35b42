"""Harness contract and the subprocess-backed default harness."""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
from collections import deque
from pathlib import Path
from typing import Any, Callable, Protocol

from issue_pilot.shared.settings import HarnessConfig

logger = logging.getLogger(__name__)

MESSAGE_TAIL_LINES = 20


class HarnessRunner(Protocol):
    def run(self) -> dict[str, Any]: ...


def build_prompt(mode: str, options: dict[str, Any]) -> str:
    lines = [f"Mode: {mode}"]
    for key in sorted(options):
        value = options[key]
        if value in (None, ""):
            continue
        lines.append(f"{key}: {value}")
    return "\n".join(lines) + "\n"


class CommandHarness:
    """Runs one configured command with the job prompt on stdin."""

    def __init__(
        self,
        command: list[str],
        project_dir: Path | str,
        mode: str,
        options: dict[str, Any] | None = None,
        timeout_seconds: int = 3600,
    ) -> None:
        if not command:
            raise ValueError("empty_harness_command")
        self.command = list(command)
        self.project_dir = Path(project_dir)
        self.mode = mode
        self.options = dict(options or {})
        self.timeout_seconds = timeout_seconds

    def run(self) -> dict[str, Any]:
        prompt = build_prompt(self.mode, self.options)
        try:
            process = subprocess.Popen(
                self.command,
                cwd=self.project_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as exc:
            return {"status": "error", "message": str(exc)}

        expired = threading.Event()

        def expire() -> None:
            expired.set()
            process.kill()

        timer = threading.Timer(self.timeout_seconds, expire)
        timer.start()
        tail: deque[str] = deque(maxlen=MESSAGE_TAIL_LINES)
        try:
            try:
                process.stdin.write(prompt)
                process.stdin.close()
            except BrokenPipeError:
                pass
            # Echo as it arrives: in a background job stdout is the job log.
            for line in process.stdout:
                sys.stdout.write(line)
                sys.stdout.flush()
                tail.append(line.rstrip("\n"))
            returncode = process.wait()
        finally:
            timer.cancel()

        message = "\n".join(tail).strip()
        if expired.is_set():
            return {"status": "error", "message": f"timed out after {self.timeout_seconds}s"}
        if returncode != 0:
            logger.warning("Harness %s exited with %d", self.command[0], returncode)
            return {
                "status": "failed",
                "message": message or f"exit code {returncode}",
                "returncode": returncode,
            }
        return {"status": "completed", "message": message, "returncode": 0}


def command_harness_factory(
    config: HarnessConfig, project_dir: Path | str
) -> Callable[[str, dict[str, Any]], HarnessRunner]:
    """Builds command harnesses; jobs carrying a ``worktree`` option run inside it."""

    def factory(mode: str, options: dict[str, Any]) -> HarnessRunner:
        return CommandHarness(
            command=config.command,
            project_dir=options.get("worktree") or project_dir,
            mode=mode,
            options=options,
            timeout_seconds=config.timeout_seconds,
        )

    return factory
