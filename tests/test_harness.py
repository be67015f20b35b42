from __future__ import annotations

import sys
from pathlib import Path

import pytest

from issue_pilot.control_plane.jobs.harness import CommandHarness, build_prompt, command_harness_factory
from issue_pilot.shared.settings import HarnessConfig


def _python(script: str) -> list[str]:
    return [sys.executable, "-c", script]


def test_build_prompt_skips_empty_options() -> None:
    prompt = build_prompt("build", {"title": "Login", "body": "", "number": 4})

    assert prompt == "Mode: build\nnumber: 4\ntitle: Login\n"


def test_successful_run_keeps_output_tail_as_message(capsys: pytest.CaptureFixture[str]) -> None:
    script = "import sys\nprint(sys.stdin.read().splitlines()[0])\nfor i in range(30):\n    print(f'line {i}')"
    harness = CommandHarness(_python(script), Path.cwd(), "plan", {"number": 1})

    result = harness.run()

    assert result["status"] == "completed"
    lines = result["message"].splitlines()
    assert len(lines) == 20
    assert lines[-1] == "line 29"
    assert "Mode: plan" in capsys.readouterr().out


def test_nonzero_exit_reports_failed_with_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    script = "import sys\nsys.stdin.read()\nprint('provider unavailable', file=sys.stderr)\nsys.exit(3)"

    result = CommandHarness(_python(script), Path.cwd(), "review").run()

    assert result == {"status": "failed", "message": "provider unavailable", "returncode": 3}


def test_timeout_kills_the_command(capsys: pytest.CaptureFixture[str]) -> None:
    script = "import time\ntime.sleep(30)"

    result = CommandHarness(_python(script), Path.cwd(), "build", timeout_seconds=1).run()

    assert result == {"status": "error", "message": "timed out after 1s"}


def test_missing_command_is_an_error() -> None:
    result = CommandHarness(["issue-pilot-no-such-binary"], Path.cwd(), "build").run()

    assert result["status"] == "error"


def test_factory_runs_jobs_inside_their_worktree(tmp_path: Path) -> None:
    worktree = tmp_path / "issue-3-login"
    worktree.mkdir()
    factory = command_harness_factory(HarnessConfig(command=["true"]), tmp_path)

    assert factory("build", {"worktree": str(worktree)}).project_dir == worktree
    assert factory("plan", {}).project_dir == tmp_path
