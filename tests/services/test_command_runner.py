import sys

import pytest

from releasebox.errors import ReleaseboxError
from releasebox.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_output():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseboxError, match="boom"):
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
            check=True,
            capture_output=True,
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(3)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 3


def test_command_runner_retries_before_success(tmp_path, monkeypatch):
    runner = CommandRunner(logger=DummyLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('retry-counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(1 if n == 0 else 0)"
        ),
    ]

    result = runner.run(
        command,
        check=True,
        capture_output=True,
        retry_count=1,
        retry_backoff_seconds=0.0,
    )

    assert result.returncode == 0


def test_command_runner_timeout_raises_error():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseboxError, match="timed out"):
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(2)"],
            check=True,
            capture_output=True,
            timeout=0.1,
        )


def test_command_runner_uses_working_directory(tmp_path):
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import os; print(os.getcwd())"],
        capture_output=True,
        cwd=str(tmp_path),
    )

    assert result.stdout.strip() == str(tmp_path)


def test_command_runner_reports_missing_command():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseboxError, match="Required command not found"):
        runner.run(["releasebox-definitely-missing-command"])


def test_command_runner_names_shell_command_on_missing_executable():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ReleaseboxError, match="Required command not found: releasebox-missing-tool"):
        runner.run(["releasebox-missing-tool", "--version"])


def test_command_runner_reports_missing_working_directory_for_shell_command(tmp_path):
    runner = CommandRunner(logger=DummyLogger())
    missing = tmp_path / "gone"

    with pytest.raises(ReleaseboxError) as exc_info:
        runner.run("cargo --version", cwd=str(missing), shell=True)

    assert "Working directory not found for `cargo`" in str(exc_info.value)
    assert str(missing) in str(exc_info.value)
