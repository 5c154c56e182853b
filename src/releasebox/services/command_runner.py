"""Subprocess execution service for releasebox."""

import os
import subprocess
import time
from typing import Dict, Iterable, List, Optional

from releasebox.errors import ReleaseboxError


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        retry_on_returncodes: Optional[Iterable[int]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        shell: bool = False,
    ) -> subprocess.CompletedProcess:
        cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = max(1, retry_count + 1)
        retry_codes = set(retry_on_returncodes or [])

        for attempt in range(1, max_attempts + 1):
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=effective_timeout,
                    cwd=cwd,
                    env=env,
                    shell=shell,
                )
            except FileNotFoundError as exc:
                executable = (cmd.split() or [cmd])[0] if isinstance(cmd, str) else cmd[0]
                if cwd and not os.path.isdir(cwd):
                    raise ReleaseboxError(f"Working directory not found for `{executable}`: {cwd}") from exc
                raise ReleaseboxError(
                    f"Required command not found: {executable}. Please install it and try again."
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        retry_backoff_seconds,
                        cmd_str,
                    )
                    time.sleep(retry_backoff_seconds)
                    continue
                raise ReleaseboxError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}"
                ) from exc
            except OSError as exc:
                raise ReleaseboxError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", result.stdout.strip())

            if result.returncode == 0:
                return result

            output = ""
            if capture_output:
                output = "\n".join(
                    part.strip() for part in (result.stdout, result.stderr) if part and part.strip()
                )
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if output:
                message = f"{message}\n{output}"

            can_retry = attempt < max_attempts and (
                not retry_codes or result.returncode in retry_codes
            )
            if can_retry:
                self.logger.warning(
                    "Command failed on attempt %s/%s and will be retried in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    retry_backoff_seconds,
                    message,
                )
                time.sleep(retry_backoff_seconds)
                continue

            if check:
                raise ReleaseboxError(message)

            self.logger.warning(message)
            return result

        raise ReleaseboxError(f"Command failed after retries: {cmd_str}")
