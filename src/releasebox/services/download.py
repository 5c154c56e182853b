"""Download service with progress reporting, retries and checksum validation."""

import hashlib
import os
import time
from typing import Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from releasebox.errors import ReleaseboxError


class DownloadService:
    """Fetches remote files and verifies them against a pinned hash."""

    def __init__(
        self,
        validation_service,
        logger,
        console,
        requests_module,
        timeout: float = 60.0,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ):
        self.validation_service = validation_service
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.timeout = timeout
        self.retry_count = max(0, retry_count)
        self.retry_backoff_seconds = retry_backoff_seconds

    def download_file(
        self,
        url: str,
        dest_path: str,
        description: str = "Downloading...",
        expected_sha256: Optional[str] = None,
    ):
        self.logger.info("Downloading %s to %s", url, dest_path)
        self.validation_service.enforce_https_policy(url, description, self.logger, self.console)

        max_attempts = self.retry_count + 1
        for attempt in range(1, max_attempts + 1):
            try:
                self._fetch(url, dest_path, description, expected_sha256)
                return
            except self.requests.RequestException as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Download of %s failed on attempt %s/%s. Retrying in %.1fs: %s",
                        description,
                        attempt,
                        max_attempts,
                        self.retry_backoff_seconds,
                        exc,
                    )
                    time.sleep(self.retry_backoff_seconds)
                    continue
                raise ReleaseboxError(f"Download failed for {description}: {exc}") from exc

    def _fetch(self, url: str, dest_path: str, description: str, expected_sha256: Optional[str]):
        hasher = hashlib.sha256() if expected_sha256 else None

        with self.requests.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            total_size = int(response.headers.get("Content-Length", 0))

            os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TimeElapsedColumn(),
                console=self.console,
            ) as progress:
                task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                with open(dest_path, "wb") as file_obj:
                    for chunk in response.iter_content(chunk_size=8192):
                        if not chunk:
                            continue
                        file_obj.write(chunk)
                        if hasher:
                            hasher.update(chunk)
                        progress.update(task, advance=len(chunk))

        if hasher:
            downloaded_sha = hasher.hexdigest()
            if downloaded_sha != expected_sha256:
                try:
                    os.remove(dest_path)
                except OSError:
                    pass
                raise ReleaseboxError(
                    f"Checksum mismatch for {description}. Expected {expected_sha256}, "
                    f"but got {downloaded_sha}."
                )
