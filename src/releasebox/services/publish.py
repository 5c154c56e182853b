"""Artifact upload service with retry and backoff."""

import os
import time
from typing import Optional

from releasebox.errors import ReleaseboxError

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class PublishService:
    """Uploads release artifacts to an HTTP endpoint."""

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

    def artifact_url(self, base_url: str, release_version: str, filename: str) -> str:
        return f"{base_url.rstrip('/')}/{release_version}/{filename}"

    def upload(self, base_url: str, release_version: str, artifact_path: str, token: Optional[str]) -> str:
        filename = os.path.basename(artifact_path)
        url = self.artifact_url(base_url, release_version, filename)
        self.validation_service.enforce_https_policy(url, "publish URL", self.logger, self.console)

        headers = {"Content-Type": "application/octet-stream"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        max_attempts = self.retry_count + 1
        for attempt in range(1, max_attempts + 1):
            try:
                with open(artifact_path, "rb") as file_obj:
                    response = self.requests.put(url, data=file_obj, headers=headers, timeout=self.timeout)
            except self.requests.RequestException as exc:
                failure = f"Upload of {filename} failed: {exc}"
                retryable = True
            else:
                status = response.status_code
                if status < 400:
                    self.logger.info("Published %s to %s", filename, url)
                    return url
                failure = f"Upload of {filename} failed with HTTP {status}."
                retryable = status in RETRYABLE_STATUS_CODES

            if retryable and attempt < max_attempts:
                self.logger.warning(
                    "%s Attempt %s/%s, retrying in %.1fs.",
                    failure,
                    attempt,
                    max_attempts,
                    self.retry_backoff_seconds,
                )
                time.sleep(self.retry_backoff_seconds)
                continue
            raise ReleaseboxError(failure)

        raise ReleaseboxError(f"Upload of {filename} failed after retries.")
