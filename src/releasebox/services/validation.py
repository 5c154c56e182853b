"""Input and URL validation helpers for releasebox."""

import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests
from packaging import version as packaging_version

from releasebox.constants import SOURCE_ARCHIVE_EXTENSIONS
from releasebox.errors import ReleaseboxError
from releasebox.errors_catalog import actionable_error

_SHA256_RE = re.compile(r"[0-9a-f]{64}")


class ValidationService:
    """Validates remote locations, checksums, versions and project layout."""

    def __init__(self, allow_insecure_http: bool = False, requests_module=requests):
        self.allow_insecure_http = allow_insecure_http
        self.requests = requests_module

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def get_archive_extension(self, location: str) -> str:
        path = urlparse(location).path if self.is_url(location) else location
        lowered = path.lower()
        for extension in SOURCE_ARCHIVE_EXTENSIONS:
            if lowered.endswith(extension):
                return extension
        return Path(lowered).suffix

    def ensure_supported_archive(self, location: str):
        if self.get_archive_extension(location) not in SOURCE_ARCHIVE_EXTENSIONS:
            supported = ", ".join(f"`{ext}`" for ext in SOURCE_ARCHIVE_EXTENSIONS)
            raise ReleaseboxError(
                f"Unsupported source archive: {location}. Supported formats are {supported}."
            )

    def enforce_https_policy(self, location: str, label: str, logger, console):
        if not self.is_url(location):
            return

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise ReleaseboxError(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
            console.print(
                f"[yellow]Warning:[/yellow] Using insecure HTTP for {label}. "
                "Prefer HTTPS whenever possible."
            )

    def check_url_reachable(self, location: str, label: str, logger, console):
        self.enforce_https_policy(location, label, logger, console)

        last_error: Optional[Exception] = None
        for method in ("HEAD", "GET"):
            try:
                response = self.requests.request(
                    method,
                    location,
                    allow_redirects=True,
                    timeout=30,
                    stream=(method == "GET"),
                )
                response.raise_for_status()
                response.close()
                return
            except self.requests.RequestException as exc:
                last_error = exc

        raise ReleaseboxError(f"{label} is not accessible: {last_error}")

    @staticmethod
    def normalize_sha256(value: Optional[str], label: str) -> Optional[str]:
        if value is None:
            return None

        clean_value = str(value).strip().lower()
        if not _SHA256_RE.fullmatch(clean_value):
            raise ReleaseboxError(f"{label} must be a valid SHA-256 hash (64 hexadecimal characters).")
        return clean_value

    @staticmethod
    def validate_version(value: Optional[str]) -> str:
        if value is None or not str(value).strip():
            raise ReleaseboxError(actionable_error("missing_version"))

        clean_value = str(value).strip()
        try:
            packaging_version.Version(clean_value)
        except packaging_version.InvalidVersion as exc:
            raise ReleaseboxError(
                f"Invalid release version '{clean_value}'. Use a version such as `1.2.3` or `v1.2.3-rc.1`."
            ) from exc
        return clean_value

    @staticmethod
    def validate_workdir(path: str):
        workdir = Path(path)
        if not workdir.exists() or not workdir.is_dir():
            raise ReleaseboxError(actionable_error("workdir_not_found", path=path))

    @staticmethod
    def validate_project_root(path: str):
        if not (Path(path) / "Cargo.toml").is_file():
            raise ReleaseboxError(actionable_error("not_a_cargo_project", path=path))
