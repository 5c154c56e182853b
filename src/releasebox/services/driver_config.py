"""Release driver configuration sourced from the environment and an optional YAML file."""

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from releasebox.constants import DEFAULT_CONFIG_FILE, OUTPUT_MOUNT_DIRNAME
from releasebox.errors import ReleaseboxError
from releasebox.services.config_loader import ConfigLoader
from releasebox.services.validation import ValidationService

ENV_PREFIX = "RELEASE_"
DEFAULT_TOKEN_ENV = "RELEASE_PUBLISH_TOKEN"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class DriverConfig:
    """Named, validated inputs of a release run."""

    version: str
    workdir: str
    output_dir: str
    project: Optional[str] = None
    source_url: Optional[str] = None
    source_sha256: Optional[str] = None
    targets: Tuple[str, ...] = ()
    features: Tuple[str, ...] = ()
    binaries: Tuple[str, ...] = ()
    publish_url: Optional[str] = None
    publish_token_env: str = DEFAULT_TOKEN_ENV
    retry_count: int = 3
    retry_backoff_seconds: float = 2.0
    download_timeout: float = 60.0
    build_timeout_minutes: int = 120
    allow_insecure_http: bool = False
    dry_run: bool = False
    verbose: bool = False
    source_date_epoch: int = 0

    def publish_token(self, environ: Mapping[str, str]) -> Optional[str]:
        return environ.get(self.publish_token_env) or None

    def redacted(self) -> Dict[str, Any]:
        data = asdict(self)
        data["targets"] = list(self.targets)
        data["features"] = list(self.features)
        data["binaries"] = list(self.binaries)
        return data


def parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    clean_value = str(value).strip().lower()
    if clean_value in _TRUE_VALUES:
        return True
    if clean_value in _FALSE_VALUES:
        return False
    raise ReleaseboxError(f"`{key}` must be a boolean (1/0, true/false, yes/no, on/off), got '{value}'.")


def parse_list(value: Any, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ReleaseboxError(f"`{key}` must be a comma separated string or a list.")
    return tuple(item.strip() for item in items if item.strip())


def _parse_number(value: Any, key: str, kind, minimum):
    try:
        number = kind(value)
    except (TypeError, ValueError) as exc:
        raise ReleaseboxError(f"`{key}` must be a number, got '{value}'.") from exc
    if number < minimum:
        raise ReleaseboxError(f"`{key}` must be >= {minimum}, got {number}.")
    return number


def resolve_config_path(environ: Mapping[str, str], workdir: str) -> Optional[str]:
    explicit = environ.get(f"{ENV_PREFIX}CONFIG")
    if explicit:
        return explicit
    default_path = os.path.join(workdir, DEFAULT_CONFIG_FILE)
    if os.path.exists(default_path):
        return default_path
    return None


def load_driver_config(environ: Mapping[str, str], cwd: Optional[str] = None) -> DriverConfig:
    """Build the driver config: environment first, then the YAML file, then defaults."""
    base_dir = environ.get(f"{ENV_PREFIX}WORKDIR") or cwd or os.getcwd()
    file_values = ConfigLoader().load(resolve_config_path(environ, base_dir))

    def resolve(key: str, default: Any = None) -> Any:
        env_value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if env_value is not None and env_value != "":
            return env_value
        if key in file_values and file_values[key] is not None:
            return file_values[key]
        return default

    workdir = os.path.abspath(str(resolve("workdir", base_dir)))
    release_version = ValidationService.validate_version(resolve("version"))

    source_url = resolve("source_url")
    source_sha256 = ValidationService.normalize_sha256(resolve("source_sha256"), "RELEASE_SOURCE_SHA256")
    if source_url and not source_sha256:
        raise ReleaseboxError(
            "RELEASE_SOURCE_SHA256 is required when RELEASE_SOURCE_URL is set; "
            "source archives are only fetched when their integrity hash is pinned."
        )

    output_dir = resolve("output_dir") or os.path.join(workdir, OUTPUT_MOUNT_DIRNAME)

    return DriverConfig(
        version=release_version,
        workdir=workdir,
        output_dir=os.path.abspath(str(output_dir)),
        project=resolve("project"),
        source_url=source_url,
        source_sha256=source_sha256,
        targets=parse_list(resolve("targets"), "targets"),
        features=parse_list(resolve("features"), "features"),
        binaries=parse_list(resolve("binaries"), "binaries"),
        publish_url=resolve("publish_url"),
        publish_token_env=str(resolve("publish_token_env", DEFAULT_TOKEN_ENV)),
        retry_count=_parse_number(resolve("retry_count", 3), "retry_count", int, 0),
        retry_backoff_seconds=_parse_number(
            resolve("retry_backoff_seconds", 2.0),
            "retry_backoff_seconds",
            float,
            0.0,
        ),
        download_timeout=_parse_number(resolve("download_timeout", 60.0), "download_timeout", float, 1.0),
        build_timeout_minutes=_parse_number(
            resolve("build_timeout_minutes", 120),
            "build_timeout_minutes",
            int,
            1,
        ),
        allow_insecure_http=parse_bool(resolve("allow_insecure_http", False), "allow_insecure_http"),
        dry_run=parse_bool(resolve("dry_run", False), "dry_run"),
        verbose=parse_bool(resolve("verbose", False), "verbose"),
        source_date_epoch=_parse_number(environ.get("SOURCE_DATE_EPOCH") or 0, "SOURCE_DATE_EPOCH", int, 0),
    )
