"""YAML configuration loader for releasebox."""

from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from releasebox.errors import ReleaseboxError


class ConfigLoader:
    """Loads YAML mappings and rejects keys outside ``supported_keys``."""

    DRIVER_KEYS = {
        "version",
        "project",
        "workdir",
        "source_url",
        "source_sha256",
        "output_dir",
        "targets",
        "features",
        "binaries",
        "publish_url",
        "publish_token_env",
        "retry_count",
        "retry_backoff_seconds",
        "download_timeout",
        "build_timeout_minutes",
        "allow_insecure_http",
        "dry_run",
        "verbose",
    }

    TOOLCHAIN_KEYS = {
        "base",
        "prerequisites",
        "tools",
        "workdir",
        "entrypoint",
        "entrypoint_path",
        "labels",
    }

    def __init__(self, supported_keys: Optional[Iterable[str]] = None):
        self.supported_keys = set(supported_keys) if supported_keys is not None else self.DRIVER_KEYS

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ReleaseboxError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ReleaseboxError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ReleaseboxError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.supported_keys)
        if unknown:
            unknown_list = ", ".join(str(key) for key in unknown)
            raise ReleaseboxError(f"Unknown configuration keys: {unknown_list}")

        return parsed
