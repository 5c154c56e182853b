"""Toolchain manifest loading, pin validation and fingerprinting."""

import hashlib
import json
import re
from dataclasses import asdict
from typing import Any, Dict, List, Mapping, Optional, Tuple

from releasebox.constants import (
    DEFAULT_ENTRYPOINT,
    DEFAULT_ENTRYPOINT_PATH,
    DEFAULT_WORKDIR,
    FLOATING_CHANNELS,
    SUPPORTED_BASES,
    UNPINNED_MARKERS,
)
from releasebox.errors import ProvisioningFailure, ReleaseboxError
from releasebox.errors_catalog import actionable_error
from releasebox.models import ArchiveSource, ToolchainSpec, ToolSpec
from releasebox.services.config_loader import ConfigLoader
from releasebox.services.validation import ValidationService

TOOL_METHODS = ("os-package", "installer", "pip")

TOOL_KEYS = {
    "name",
    "method",
    "package",
    "version",
    "channel",
    "installer",
    "install_root",
    "args",
    "path",
    "env",
    "verify",
    "exact_pin",
    "runtime",
    "check",
    "source",
}

_DATED_CHANNEL_RE = re.compile(r"^(stable|beta|nightly)-\d{4}-\d{2}-\d{2}$")

RUSTUP_INIT_URL = (
    "https://static.rust-lang.org/rustup/archive/1.27.1/x86_64-unknown-linux-gnu/rustup-init"
)
RUSTUP_INIT_SHA256 = "6aeece6993e902708983b209d04c0d1dbb14ebb405ddb87def578d41f920f56d"

DEFAULT_TOOLCHAIN: Dict[str, Any] = {
    "base": {"image": "rockylinux", "version": "9"},
    "prerequisites": [
        "tar",
        "gzip",
        "unzip",
        "curl",
        "ca-certificates",
        "git",
        "which",
        "file",
        "make",
        "cmake",
        "autoconf",
        "automake",
        "libtool",
        "perl",
        "epel-release",
    ],
    "tools": [
        {
            "name": "gcc-toolset",
            "method": "os-package",
            "package": "gcc-toolset-13-gcc-c++",
            "version": "13",
            "path": ["/opt/rh/gcc-toolset-13/root/usr/bin"],
            "verify": ["g++ --version"],
        },
        {
            "name": "python",
            "method": "os-package",
            "package": "python3.11",
            "version": "3.11",
            "verify": ["python3.11 --version"],
        },
        {
            "name": "python-pip",
            "method": "os-package",
            "package": "python3.11-pip",
            "version": "3.11",
            "verify": ["python3.11 -m pip --version"],
        },
        {
            "name": "rust",
            "method": "installer",
            "channel": "nightly",
            "installer": {"url": RUSTUP_INIT_URL, "sha256": RUSTUP_INIT_SHA256},
            "install_root": "/usr/local/cargo",
            "args": [
                "-y",
                "--no-modify-path",
                "--profile",
                "minimal",
                "--default-toolchain",
                "{channel}",
            ],
            "env": {"CARGO_HOME": "{install_root}", "RUSTUP_HOME": "/usr/local/rustup"},
            "path": ["{install_root}/bin"],
            "check": "{install_root}/bin/rustup toolchain list | grep -q '^{channel}-'",
            "verify": ["rustc --version", "cargo --version"],
        },
        {
            "name": "releasebox",
            "method": "pip",
            "version": "0.1.0",
            "runtime": "python3.11",
            "source": "releasebox-0.1.0-py3-none-any.whl",
            "verify": ["releasebox --help"],
        },
    ],
    "workdir": DEFAULT_WORKDIR,
    "entrypoint": DEFAULT_ENTRYPOINT,
    "entrypoint_path": DEFAULT_ENTRYPOINT_PATH,
}


def package_manager_for(base_image: str) -> str:
    return SUPPORTED_BASES[base_image][0]


def is_floating(tool: ToolSpec) -> bool:
    """True when the tool follows a release track that moves over time."""
    if tool.version or not tool.channel:
        return False
    return tool.channel in FLOATING_CHANNELS and not _DATED_CHANNEL_RE.match(tool.channel)


def fingerprint(spec: ToolchainSpec) -> str:
    canonical = json.dumps(asdict(spec), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_toolchain(manifest_path: Optional[str] = None) -> ToolchainSpec:
    if not manifest_path:
        return parse_toolchain(DEFAULT_TOOLCHAIN)

    raw = ConfigLoader(supported_keys=ConfigLoader.TOOLCHAIN_KEYS).load(manifest_path)
    return parse_toolchain(raw)


def parse_toolchain(raw: Mapping[str, Any]) -> ToolchainSpec:
    unknown = sorted(set(raw.keys()) - ConfigLoader.TOOLCHAIN_KEYS)
    if unknown:
        raise ProvisioningFailure(f"Unknown toolchain keys: {', '.join(unknown)}")

    base_image, base_version = _parse_base(raw.get("base"))

    prerequisites = raw.get("prerequisites") or []
    if not isinstance(prerequisites, list) or not all(
        isinstance(item, str) and item.strip() for item in prerequisites
    ):
        raise ProvisioningFailure("`prerequisites` must be a list of package names.")

    raw_tools = raw.get("tools") or []
    if not isinstance(raw_tools, list):
        raise ProvisioningFailure("`tools` must be a list of tool mappings.")

    tools = tuple(_parse_tool(item) for item in raw_tools)
    names = [tool.name for tool in tools]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ProvisioningFailure(f"Duplicate tool names in manifest: {', '.join(duplicates)}")

    workdir = str(raw.get("workdir") or DEFAULT_WORKDIR)
    entrypoint_path = str(raw.get("entrypoint_path") or DEFAULT_ENTRYPOINT_PATH)
    for label, value in (("workdir", workdir), ("entrypoint_path", entrypoint_path)):
        if not value.startswith("/"):
            raise ProvisioningFailure(f"`{label}` must be an absolute path inside the image.")

    return ToolchainSpec(
        base_image=base_image,
        base_version=base_version,
        prerequisites=tuple(item.strip() for item in prerequisites),
        tools=tools,
        workdir=workdir,
        entrypoint=str(raw.get("entrypoint") or DEFAULT_ENTRYPOINT),
        entrypoint_path=entrypoint_path,
        labels=_string_pairs(raw.get("labels"), "labels"),
    )


def _parse_base(raw_base: Any) -> Tuple[str, str]:
    if isinstance(raw_base, str):
        image, _, base_version = raw_base.partition(":")
    elif isinstance(raw_base, Mapping):
        image = str(raw_base.get("image") or "")
        base_version = str(raw_base.get("version") or "")
    else:
        raise ProvisioningFailure("`base` must be `image:version` or a mapping with image and version.")

    image = image.strip()
    base_version = base_version.strip()
    if base_version.lower() in UNPINNED_MARKERS:
        raise ProvisioningFailure(
            actionable_error("unpinned_tool", name=f"base image {image or '<unset>'}")
        )

    supported = SUPPORTED_BASES.get(image)
    if supported is None or base_version not in supported[1]:
        supported_list = ", ".join(
            f"{name}:{version}"
            for name, (_, versions) in sorted(SUPPORTED_BASES.items())
            for version in versions
        )
        raise ProvisioningFailure(
            actionable_error("unsupported_base", image=image, version=base_version, supported=supported_list)
        )
    return image, base_version


def _parse_tool(raw_tool: Any) -> ToolSpec:
    if not isinstance(raw_tool, Mapping):
        raise ProvisioningFailure("Each tool must be a mapping.")

    name = str(raw_tool.get("name") or "").strip()
    if not name:
        raise ProvisioningFailure("Every tool needs a `name`.")

    unknown = sorted(set(raw_tool.keys()) - TOOL_KEYS)
    if unknown:
        raise ProvisioningFailure(f"Unknown keys for tool `{name}`: {', '.join(unknown)}")

    method = raw_tool.get("method")
    if method not in TOOL_METHODS:
        raise ProvisioningFailure(
            f"Tool `{name}` has unsupported method `{method}`. Use one of: {', '.join(TOOL_METHODS)}."
        )

    version = _optional_pin(name, raw_tool.get("version"))
    channel = _optional_pin(name, raw_tool.get("channel"))
    if version is None and channel is None:
        raise ProvisioningFailure(actionable_error("unpinned_tool", name=name))
    if method in ("os-package", "pip") and version is None:
        raise ProvisioningFailure(f"Tool `{name}` installed via {method} must declare a `version`.")

    installer = None
    install_root = raw_tool.get("install_root")
    if method == "installer":
        installer = _parse_installer(name, raw_tool.get("installer"))
        if not install_root or not str(install_root).startswith("/"):
            raise ProvisioningFailure(f"Tool `{name}` must declare an absolute `install_root`.")
    install_root = str(install_root).rstrip("/") if install_root else None

    source = _parse_source(name, method, raw_tool.get("source"))

    # args, path, env values and check may refer to {channel}, {version} and {install_root}.
    placeholders = {"channel": channel or "", "version": version or "", "install_root": install_root or ""}
    check = raw_tool.get("check")
    if check is not None and not isinstance(check, str):
        raise ProvisioningFailure(f"`{name}.check` must be a shell command string.")

    return ToolSpec(
        name=name,
        method=method,
        package=raw_tool.get("package"),
        version=version,
        channel=channel,
        installer=installer,
        install_root=install_root,
        args=tuple(
            _expand(name, item, placeholders) for item in _string_tuple(raw_tool.get("args"), f"{name}.args")
        ),
        path=tuple(
            _expand(name, item, placeholders) for item in _string_tuple(raw_tool.get("path"), f"{name}.path")
        ),
        env=tuple(
            (key, _expand(name, value, placeholders))
            for key, value in _string_pairs(raw_tool.get("env"), f"{name}.env")
        ),
        verify=_string_tuple(raw_tool.get("verify"), f"{name}.verify"),
        exact_pin=bool(raw_tool.get("exact_pin", False)),
        runtime=raw_tool.get("runtime"),
        check=_expand(name, check, placeholders) if check and check.strip() else None,
        source=source,
    )


def _parse_source(name: str, method: str, raw_source: Any) -> Optional[str]:
    if raw_source is None:
        return None
    if method != "pip":
        raise ProvisioningFailure(f"Only pip tools may declare a `source`; `{name}` uses {method}.")

    source = str(raw_source).strip().replace("\\", "/")
    if not source or source.startswith("/") or ".." in source.split("/"):
        raise ProvisioningFailure(
            f"`source` for `{name}` must be a relative path inside the build context: {source or '<unset>'}"
        )
    return source.rstrip("/")


def _expand(name: str, value: str, placeholders: Mapping[str, str]) -> str:
    try:
        return value.format(**placeholders)
    except (KeyError, IndexError, ValueError) as exc:
        raise ProvisioningFailure(
            f"Tool `{name}` uses an unknown placeholder in `{value}`. "
            f"Available: {', '.join('{' + key + '}' for key in sorted(placeholders))}."
        ) from exc


def _parse_installer(name: str, raw_installer: Any) -> ArchiveSource:
    if not isinstance(raw_installer, Mapping):
        raise ProvisioningFailure(
            f"Tool `{name}` must declare an `installer` mapping with a pinned `url` and `sha256`."
        )

    url = str(raw_installer.get("url") or "")
    if not url.startswith("https://"):
        raise ProvisioningFailure(f"Installer URL for `{name}` must use HTTPS: {url or '<unset>'}")

    try:
        sha256 = ValidationService.normalize_sha256(
            raw_installer.get("sha256"),
            f"Installer sha256 for `{name}`",
        )
    except ReleaseboxError as exc:
        raise ProvisioningFailure(str(exc)) from exc
    if sha256 is None:
        raise ProvisioningFailure(f"Installer for `{name}` must declare a `sha256`.")

    return ArchiveSource(url=url, sha256=sha256)


def _optional_pin(name: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    clean_value = str(value).strip()
    if clean_value.lower() in UNPINNED_MARKERS:
        raise ProvisioningFailure(actionable_error("unpinned_tool", name=name))
    return clean_value


def _string_tuple(value: Any, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ProvisioningFailure(f"`{label}` must be a list of strings.")
    return tuple(value)


def _string_pairs(value: Any, label: str) -> Tuple[Tuple[str, str], ...]:
    if value is None:
        return ()
    if not isinstance(value, Mapping):
        raise ProvisioningFailure(f"`{label}` must be a mapping of strings.")
    pairs: List[Tuple[str, str]] = [(str(key), str(item)) for key, item in value.items()]
    return tuple(sorted(pairs))
