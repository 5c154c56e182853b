"""Shared domain models for releasebox."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ArchiveSource:
    """A remote file pinned by its integrity hash."""

    url: str
    sha256: str


@dataclass(frozen=True)
class ToolSpec:
    """One pinned tool of the build toolchain."""

    name: str
    method: str
    package: Optional[str] = None
    version: Optional[str] = None
    channel: Optional[str] = None
    installer: Optional[ArchiveSource] = None
    install_root: Optional[str] = None
    args: Tuple[str, ...] = ()
    path: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    verify: Tuple[str, ...] = ()
    exact_pin: bool = False
    runtime: Optional[str] = None
    check: Optional[str] = None
    source: Optional[str] = None

    @property
    def package_name(self) -> str:
        return self.package or self.name

    @property
    def pin(self) -> str:
        return self.version or self.channel or ""


@dataclass(frozen=True)
class ToolchainSpec:
    """Declared set of tools an image is provisioned with."""

    base_image: str
    base_version: str
    prerequisites: Tuple[str, ...]
    tools: Tuple[ToolSpec, ...]
    workdir: str
    entrypoint: str
    entrypoint_path: str
    labels: Tuple[Tuple[str, str], ...] = ()

    @property
    def base(self) -> str:
        return f"{self.base_image}:{self.base_version}"


@dataclass(frozen=True)
class ProvisionStep:
    """A single ordered install action of a provisioning plan."""

    name: str
    phase: str
    commands: Tuple[str, ...]
    check: Optional[str] = None
    verify: Tuple[str, ...] = ()
    tool: Optional[ToolSpec] = None
    copies: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class ProvisionPlan:
    spec: ToolchainSpec
    package_manager: str
    steps: Tuple[ProvisionStep, ...]
    env: Tuple[Tuple[str, str], ...] = ()
    path: Tuple[str, ...] = ()

    def describe(self) -> List[str]:
        lines = [f"base {self.spec.base} ({self.package_manager})"]
        for index, step in enumerate(self.steps, start=1):
            lines.append(f"{index:02d} [{step.phase}] {step.name}")
            for command in step.commands:
                lines.append(f"     $ {command}")
        return lines


@dataclass(frozen=True)
class ReleaseInvocation:
    """Run-time context the release driver was launched with."""

    workdir: str
    command: Tuple[str, ...]
    environment: Dict[str, str] = field(default_factory=dict)
