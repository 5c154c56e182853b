"""Environment provisioning: ordered install plan, Dockerfile rendering and in-place apply."""

import json
import os
import posixpath
import shlex
import shutil
import tempfile
from typing import Dict, List, Mapping, Optional, Tuple

from releasebox.constants import (
    FETCH_TOOLS,
    LABEL_PREFIX,
    PIP_SOURCE_DIR,
    SCRIPT_MODE,
    TOOLCHAIN_FINGERPRINT_ENV,
)
from releasebox.errors import ProvisioningFailure, ReleaseboxError
from releasebox.errors_catalog import actionable_error
from releasebox.models import ProvisionPlan, ProvisionStep, ToolchainSpec, ToolSpec
from releasebox.services.toolchain import fingerprint, is_floating, package_manager_for

PHASES = ("refresh", "prerequisites", "packages", "installers", "runtime-packages")

_REFRESH_COMMANDS = {
    "yum": "yum -y makecache",
    "dnf": "dnf -y makecache",
    "apt-get": "apt-get update",
}

_INSTALL_COMMANDS = {
    "yum": "yum -y install {packages}",
    "dnf": "dnf -y install {packages}",
    "apt-get": "DEBIAN_FRONTEND=noninteractive apt-get install -y --no-install-recommends {packages}",
}

_INSTALLED_CHECKS = {
    "yum": "rpm -q {packages} >/dev/null 2>&1",
    "dnf": "rpm -q {packages} >/dev/null 2>&1",
    "apt-get": "dpkg -s {packages} >/dev/null 2>&1",
}

_VERSION_SEPARATORS = {"yum": "-", "dnf": "-", "apt-get": "="}


def _quote_all(items) -> str:
    return " ".join(shlex.quote(item) for item in items)


def _package_argument(package_manager: str, tool: ToolSpec) -> str:
    if tool.exact_pin and tool.version:
        return f"{tool.package_name}{_VERSION_SEPARATORS[package_manager]}{tool.version}"
    return tool.package_name


def _installed_check(package_manager: str, tool: ToolSpec) -> str:
    """Shell check that only passes when the declared package, at its exact pin if any, is installed."""
    if not (tool.exact_pin and tool.version):
        return _INSTALLED_CHECKS[package_manager].format(packages=shlex.quote(tool.package_name))
    if package_manager == "apt-get":
        return (
            "dpkg-query -W -f='${Version}' "
            + shlex.quote(tool.package_name)
            + " 2>/dev/null | grep -qxF "
            + shlex.quote(tool.version)
        )
    return f"rpm -q {shlex.quote(_package_argument(package_manager, tool))} >/dev/null 2>&1"


def _fetch_command(fetch_tool: str, url: str, destination: str) -> str:
    if fetch_tool == "curl":
        return f"curl --proto '=https' --tlsv1.2 -sSfL -o {shlex.quote(destination)} {shlex.quote(url)}"
    return f"wget -q -O {shlex.quote(destination)} {shlex.quote(url)}"


def build_plan(spec: ToolchainSpec) -> ProvisionPlan:
    """Turn the declarative manifest into an ordered, executable plan."""
    package_manager = package_manager_for(spec.base_image)
    install = _INSTALL_COMMANDS[package_manager]
    installed = _INSTALLED_CHECKS[package_manager]

    steps: List[ProvisionStep] = [
        ProvisionStep(
            name="refresh package index",
            phase="refresh",
            commands=(_REFRESH_COMMANDS[package_manager],),
        )
    ]

    if spec.prerequisites:
        packages = _quote_all(spec.prerequisites)
        steps.append(
            ProvisionStep(
                name="install prerequisites",
                phase="prerequisites",
                commands=(install.format(packages=packages),),
                check=installed.format(packages=packages),
            )
        )

    fetch_tool = next((tool for tool in FETCH_TOOLS if tool in spec.prerequisites), None)

    for tool in spec.tools:
        if tool.method != "os-package":
            continue
        argument = shlex.quote(_package_argument(package_manager, tool))
        steps.append(
            ProvisionStep(
                name=f"install {tool.name}",
                phase="packages",
                commands=(install.format(packages=argument),),
                check=_installed_check(package_manager, tool),
                verify=tool.verify,
                tool=tool,
            )
        )

    for tool in spec.tools:
        if tool.method != "installer":
            continue
        if fetch_tool is None:
            raise ProvisioningFailure(actionable_error("missing_fetch_tool", name=tool.name))

        destination = f"/tmp/{tool.name}-installer"
        commands = (
            _fetch_command(fetch_tool, tool.installer.url, destination),
            f"echo {shlex.quote(f'{tool.installer.sha256}  {destination}')} | sha256sum -c -",
            f"chmod 0755 {shlex.quote(destination)}",
            " ".join([shlex.quote(destination)] + [shlex.quote(arg) for arg in tool.args]),
            f"rm -f {shlex.quote(destination)}",
        )
        steps.append(
            ProvisionStep(
                name=f"install {tool.name}",
                phase="installers",
                commands=commands,
                check=tool.check,
                verify=tool.verify,
                tool=tool,
            )
        )

    for tool in spec.tools:
        if tool.method != "pip":
            continue
        runtime = tool.runtime or "python3"
        copies: Tuple[Tuple[str, str], ...] = ()
        if tool.source:
            staged = f"{PIP_SOURCE_DIR}/{posixpath.basename(tool.source)}"
            copies = ((tool.source, staged),)
            commands = (
                f"{runtime} -m pip install --no-cache-dir {shlex.quote(staged)}",
                f"rm -rf {shlex.quote(staged)}",
            )
        else:
            requirement = f"{tool.package_name}=={tool.version}"
            commands = (f"{runtime} -m pip install --no-cache-dir {shlex.quote(requirement)}",)
        steps.append(
            ProvisionStep(
                name=f"install {tool.name}",
                phase="runtime-packages",
                commands=commands,
                copies=copies,
                check=(
                    f"{runtime} -m pip show {shlex.quote(tool.package_name)} 2>/dev/null "
                    f"| grep -qx {shlex.quote(f'Version: {tool.version}')}"
                ),
                verify=tool.verify,
                tool=tool,
            )
        )

    env: Dict[str, str] = {}
    path: List[str] = []
    for tool in spec.tools:
        env.update(dict(tool.env))
        for entry in tool.path:
            if entry not in path:
                path.append(entry)

    return ProvisionPlan(
        spec=spec,
        package_manager=package_manager,
        steps=tuple(steps),
        env=tuple(sorted(env.items())),
        path=tuple(path),
    )


def image_labels(spec: ToolchainSpec) -> List[Tuple[str, str]]:
    labels = [
        (f"{LABEL_PREFIX}.toolchain.fingerprint", fingerprint(spec)),
        (f"{LABEL_PREFIX}.base", spec.base),
    ]
    for tool in spec.tools:
        labels.append((f"{LABEL_PREFIX}.tool.{tool.name}", tool.pin))
    labels.extend(spec.labels)
    return labels


def render_dockerfile(plan: ProvisionPlan) -> str:
    spec = plan.spec
    lines = [f"FROM {spec.base}", ""]

    label_lines = [f"{key}={json.dumps(value)}" for key, value in image_labels(spec)]
    lines.append("LABEL " + " \\\n      ".join(label_lines))

    lines.append(f"ENV {TOOLCHAIN_FINGERPRINT_ENV}={fingerprint(spec)}")
    for key, value in plan.env:
        lines.append(f"ENV {key}={json.dumps(value)}")
    if plan.path:
        lines.append(f"ENV PATH={':'.join(plan.path)}:$PATH")
    lines.append("")

    for step in plan.steps:
        lines.append(f"# {step.phase}: {step.name}")
        for source, staged in step.copies:
            lines.append(f"COPY {source} {staged}")
        lines.append("RUN " + " \\\n && ".join(step.commands))
    lines.append("")

    lines.append(f"WORKDIR {spec.workdir}")
    lines.append(f"COPY {spec.entrypoint} {spec.entrypoint_path}")
    lines.append(f"RUN chmod 0755 {spec.entrypoint_path}")
    lines.append(f"ENTRYPOINT {json.dumps([spec.entrypoint_path])}")
    return "\n".join(lines) + "\n"


class Provisioner:
    """Applies a provisioning plan on the current host, strictly in order."""

    def __init__(
        self,
        command_runner,
        download_service,
        logger,
        console,
        environ: Optional[Mapping[str, str]] = None,
        source_root: Optional[str] = None,
    ):
        self.command_runner = command_runner
        self.download_service = download_service
        self.logger = logger
        self.console = console
        self.environ = dict(os.environ if environ is None else environ)
        self.source_root = source_root or os.getcwd()

    def environment(self, plan: ProvisionPlan) -> Dict[str, str]:
        env = dict(self.environ)
        env.update(dict(plan.env))
        if plan.path:
            env["PATH"] = os.pathsep.join(list(plan.path) + [env.get("PATH", "")])
        return env

    def warn_floating(self, spec: ToolchainSpec):
        for tool in spec.tools:
            if is_floating(tool):
                self.logger.warning(
                    "Tool `%s` follows the floating `%s` channel: its identity is pinned "
                    "but its exact behavior may change between builds.",
                    tool.name,
                    tool.channel,
                )

    def apply(self, plan: ProvisionPlan, dry_run: bool = False) -> List[str]:
        """Run every step in order; the first failure aborts provisioning."""
        self.warn_floating(plan.spec)
        env = self.environment(plan)
        applied: List[str] = []

        for step in plan.steps:
            if dry_run:
                self.console.print(f"[dim]would run[/dim] [{step.phase}] {step.name}")
                continue

            if step.check and self._check_passes(step.check, env):
                self.logger.info("Step already satisfied, skipping: %s", step.name)
                continue

            self.console.print(f"[blue]Provisioning: {step.name}...[/blue]")
            self.logger.info("Provisioning step [%s] %s", step.phase, step.name)
            if step.phase == "installers":
                self._run_installer(step, env)
            else:
                self._stage_copies(step)
                for command in step.commands:
                    self._run(step, command, env)
            applied.append(step.name)

        return applied

    def verify(self, plan: ProvisionPlan) -> Dict[str, str]:
        """Check that every tool's verify commands resolve on PATH and succeed."""
        env = self.environment(plan)
        search_path = env.get("PATH", "")
        report: Dict[str, str] = {}

        for tool in plan.spec.tools:
            for command in tool.verify:
                executable = shlex.split(command)[0]
                if shutil.which(executable, path=search_path) is None:
                    raise ProvisioningFailure(
                        f"`{executable}` for tool `{tool.name}` is not on PATH ({search_path})."
                    )
                try:
                    result = self.command_runner.run(command, capture_output=True, env=env, shell=True)
                except ReleaseboxError as exc:
                    raise ProvisioningFailure(f"Tool `{tool.name}` is not invocable: {exc}") from exc
                output = (result.stdout or result.stderr or "").strip()
                report.setdefault(tool.name, output.splitlines()[0] if output else "ok")

        return report

    def _check_passes(self, check: str, env: Dict[str, str]) -> bool:
        try:
            result = self.command_runner.run(check, check=False, capture_output=True, env=env, shell=True)
        except ReleaseboxError:
            return False
        return result.returncode == 0

    def _stage_copies(self, step: ProvisionStep):
        for source, staged in step.copies:
            local_path = os.path.join(self.source_root, source)
            if not os.path.exists(local_path):
                raise ProvisioningFailure(
                    actionable_error("pip_source_missing", name=step.tool.name, path=local_path)
                )

            os.makedirs(os.path.dirname(staged), exist_ok=True)
            if os.path.isdir(local_path):
                shutil.rmtree(staged, ignore_errors=True)
                shutil.copytree(local_path, staged)
            else:
                shutil.copy2(local_path, staged)
            self.logger.debug("Staged %s at %s", local_path, staged)

    def _run(self, step: ProvisionStep, command, env: Dict[str, str]):
        try:
            self.command_runner.run(
                command,
                capture_output=True,
                env=env,
                shell=isinstance(command, str),
            )
        except ReleaseboxError as exc:
            message = actionable_error("provisioning_step_failed", step=step.name)
            raise ProvisioningFailure(f"{message}\n{exc}") from exc

    def _run_installer(self, step: ProvisionStep, env: Dict[str, str]):
        tool = step.tool
        with tempfile.TemporaryDirectory(prefix="releasebox-") as temp_dir:
            installer_path = os.path.join(temp_dir, f"{tool.name}-installer")
            try:
                self.download_service.download_file(
                    tool.installer.url,
                    installer_path,
                    description=f"{tool.name} installer",
                    expected_sha256=tool.installer.sha256,
                )
            except ReleaseboxError as exc:
                message = actionable_error("provisioning_step_failed", step=step.name)
                raise ProvisioningFailure(f"{message}\n{exc}") from exc

            os.chmod(installer_path, SCRIPT_MODE)
            self._run(step, [installer_path] + list(tool.args), env)
