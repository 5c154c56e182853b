"""Docker image build and container run services for releasebox."""

import json
import os
from typing import Callable, Dict, Iterable, Optional

from releasebox.constants import LAUNCH_FAILURE_CODES, OUTPUT_MOUNT_DIRNAME, SCRIPT_MODE
from releasebox.errors import (
    DriverLaunchFailure,
    DriverRuntimeFailure,
    ProvisioningFailure,
    ReleaseboxError,
)
from releasebox.errors_catalog import actionable_error
from releasebox.models import ProvisionPlan, ToolchainSpec
from releasebox.services.provisioner import render_dockerfile

ENTRYPOINT_STUB = """#!/bin/sh
# Release driver entry point: the container runs this file with no arguments.
set -e
exec releasebox release
"""


class DockerRuntimeService:
    """Builds the provisioned image and runs the release driver inside it."""

    def __init__(self, logger, console, filesystem_service):
        self.logger = logger
        self.console = console
        self.filesystem_service = filesystem_service

    def validate_environment(self, run_cmd: Callable):
        self.console.print("[blue]Validating Docker environment...[/blue]")
        run_cmd(["docker", "--version"], capture_output=True)
        self.console.print("[green]Docker is available.[/green]")

    def write_dockerfile(self, plan: ProvisionPlan, context_dir: str) -> str:
        dockerfile_path = os.path.join(context_dir, "Dockerfile")
        with open(dockerfile_path, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(render_dockerfile(plan))
        return dockerfile_path

    def prepare_entrypoint(self, spec: ToolchainSpec, context_dir: str) -> str:
        entrypoint_path = os.path.join(context_dir, spec.entrypoint)
        if not os.path.isfile(entrypoint_path):
            raise DriverLaunchFailure(actionable_error("entrypoint_missing", path=entrypoint_path))
        self.filesystem_service.set_permissions(entrypoint_path, SCRIPT_MODE)
        return entrypoint_path

    def check_sources(self, plan: ProvisionPlan, context_dir: str):
        for step in plan.steps:
            for source, _staged in step.copies:
                source_path = os.path.join(context_dir, source)
                if not os.path.exists(source_path):
                    raise ProvisioningFailure(
                        actionable_error("pip_source_missing", name=step.tool.name, path=source_path)
                    )

    def write_entrypoint_stub(self, path: str) -> str:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(ENTRYPOINT_STUB)
        self.filesystem_service.set_permissions(path, SCRIPT_MODE)
        return path

    def build(self, plan: ProvisionPlan, tag: str, context_dir: str, run_cmd: Callable) -> str:
        self.prepare_entrypoint(plan.spec, context_dir)
        self.check_sources(plan, context_dir)
        dockerfile_path = self.write_dockerfile(plan, context_dir)

        self.console.print(f"[blue]Building image {tag} from {plan.spec.base}...[/blue]")
        self.logger.info("Building image %s with %s", tag, dockerfile_path)
        try:
            run_cmd(["docker", "build", "--tag", tag, "--file", dockerfile_path, context_dir])
        except ReleaseboxError as exc:
            raise ProvisioningFailure(f"Image build failed; `{tag}` was not tagged.\n{exc}") from exc

        self.console.print(f"[green]Image {tag} built.[/green]")
        return tag

    def inspect_labels(self, tag: str, run_cmd: Callable) -> Dict[str, str]:
        result = run_cmd(
            ["docker", "image", "inspect", "--format", "{{json .Config.Labels}}", tag],
            capture_output=True,
        )
        try:
            labels = json.loads((result.stdout or "").strip() or "null")
        except ValueError as exc:
            raise ReleaseboxError(f"Could not read labels of image {tag}: {exc}") from exc
        return labels or {}

    def run(
        self,
        spec: ToolchainSpec,
        tag: str,
        output_dir: str,
        run_cmd: Callable,
        env_names: Iterable[str] = (),
        extra_args: Optional[Iterable[str]] = None,
    ) -> int:
        """Run the driver container with no arguments and surface its exit code."""
        output_dir = os.path.abspath(output_dir)
        os.makedirs(output_dir, exist_ok=True)
        mount_target = f"{spec.workdir.rstrip('/')}/{OUTPUT_MOUNT_DIRNAME}"

        cmd = ["docker", "run", "--rm", "--volume", f"{output_dir}:{mount_target}"]
        for name in env_names:
            cmd.extend(["--env", name])
        cmd.extend(extra_args or [])
        cmd.append(tag)

        self.logger.info("Running release driver in %s (artifacts -> %s)", tag, output_dir)
        result = run_cmd(cmd, check=False)
        exit_code = result.returncode

        if exit_code == 0:
            self.console.print("[green]Release driver finished successfully.[/green]")
            return 0
        if exit_code in LAUNCH_FAILURE_CODES:
            raise DriverLaunchFailure(
                f"Release driver could not be launched in {tag} (exit code {exit_code}).",
                exit_code=exit_code,
            )
        raise DriverRuntimeFailure(
            f"Release driver failed in {tag} with exit code {exit_code}.",
            exit_code=exit_code,
        )
