import logging
import os
import signal
import sys

import click
import requests
from rich.console import Console
from rich.logging import RichHandler

from .constants import DEFAULT_ENTRYPOINT, DEFAULT_MANIFEST_FILE, LABEL_PREFIX
from .core import ReleaseDriver
from .errors import DriverLaunchFailure, DriverRuntimeFailure, ReleaseboxError
from .services.command_runner import CommandRunner
from .services.docker_runtime import DockerRuntimeService
from .services.download import DownloadService
from .services.driver_config import load_driver_config
from .services.filesystem import FileSystemService
from .services.provisioner import Provisioner, build_plan, render_dockerfile
from .services.toolchain import fingerprint, load_toolchain
from .services.validation import ValidationService

logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)

console = Console()
logger = logging.getLogger("releasebox")


def _configure_logging(verbose: bool, log_file=None):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _resolve_manifest(manifest):
    if manifest is not None:
        return manifest
    default_manifest_path = os.path.join(os.getcwd(), DEFAULT_MANIFEST_FILE)
    if os.path.exists(default_manifest_path):
        return default_manifest_path
    return None


def _load_plan(manifest):
    try:
        spec = load_toolchain(_resolve_manifest(manifest))
        return build_plan(spec)
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc


def _raise_interrupt(signum, _frame):
    raise KeyboardInterrupt(f"Received signal {signum}")


manifest_option = click.option(
    "--manifest",
    required=False,
    type=click.Path(),
    help=f"Toolchain manifest YAML. Defaults to ./{DEFAULT_MANIFEST_FILE} if present, else the built-in toolchain.",
)


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(ctx, verbose, log_file):
    """Provision pinned build images and run reproducible releases inside them."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _configure_logging(verbose, log_file)


@main.command()
@manifest_option
@click.option("--dockerfile", is_flag=True, default=False, help="Print the rendered Dockerfile instead of the step list.")
def plan(manifest, dockerfile):
    """Show the ordered provisioning plan."""
    provision_plan = _load_plan(manifest)
    if dockerfile:
        click.echo(render_dockerfile(provision_plan), nl=False)
        return

    for line in provision_plan.describe():
        click.echo(line)
    click.echo(f"fingerprint {fingerprint(provision_plan.spec)}")


@main.command()
@manifest_option
@click.option("--dry-run", is_flag=True, default=False, help="List the steps without running them.")
@click.option("--skip-verify", is_flag=True, default=False, help="Do not check the tools after installing.")
def provision(manifest, dry_run, skip_verify):
    """Apply the provisioning plan on this host, stopping at the first failure."""
    provision_plan = _load_plan(manifest)
    command_runner = CommandRunner(logger=logger)
    download_service = DownloadService(
        validation_service=ValidationService(requests_module=requests),
        logger=logger,
        console=console,
        requests_module=requests,
    )
    provisioner = Provisioner(
        command_runner=command_runner,
        download_service=download_service,
        logger=logger,
        console=console,
    )

    try:
        applied = provisioner.apply(provision_plan, dry_run=dry_run)
        if not dry_run and not skip_verify:
            for name, detail in provisioner.verify(provision_plan).items():
                console.print(f"[green]{name}[/green]: {detail}")
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc

    if not dry_run:
        console.print(f"[bold green]Provisioning complete ({len(applied)} steps applied).[/bold green]")


@main.command()
@manifest_option
def verify(manifest):
    """Check that every pinned tool is invocable on PATH."""
    provision_plan = _load_plan(manifest)
    provisioner = Provisioner(
        command_runner=CommandRunner(logger=logger),
        download_service=None,
        logger=logger,
        console=console,
    )
    try:
        report = provisioner.verify(provision_plan)
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc

    for name, detail in report.items():
        console.print(f"[green]{name}[/green]: {detail}")


@main.group()
def image():
    """Build the provisioned image and run the release driver in it."""


def _docker_runtime():
    filesystem_service = FileSystemService(logger=logger, console=console)
    return DockerRuntimeService(logger=logger, console=console, filesystem_service=filesystem_service)


@image.command("build")
@manifest_option
@click.option("--tag", required=True, help="Image tag to produce.")
@click.option(
    "--context",
    "context_dir",
    default=".",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Docker build context holding the entry point file.",
)
def image_build(manifest, tag, context_dir):
    """Render the Dockerfile and build the image."""
    provision_plan = _load_plan(manifest)
    runtime = _docker_runtime()
    command_runner = CommandRunner(logger=logger)

    try:
        runtime.validate_environment(command_runner.run)
        runtime.build(provision_plan, tag, context_dir, command_runner.run)
        labels = runtime.inspect_labels(tag, command_runner.run)
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc

    expected = fingerprint(provision_plan.spec)
    if labels.get(f"{LABEL_PREFIX}.toolchain.fingerprint") != expected:
        raise click.ClickException(f"Image {tag} does not carry the toolchain fingerprint {expected}.")
    console.print(f"[green]Toolchain fingerprint {expected}[/green]")


@image.command("run")
@manifest_option
@click.option("--tag", required=True, help="Image tag to run.")
@click.option(
    "--output",
    "output_dir",
    default="dist",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Host directory receiving the artifacts.",
)
@click.option("--env", "env_names", multiple=True, help="Environment variable to pass through (repeatable).")
def image_run(manifest, tag, output_dir, env_names):
    """Run the release driver container; exits with the container's exit code."""
    provision_plan = _load_plan(manifest)
    runtime = _docker_runtime()
    command_runner = CommandRunner(logger=logger)

    try:
        exit_code = runtime.run(provision_plan.spec, tag, output_dir, command_runner.run, env_names=env_names)
    except (DriverLaunchFailure, DriverRuntimeFailure) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise SystemExit(exc.exit_code or 1) from exc
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(exit_code)


@image.command("stub")
@click.argument("path", required=False, default=DEFAULT_ENTRYPOINT, type=click.Path(dir_okay=False))
def image_stub(path):
    """Write the default entry point file that launches `releasebox release`."""
    written = _docker_runtime().write_entrypoint_stub(path)
    console.print(f"[green]Entry point written to {written}.[/green]")


@main.command()
@click.pass_context
def release(ctx):
    """Run the release driver for the current working directory.

    Takes no arguments: inputs come from RELEASE_* environment variables
    and an optional .releasebox.yml in the working directory.
    """
    try:
        config = load_driver_config(os.environ, cwd=os.getcwd())
    except ReleaseboxError as exc:
        raise click.ClickException(str(exc)) from exc

    if config.verbose and not ctx.obj.get("verbose"):
        _configure_logging(True)

    signal.signal(signal.SIGTERM, _raise_interrupt)
    driver = ReleaseDriver(config=config, environ=os.environ, command=sys.argv)
    raise SystemExit(driver.run())


if __name__ == "__main__":
    main()
