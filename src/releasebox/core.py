import logging
import os
import sys
import tempfile
import tomllib
import uuid
from dataclasses import asdict
from typing import Dict, List, Mapping, Optional, Sequence

import requests
from rich.console import Console

from .constants import CHECKSUMS_FILE, RELEASE_MANIFEST_FILE, TOOLCHAIN_FINGERPRINT_ENV
from .errors import ReleaseboxError
from .models import ReleaseInvocation
from .services.archive import ArchiveService
from .services.command_runner import CommandRunner
from .services.download import DownloadService
from .services.driver_config import DriverConfig
from .services.filesystem import FileSystemService
from .services.manifest import ManifestService
from .services.publish import PublishService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("releasebox")

SECRET_MARKERS = ("TOKEN", "SECRET", "PASSWORD", "CREDENTIAL", "KEY")
RECORDED_ENV_PREFIXES = ("RELEASE_", "RELEASEBOX_", "CARGO_", "RUSTUP_")
RECORDED_ENV_KEYS = ("SOURCE_DATE_EPOCH", "PATH", "HOME")
NON_BINARY_SUFFIXES = (".d", ".rlib", ".rmeta", ".so", ".dylib", ".a", ".dll", ".pdb")
EXTRA_PACKAGE_FILES = ("LICENSE", "LICENSE-APACHE", "LICENSE-MIT", "README.md")


def redact_environment(environ: Mapping[str, str], secret_names: Sequence[str] = ()) -> Dict[str, str]:
    recorded = {}
    for key, value in environ.items():
        if not (key.startswith(RECORDED_ENV_PREFIXES) or key in RECORDED_ENV_KEYS):
            continue
        if key in secret_names or any(marker in key.upper() for marker in SECRET_MARKERS):
            recorded[key] = "***"
        else:
            recorded[key] = value
    return dict(sorted(recorded.items()))


class ReleaseDriver:
    """Builds, packages and optionally publishes a cargo project from its working directory."""

    def __init__(
        self,
        config: DriverConfig,
        environ: Optional[Mapping[str, str]] = None,
        command: Optional[Sequence[str]] = None,
        requests_module=requests,
    ):
        self.config = config
        self.environ = dict(os.environ if environ is None else environ)
        self.invocation = ReleaseInvocation(
            workdir=config.workdir,
            command=tuple(command if command is not None else sys.argv),
            environment=redact_environment(self.environ, secret_names=(config.publish_token_env,)),
        )
        self.run_id = uuid.uuid4().hex[:10]

        self.project_root = config.workdir
        self.staging_dir: Optional[str] = None
        self.artifacts: List[str] = []
        self.current_step_name: Optional[str] = None

        self.manifest_file = os.path.join(config.output_dir, RELEASE_MANIFEST_FILE)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.archive_service = ArchiveService()
        self.validation_service = ValidationService(
            allow_insecure_http=config.allow_insecure_http,
            requests_module=requests_module,
        )
        self.command_runner = CommandRunner(logger=logger)
        self.download_service = DownloadService(
            validation_service=self.validation_service,
            logger=logger,
            console=console,
            requests_module=requests_module,
            timeout=config.download_timeout,
            retry_count=config.retry_count,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )
        self.publish_service = PublishService(
            validation_service=self.validation_service,
            logger=logger,
            console=console,
            requests_module=requests_module,
            timeout=config.download_timeout,
            retry_count=config.retry_count,
            retry_backoff_seconds=config.retry_backoff_seconds,
        )

    def _build_manifest_metadata(self) -> Dict:
        return {
            "invocation": asdict(self.invocation),
            "config": self.config.redacted(),
        }

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except BaseException as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc) or type(exc).__name__)
            raise

        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result

    def _skip_step(self, name: str, reason: str):
        self.manifest_service.step_started(name)
        self.manifest_service.step_finished(name, "skipped", details={"reason": reason})

    def validate_workdir(self):
        console.print("[blue]Validating working directory...[/blue]")
        self.validation_service.validate_workdir(self.config.workdir)
        logger.info("Working directory: %s", self.config.workdir)
        if not self.config.source_url:
            self.validation_service.validate_project_root(self.config.workdir)

    def fetch_source(self) -> str:
        source_url = self.config.source_url
        self.validation_service.ensure_supported_archive(source_url)
        extension = self.validation_service.get_archive_extension(source_url)

        archive_path = os.path.join(self.staging_dir, f"source{extension}")
        extract_dir = os.path.join(self.staging_dir, "source")
        os.makedirs(extract_dir, exist_ok=True)

        self.download_service.download_file(
            source_url,
            archive_path,
            "Downloading project source...",
            expected_sha256=self.config.source_sha256,
        )
        self.archive_service.safe_extract(archive_path, extract_dir)

        root = self.archive_service.flatten_single_wrapper(extract_dir)
        self.validation_service.validate_project_root(root)
        self.project_root = root
        console.print(f"[green]Source ready at {root}.[/green]")
        return root

    def project_name(self) -> str:
        if self.config.project:
            return self.config.project

        cargo_toml = os.path.join(self.project_root, "Cargo.toml")
        try:
            with open(cargo_toml, "rb") as file_obj:
                data = tomllib.load(file_obj)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ReleaseboxError(f"Could not read {cargo_toml}: {exc}") from exc

        name = data.get("package", {}).get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
        return os.path.basename(os.path.normpath(self.project_root))

    def host_triple(self) -> str:
        result = self.command_runner.run(["rustc", "-vV"], capture_output=True, env=self.environ)
        for line in (result.stdout or "").splitlines():
            if line.startswith("host:"):
                return line.split(":", 1)[1].strip()
        raise ReleaseboxError("Could not determine the host target triple from `rustc -vV`.")

    def build_targets(self) -> List[Optional[str]]:
        return list(self.config.targets) or [None]

    def cargo_command(self, target: Optional[str]) -> List[str]:
        cmd = ["cargo", "build", "--release"]
        if os.path.exists(os.path.join(self.project_root, "Cargo.lock")):
            cmd.append("--locked")
        if target:
            cmd.extend(["--target", target])
        if self.config.features:
            cmd.extend(["--features", ",".join(self.config.features)])
        return cmd

    def release_dir(self, target: Optional[str]) -> str:
        target_dir = self.environ.get("CARGO_TARGET_DIR") or os.path.join(self.project_root, "target")
        if not os.path.isabs(target_dir):
            target_dir = os.path.join(self.project_root, target_dir)
        if target:
            return os.path.join(target_dir, target, "release")
        return os.path.join(target_dir, "release")

    def build(self):
        timeout = self.config.build_timeout_minutes * 60
        for target in self.build_targets():
            label = target or "host"
            console.print(f"[blue]Building {label} release binaries...[/blue]")
            self.command_runner.run(
                self.cargo_command(target),
                cwd=self.project_root,
                env=self.environ,
                timeout=timeout,
            )
            console.print(f"[green]Build for {label} finished.[/green]")

    def collect_binaries(self) -> Dict[str, List[str]]:
        collected: Dict[str, List[str]] = {}
        for target in self.build_targets():
            release_dir = self.release_dir(target)
            if not os.path.isdir(release_dir):
                raise ReleaseboxError(f"Build output directory not found: {release_dir}")

            if self.config.binaries:
                paths = []
                for binary in self.config.binaries:
                    path = os.path.join(release_dir, binary)
                    if not self.filesystem_service.is_executable(path):
                        raise ReleaseboxError(f"Expected binary `{binary}` not found in {release_dir}")
                    paths.append(path)
            else:
                paths = [
                    os.path.join(release_dir, entry)
                    for entry in sorted(os.listdir(release_dir))
                    if not entry.startswith(".")
                    and not entry.endswith(NON_BINARY_SUFFIXES)
                    and self.filesystem_service.is_executable(os.path.join(release_dir, entry))
                ]
                if not paths:
                    raise ReleaseboxError(f"No binaries found in {release_dir}")

            triple = target or self.host_triple()
            collected[triple] = paths
            logger.info("Collected %s binaries for %s", len(paths), triple)
        return collected

    def artifact_stem(self, triple: str) -> str:
        return f"{self.project_name()}-{self.config.version}-{triple}"

    def package(self, binaries: Dict[str, List[str]]) -> List[str]:
        os.makedirs(self.config.output_dir, exist_ok=True)
        extras = {
            name: os.path.join(self.project_root, name)
            for name in EXTRA_PACKAGE_FILES
            if os.path.isfile(os.path.join(self.project_root, name))
        }

        packaged = []
        for triple, paths in sorted(binaries.items()):
            stem = self.artifact_stem(triple)
            files = dict(extras)
            for path in paths:
                files[f"bin/{os.path.basename(path)}"] = path

            output_path = os.path.join(self.config.output_dir, f"{stem}.tar.gz")
            self.archive_service.create_reproducible_tarball(
                output_path,
                stem,
                files,
                mtime=self.config.source_date_epoch,
            )
            digest = self.archive_service.sha256_file(output_path)
            self.manifest_service.add_artifact(os.path.basename(output_path), output_path, digest)
            packaged.append(output_path)
            console.print(f"[green]Packaged {os.path.basename(output_path)}[/green]")

        self.artifacts.extend(packaged)
        return packaged

    def write_checksums(self) -> str:
        checksums_path = os.path.join(self.config.output_dir, CHECKSUMS_FILE)
        lines = [
            f"{self.archive_service.sha256_file(path)}  {os.path.basename(path)}"
            for path in sorted(self.artifacts)
        ]
        with open(checksums_path, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write("\n".join(lines) + "\n")
        self.manifest_service.add_artifact(CHECKSUMS_FILE, checksums_path)
        return checksums_path

    def publish(self, files: List[str]) -> List[str]:
        token = self.config.publish_token(self.environ)
        if not token:
            logger.warning(
                "No publish credential found in %s; uploading without authorization.",
                self.config.publish_token_env,
            )

        published = []
        for path in files:
            console.print(f"[blue]Publishing {os.path.basename(path)}...[/blue]")
            published.append(
                self.publish_service.upload(self.config.publish_url, self.config.version, path, token)
            )
        console.print(f"[green]Published {len(published)} files.[/green]")
        return published

    def print_plan(self):
        console.print("[bold blue]Dry run: release plan[/bold blue]")
        if self.config.source_url:
            console.print(f"  fetch {self.config.source_url} (sha256 {self.config.source_sha256})")
        for target in self.build_targets():
            console.print(f"  $ {' '.join(self.cargo_command(target))}")
        console.print(f"  package -> {self.config.output_dir}")
        if self.config.publish_url:
            console.print(f"  publish -> {self.config.publish_url.rstrip('/')}/{self.config.version}/")

    def cleanup(self):
        if self.staging_dir:
            self.filesystem_service.cleanup_dir(self.staging_dir)
            self.staging_dir = None

    def run(self) -> int:
        # Checked before the manifest is written: writing it creates the output directory.
        try:
            self.validation_service.validate_workdir(self.config.workdir)
        except ReleaseboxError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            return 1

        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting release %s (run %s)...", self.config.version, self.run_id)
            self.manifest_service.start_run(run_id=self.run_id, metadata=self._build_manifest_metadata())
            self.manifest_service.set_versions(
                release=self.config.version,
                toolchain=self.environ.get(TOOLCHAIN_FINGERPRINT_ENV),
            )

            self._run_step("validate_workdir", self.validate_workdir)

            if self.config.dry_run:
                if self.config.source_url:
                    self._run_step(
                        "check_source",
                        self.validation_service.check_url_reachable,
                        self.config.source_url,
                        "Source archive",
                        logger,
                        console,
                    )
                self.print_plan()
                manifest_status = "dry_run"
                exit_code = 0
                return exit_code

            self.staging_dir = tempfile.mkdtemp(prefix="releasebox-")

            if self.config.source_url:
                self._run_step("fetch_source", self.fetch_source)
            else:
                self._skip_step("fetch_source", "no RELEASE_SOURCE_URL; using working directory")

            self._run_step("build", self.build)
            binaries = self._run_step("collect_binaries", self.collect_binaries)
            packaged = self._run_step("package", self.package, binaries)
            checksums = self._run_step("checksums", self.write_checksums)

            if self.config.publish_url:
                self._run_step("publish", self.publish, packaged + [checksums])
            else:
                self._skip_step("publish", "no RELEASE_PUBLISH_URL")

            console.print(f"[bold green]Release {self.config.version} complete.[/bold green]")
            manifest_status = "success"
            manifest_error = None
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Release cancelled.[/bold red]")
            logger.info("Release cancelled")
            manifest_status = "aborted"
            manifest_error = "Release cancelled."
            exit_code = 1
            return exit_code
        except ReleaseboxError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        finally:
            self.manifest_service.finalize(manifest_status, error=manifest_error)
            self.cleanup()
