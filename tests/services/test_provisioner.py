import copy
import os
import subprocess

import pytest

from releasebox.errors import ProvisioningFailure, ReleaseboxError
import releasebox.services.provisioner as provisioner_module
from releasebox.services.provisioner import Provisioner, build_plan, render_dockerfile
from releasebox.services.toolchain import DEFAULT_TOOLCHAIN, fingerprint, parse_toolchain


class DummyLogger:
    def __init__(self):
        self.warnings = []

    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, message, *args, **_kwargs):
        self.warnings.append(message % args)


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeRunner:
    def __init__(self, fail_on=None, satisfied=(), stdout="tool 1.0\n"):
        self.fail_on = fail_on
        self.satisfied = satisfied
        self.stdout = stdout
        self.calls = []
        self.checks = []

    def run(self, cmd, check=True, capture_output=False, env=None, shell=False, **_kwargs):
        text = cmd if isinstance(cmd, str) else " ".join(cmd)
        if not check:
            self.checks.append(text)
            code = 0 if any(marker in text for marker in self.satisfied) else 1
            return subprocess.CompletedProcess(cmd, code, stdout="", stderr="")

        self.calls.append(text)
        if self.fail_on and self.fail_on in text:
            raise ReleaseboxError(f"Command failed (1): {text}\nNo match for argument: {self.fail_on}")
        return subprocess.CompletedProcess(cmd, 0, stdout=self.stdout, stderr="")


class FakeDownloadService:
    def __init__(self):
        self.downloads = []

    def download_file(self, url, dest_path, description="", expected_sha256=None):
        self.downloads.append((url, expected_sha256))
        with open(dest_path, "wb") as file_obj:
            file_obj.write(b"#!/bin/sh\n")


def _manifest():
    return copy.deepcopy(DEFAULT_TOOLCHAIN)


def _provisioner(runner, download_service=None, environ=None, logger=None, source_root=None):
    return Provisioner(
        command_runner=runner,
        download_service=download_service or FakeDownloadService(),
        logger=logger or DummyLogger(),
        console=DummyConsole(),
        environ=environ if environ is not None else {"PATH": "/usr/bin"},
        source_root=source_root,
    )


@pytest.fixture
def wheel_context(tmp_path, monkeypatch):
    context = tmp_path / "context"
    context.mkdir()
    (context / "releasebox-0.1.0-py3-none-any.whl").write_bytes(b"PK")
    monkeypatch.setattr(provisioner_module, "PIP_SOURCE_DIR", str(tmp_path / "pip-src"))
    return context


def test_plan_orders_phases_regardless_of_declaration_order():
    manifest = _manifest()
    manifest["tools"] = list(reversed(manifest["tools"]))

    plan = build_plan(parse_toolchain(manifest))

    assert [step.phase for step in plan.steps] == [
        "refresh",
        "prerequisites",
        "packages",
        "packages",
        "packages",
        "installers",
        "runtime-packages",
    ]
    package_steps = [step.name for step in plan.steps if step.phase == "packages"]
    assert package_steps == ["install python-pip", "install python", "install gcc-toolset"]


def test_plan_uses_apt_syntax_for_debian_family():
    manifest = {
        "base": "debian:12",
        "prerequisites": ["curl", "git"],
        "tools": [
            {"name": "clang", "method": "os-package", "package": "clang-16", "version": "1:16.0.6-15", "exact_pin": True}
        ],
    }

    plan = build_plan(parse_toolchain(manifest))

    assert plan.package_manager == "apt-get"
    assert plan.steps[0].commands == ("apt-get update",)
    assert "clang-16=1:16.0.6-15" in plan.steps[2].commands[0]


def test_installer_requires_fetch_tool_in_prerequisites():
    manifest = _manifest()
    manifest["prerequisites"] = [item for item in manifest["prerequisites"] if item != "curl"]

    with pytest.raises(ProvisioningFailure, match="no fetch tool"):
        build_plan(parse_toolchain(manifest))


def test_plan_describe_lists_every_command():
    plan = build_plan(parse_toolchain(_manifest()))

    lines = plan.describe()

    assert lines[0] == "base rockylinux:9 (dnf)"
    assert any("dnf -y makecache" in line for line in lines)


def test_dockerfile_renders_checked_fetch_and_fixed_entrypoint():
    spec = parse_toolchain(_manifest())
    dockerfile = render_dockerfile(build_plan(spec))

    assert dockerfile.startswith("FROM rockylinux:9\n")
    assert "sha256sum -c -" in dockerfile
    assert "--default-toolchain nightly" in dockerfile
    assert f"io.releasebox.toolchain.fingerprint=\"{fingerprint(spec)}\"" in dockerfile
    assert "WORKDIR /workspace" in dockerfile
    assert "COPY release /usr/local/bin/release" in dockerfile
    assert "RUN chmod 0755 /usr/local/bin/release" in dockerfile
    assert dockerfile.rstrip().endswith('ENTRYPOINT ["/usr/local/bin/release"]')
    assert "\nCMD" not in dockerfile

    positions = [
        dockerfile.index("dnf -y makecache"),
        dockerfile.index("gcc-toolset-13-gcc-c++"),
        dockerfile.index("rustup-init"),
        dockerfile.index("pip install"),
    ]
    assert positions == sorted(positions)


def test_dockerfile_rendering_is_deterministic():
    first = render_dockerfile(build_plan(parse_toolchain(_manifest())))
    second = render_dockerfile(build_plan(parse_toolchain(_manifest())))

    assert first == second


def test_apply_stops_at_first_failure_with_verbatim_output():
    runner = FakeRunner(fail_on="gcc-toolset-13-gcc-c++")
    provisioner = _provisioner(runner)

    with pytest.raises(ProvisioningFailure) as exc_info:
        provisioner.apply(build_plan(parse_toolchain(_manifest())))

    assert "No match for argument: gcc-toolset-13-gcc-c++" in str(exc_info.value)
    assert "install gcc-toolset" in str(exc_info.value)
    assert "gcc-toolset-13-gcc-c++" in runner.calls[-1]
    assert not any("python3.11" in call for call in runner.calls)


def test_apply_skips_steps_that_are_already_satisfied():
    runner = FakeRunner(satisfied=("rpm -q", "rustup toolchain list", "pip show"))
    download_service = FakeDownloadService()
    provisioner = _provisioner(runner, download_service=download_service)

    applied = provisioner.apply(build_plan(parse_toolchain(_manifest())))

    assert applied == ["refresh package index"]
    assert download_service.downloads == []


def test_apply_fetches_installer_with_pinned_hash_and_channel(wheel_context):
    runner = FakeRunner()
    download_service = FakeDownloadService()
    logger = DummyLogger()
    provisioner = _provisioner(
        runner,
        download_service=download_service,
        logger=logger,
        source_root=str(wheel_context),
    )
    spec = parse_toolchain(_manifest())

    provisioner.apply(build_plan(spec))

    rust = next(tool for tool in spec.tools if tool.name == "rust")
    assert download_service.downloads == [(rust.installer.url, rust.installer.sha256)]
    installer_calls = [call for call in runner.calls if "rust-installer" in call]
    assert installer_calls and installer_calls[0].endswith("--default-toolchain nightly")
    assert any("floating `nightly` channel" in warning for warning in logger.warnings)


def test_apply_dry_run_executes_nothing():
    runner = FakeRunner()
    provisioner = _provisioner(runner)

    assert provisioner.apply(build_plan(parse_toolchain(_manifest())), dry_run=True) == []
    assert runner.calls == []
    assert runner.checks == []


def test_environment_prepends_tool_paths():
    provisioner = _provisioner(FakeRunner(), environ={"PATH": "/usr/bin"})
    env = provisioner.environment(build_plan(parse_toolchain(_manifest())))

    assert env["PATH"].startswith("/opt/rh/gcc-toolset-13/root/usr/bin" + os.pathsep)
    assert env["PATH"].endswith("/usr/bin")
    assert env["CARGO_HOME"] == "/usr/local/cargo"


def _single_tool_manifest(bin_dir):
    return {
        "base": "ubuntu:22.04",
        "prerequisites": ["curl"],
        "tools": [
            {
                "name": "rust",
                "method": "installer",
                "channel": "nightly",
                "installer": {"url": "https://example.com/rustup-init", "sha256": "a" * 64},
                "install_root": str(bin_dir.parent),
                "path": [str(bin_dir)],
                "verify": ["rustc --version"],
            }
        ],
    }


def test_verify_reports_tools_found_on_path(tmp_path):
    bin_dir = tmp_path / "cargo" / "bin"
    bin_dir.mkdir(parents=True)
    rustc = bin_dir / "rustc"
    rustc.write_text("#!/bin/sh\necho rustc\n", encoding="utf-8")
    os.chmod(rustc, 0o755)
    runner = FakeRunner(stdout="rustc 1.80.0-nightly (abc 2024-05-01)\n")
    provisioner = _provisioner(runner, environ={"PATH": ""})

    report = provisioner.verify(build_plan(parse_toolchain(_single_tool_manifest(bin_dir))))

    assert report == {"rust": "rustc 1.80.0-nightly (abc 2024-05-01)"}


def test_verify_fails_when_tool_is_not_on_path(tmp_path):
    bin_dir = tmp_path / "cargo" / "bin"
    bin_dir.mkdir(parents=True)
    provisioner = _provisioner(FakeRunner(), environ={"PATH": ""})

    with pytest.raises(ProvisioningFailure, match="not on PATH"):
        provisioner.verify(build_plan(parse_toolchain(_single_tool_manifest(bin_dir))))


def test_exact_pin_checks_installed_version_on_debian():
    manifest = {
        "base": "debian:12",
        "prerequisites": ["curl"],
        "tools": [
            {"name": "python", "method": "os-package", "package": "python3", "version": "3.11.2-1+b1", "exact_pin": True}
        ],
    }

    step = build_plan(parse_toolchain(manifest)).steps[2]

    assert "python3=3.11.2-1+b1" in step.commands[0]
    assert step.check == "dpkg-query -W -f='${Version}' python3 2>/dev/null | grep -qxF 3.11.2-1+b1"


def test_exact_pin_checks_installed_version_on_rpm_family():
    manifest = _manifest()
    python = next(tool for tool in manifest["tools"] if tool["name"] == "python")
    python["version"] = "3.11.7-1.el9"
    python["exact_pin"] = True

    plan = build_plan(parse_toolchain(manifest))

    step = next(step for step in plan.steps if step.name == "install python")
    assert step.check == "rpm -q python3.11-3.11.7-1.el9 >/dev/null 2>&1"


def test_installer_check_follows_channel_and_install_root():
    manifest = _manifest()
    rust = next(tool for tool in manifest["tools"] if tool["name"] == "rust")
    rust["channel"] = "nightly-2024-05-01"
    rust["install_root"] = "/opt/cargo"

    plan = build_plan(parse_toolchain(manifest))

    step = next(step for step in plan.steps if step.phase == "installers")
    assert step.check == "/opt/cargo/bin/rustup toolchain list | grep -q '^nightly-2024-05-01-'"
    assert ("CARGO_HOME", "/opt/cargo") in plan.env
    assert "/opt/cargo/bin" in plan.path
    assert "rustc --version" not in step.check


def test_installer_without_check_always_runs(tmp_path):
    bin_dir = tmp_path / "cargo" / "bin"
    runner = FakeRunner(satisfied=("rustc --version",))
    download_service = FakeDownloadService()

    applied = _provisioner(runner, download_service=download_service).apply(
        build_plan(parse_toolchain(_single_tool_manifest(bin_dir)))
    )

    assert "install rust" in applied
    assert len(download_service.downloads) == 1


def test_pip_tool_with_source_installs_staged_wheel(wheel_context):
    staged = provisioner_module.PIP_SOURCE_DIR + "/releasebox-0.1.0-py3-none-any.whl"
    plan = build_plan(parse_toolchain(_manifest()))
    step = plan.steps[-1]

    assert step.copies == (("releasebox-0.1.0-py3-none-any.whl", staged),)
    assert step.commands[0] == f"python3.11 -m pip install --no-cache-dir {staged}"
    assert "releasebox==" not in " ".join(step.commands)

    dockerfile = render_dockerfile(plan)
    assert dockerfile.index(f"COPY releasebox-0.1.0-py3-none-any.whl {staged}") < dockerfile.index(step.commands[0])

    runner = FakeRunner(satisfied=("rpm -q", "rustup toolchain list"))
    applied = _provisioner(runner, source_root=str(wheel_context)).apply(plan)

    assert applied[-1] == "install releasebox"
    assert os.path.exists(staged)
    assert step.commands[0] in runner.calls


def test_apply_fails_when_pip_source_is_missing(wheel_context, tmp_path):
    plan = build_plan(parse_toolchain(_manifest()))
    runner = FakeRunner(satisfied=("rpm -q", "rustup toolchain list"))

    with pytest.raises(ProvisioningFailure, match="Install source for `releasebox` not found"):
        _provisioner(runner, source_root=str(tmp_path / "empty")).apply(plan)

    assert not any("pip install" in call for call in runner.calls)
