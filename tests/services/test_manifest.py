import json

from releasebox.services.manifest import ManifestService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_manifest_service_writes_run_metadata(tmp_path):
    manifest_file = tmp_path / "dist" / "release-manifest.json"
    service = ManifestService(str(manifest_file), logger=DummyLogger())

    service.start_run("run-123", {"invocation": {"workdir": "/workspace"}})
    service.set_versions("1.2.0", "abc123")
    service.step_started("build")
    service.step_finished("build", "success")
    service.add_artifact("demo-1.2.0-x86_64.tar.gz", "dist/demo-1.2.0-x86_64.tar.gz", "f" * 64)
    service.finalize("success")

    data = json.loads(manifest_file.read_text(encoding="utf-8"))

    assert data["run_id"] == "run-123"
    assert data["status"] == "success"
    assert data["versions"] == {"release": "1.2.0", "toolchain": "abc123"}
    assert data["metadata"]["invocation"]["workdir"] == "/workspace"
    assert data["artifacts"]["demo-1.2.0-x86_64.tar.gz"]["sha256"] == "f" * 64
    assert data["steps"][0]["name"] == "build"
    assert data["steps"][0]["status"] == "success"
    assert data["duration_seconds"] is not None


def test_manifest_service_records_failed_step(tmp_path):
    manifest_file = tmp_path / "release-manifest.json"
    service = ManifestService(str(manifest_file), logger=DummyLogger())

    service.start_run("run-1", {})
    service.step_started("build")
    service.step_finished("build", "failed", error="cargo exploded")
    service.finalize("failed", error="cargo exploded")

    data = json.loads(manifest_file.read_text(encoding="utf-8"))

    assert data["status"] == "failed"
    assert data["steps"][0]["error"] == "cargo exploded"
