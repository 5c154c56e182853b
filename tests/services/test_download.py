import pytest
from rich.console import Console

from releasebox.errors import ReleaseboxError
from releasebox.services.download import DownloadService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class FakeValidationService:
    def enforce_https_policy(self, *_args, **_kwargs):
        return None


class FakeResponse:
    def __init__(self, payload: bytes):
        self.payload = payload
        self.headers = {"Content-Length": str(len(payload))}

    def raise_for_status(self):
        return None

    def iter_content(self, chunk_size=8192):
        yield self.payload

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, payload: bytes):
        self.payload = payload

    def get(self, *_args, **_kwargs):
        return FakeResponse(self.payload)


class FlakyRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, payload: bytes, failures: int = 1):
        self.payload = payload
        self.failures = failures
        self.calls = 0

    def get(self, *_args, **_kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.RequestException("temporary download error")
        return FakeResponse(self.payload)


def _service(requests_module, **kwargs):
    return DownloadService(
        validation_service=FakeValidationService(),
        logger=DummyLogger(),
        console=Console(record=True),
        requests_module=requests_module,
        **kwargs,
    )


def test_download_file_writes_payload(tmp_path):
    service = _service(FakeRequestsModule(payload=b"source-bytes"))
    dest = tmp_path / "nested" / "source.tar.gz"

    service.download_file("https://example.com/source.tar.gz", str(dest))

    assert dest.read_bytes() == b"source-bytes"


def test_download_file_rejects_checksum_mismatch(tmp_path):
    service = _service(FakeRequestsModule(payload=b"hello"))
    dest = tmp_path / "installer"

    with pytest.raises(ReleaseboxError, match="Checksum mismatch"):
        service.download_file("https://example.com/installer", str(dest), expected_sha256="0" * 64)

    assert not dest.exists()


def test_download_file_accepts_matching_checksum(tmp_path):
    payload = b"checksum-ok"
    expected = "accb7eefbc70421e3f4fdbe387e92dfc15f82902c3e66320d393368e468b79b3"
    service = _service(FakeRequestsModule(payload=payload))
    dest = tmp_path / "installer"

    service.download_file("https://example.com/installer", str(dest), expected_sha256=expected)

    assert dest.read_bytes() == payload


def test_download_service_retries_transient_request_errors(tmp_path):
    requests_module = FlakyRequestsModule(payload=b"retried")
    service = _service(requests_module, retry_count=1, retry_backoff_seconds=0.0)
    dest = tmp_path / "source.tar.gz"

    service.download_file("https://example.com/source.tar.gz", str(dest), description="source")

    assert requests_module.calls == 2
    assert dest.read_bytes() == b"retried"


def test_download_service_without_retries_fails_first_time(tmp_path):
    requests_module = FlakyRequestsModule(payload=b"never", failures=1)
    service = _service(requests_module)

    with pytest.raises(ReleaseboxError, match="Download failed"):
        service.download_file("https://example.com/source.tar.gz", str(tmp_path / "x"))

    assert requests_module.calls == 1
