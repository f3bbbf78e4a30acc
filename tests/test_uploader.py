from __future__ import annotations

import re
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from engine.cancel import CancelToken
from engine.errors import CancelledError, StorageFailedError
from engine.fetcher import FetchResult
from engine.uploader import LocalObjectStorage, S3ObjectStorage, Uploader, build_object_key, build_storage
from media.sniff import detect_mime_type, extension_for_mime

MP4_HEADER = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00"
WEBM_HEADER = b"\x1a\x45\xdf\xa3\x9f\x42\x86\x81\x01\x42\xf7\x81\x01\x42\x82\x84webm"


def _write(path: Path, header: bytes, size: int = 4096) -> Path:
    path.write_bytes(header + b"\x00" * (size - len(header)))
    return path


def _fetch_result(path: Path, content_type=None) -> FetchResult:
    return FetchResult(path=str(path), size=path.stat().st_size, md5="0" * 32, content_type=content_type)


def test_object_key_layout_and_uniqueness() -> None:
    key = build_object_key("7301234567890", ".mp4", now_ms=1700000000000, token="deadbeef")
    assert key == "videos/7301234567890/7301234567890_1700000000000_deadbeef.mp4"

    keys = {build_object_key("7301234567890", ".mp4", now_ms=1700000000000) for _ in range(50)}
    assert len(keys) == 50
    assert all(re.fullmatch(r"videos/7301234567890/7301234567890_1700000000000_[0-9a-f]{8}\.mp4", k) for k in keys)


def test_object_key_sanitizes_external_id() -> None:
    key = build_object_key("../evil id", "webm", now_ms=1, token="abcd1234")
    assert key == "videos/evil_id/evil_id_1_abcd1234.webm"


def test_mime_detection_from_magic_bytes(tmp_path) -> None:
    mp4 = _write(tmp_path / "a.tmp", MP4_HEADER)
    webm = _write(tmp_path / "b.tmp", WEBM_HEADER)
    unknown = _write(tmp_path / "c.tmp", b"garbage")

    assert detect_mime_type(mp4) == "video/mp4"
    assert detect_mime_type(webm) == "video/webm"
    assert detect_mime_type(unknown) == "video/mp4"
    assert detect_mime_type(unknown, "video/quicktime; charset=binary") == "video/quicktime"
    assert detect_mime_type(unknown, "application/octet-stream") == "video/mp4"
    assert extension_for_mime("video/webm") == ".webm"
    assert extension_for_mime(None) == ".mp4"


def test_local_storage_upload_returns_storage_reference(tmp_path) -> None:
    source = _write(tmp_path / "download-1.tmp", WEBM_HEADER, size=2048)
    uploader = Uploader(LocalObjectStorage(tmp_path / "store"), "videos")
    video = SimpleNamespace(id="v1", external_id="7301")

    ref = uploader.upload(_fetch_result(source), video)

    assert ref.provider == "local"
    assert ref.bucket == "videos"
    assert ref.object_key.startswith("videos/7301/7301_")
    assert ref.object_key.endswith(".webm")
    assert ref.filesize == 2048
    assert ref.mime_type == "video/webm"
    assert ref.etag and len(ref.etag) == 32
    stored = tmp_path / "store" / "videos" / ref.object_key
    assert stored.read_bytes() == source.read_bytes()
    assert source.exists()


def test_local_storage_signed_url_points_at_stored_file(tmp_path) -> None:
    storage = LocalObjectStorage(tmp_path / "store")
    source = _write(tmp_path / "f.tmp", MP4_HEADER)
    storage.put_file("videos", "videos/x/x_1_a.mp4", str(source), "video/mp4")

    url = storage.signed_url("videos", "videos/x/x_1_a.mp4", 3600)

    assert url.startswith("file://")
    with pytest.raises(StorageFailedError):
        storage.signed_url("videos", "videos/x/missing.mp4", 3600)


class _FakeS3Client:
    def __init__(self, error=None):
        self.error = error
        self.puts = []

    def put_object(self, **kwargs):
        if self.error:
            raise self.error
        self.puts.append({key: value for key, value in kwargs.items() if key != "Body"})
        return {"ETag": '"abc123"'}

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        return f"https://s3.example.com/{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


def test_s3_storage_puts_object_and_strips_etag_quotes(tmp_path) -> None:
    client = _FakeS3Client()
    uploader = Uploader(S3ObjectStorage(client=client), "videos")
    source = _write(tmp_path / "f.tmp", MP4_HEADER, size=3000)

    ref = uploader.upload(_fetch_result(source), SimpleNamespace(id="v1", external_id="99"))

    assert ref.provider == "s3"
    assert ref.etag == "abc123"
    put = client.puts[0]
    assert put["Bucket"] == "videos"
    assert put["Key"] == ref.object_key
    assert put["ContentType"] == "video/mp4"
    assert put["ContentLength"] == 3000
    assert "X-Amz-Expires=3600" in S3ObjectStorage(client=client).signed_url("videos", ref.object_key, 3600)


@pytest.mark.parametrize(
    "error",
    [
        ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"),
        EndpointConnectionError(endpoint_url="https://s3.example.com"),
    ],
)
def test_s3_write_rejections_become_storage_failed(tmp_path, error) -> None:
    uploader = Uploader(S3ObjectStorage(client=_FakeS3Client(error=error)), "videos")
    source = _write(tmp_path / "f.tmp", MP4_HEADER)

    with pytest.raises(StorageFailedError):
        uploader.upload(_fetch_result(source), SimpleNamespace(id="v1", external_id="99"))


def test_build_storage_selects_backend(tmp_path) -> None:
    local = build_storage(SimpleNamespace(storage_provider="local", storage_root=str(tmp_path)))
    assert isinstance(local, LocalObjectStorage)
    with pytest.raises(ValueError):
        build_storage(SimpleNamespace(storage_provider="ftp"))


class _SlowS3Client:
    def __init__(self, delay=3.0):
        self.delay = delay
        self.started = threading.Event()

    def put_object(self, **kwargs):
        self.started.set()
        time.sleep(self.delay)
        return {"ETag": '"late"'}


class _ReadingS3Client:
    """Drains the body in small reads, the way botocore streams a request."""

    def __init__(self, on_first_read=None):
        self.on_first_read = on_first_read
        self.read_bytes = 0

    def put_object(self, **kwargs):
        body = kwargs["Body"]
        while True:
            chunk = body.read(512)
            if not chunk:
                break
            first = self.read_bytes == 0
            self.read_bytes += len(chunk)
            if first and self.on_first_read:
                self.on_first_read()
        return {"ETag": '"drained"'}


def _cancel_later(token, delay):
    timer = threading.Timer(delay, token.cancel, args=("worker stopping",))
    timer.daemon = True
    timer.start()
    return timer


def test_s3_put_stops_waiting_once_cancelled(tmp_path) -> None:
    client = _SlowS3Client()
    uploader = Uploader(S3ObjectStorage(client=client), "videos")
    source = _write(tmp_path / "f.tmp", MP4_HEADER)
    token = CancelToken()
    _cancel_later(token, 0.2)

    started = time.monotonic()
    with pytest.raises(CancelledError, match="worker stopping"):
        uploader.upload(_fetch_result(source), SimpleNamespace(id="v1", external_id="99"), token)

    assert time.monotonic() - started < 1.0
    assert client.started.is_set()


def test_s3_body_stops_streaming_once_cancelled(tmp_path) -> None:
    token = CancelToken()
    client = _ReadingS3Client(on_first_read=lambda: token.cancel("worker stopping"))
    storage = S3ObjectStorage(client=client)
    source = _write(tmp_path / "f.tmp", MP4_HEADER, size=64 * 1024)

    with pytest.raises(CancelledError):
        storage.put_file("videos", "videos/x/x_1_a.mp4", str(source), "video/mp4", cancel=token)

    assert client.read_bytes == 512


def test_upload_refuses_to_start_after_cancel(tmp_path) -> None:
    client = _FakeS3Client()
    uploader = Uploader(S3ObjectStorage(client=client), "videos")
    source = _write(tmp_path / "f.tmp", MP4_HEADER)
    token = CancelToken()
    token.cancel()

    with pytest.raises(CancelledError):
        uploader.upload(_fetch_result(source), SimpleNamespace(id="v1", external_id="99"), token)

    assert client.puts == []


def test_local_storage_cancelled_copy_leaves_nothing_behind(tmp_path) -> None:
    storage = LocalObjectStorage(tmp_path / "store")
    source = _write(tmp_path / "f.tmp", MP4_HEADER, size=4096)
    token = CancelToken()
    token.cancel()

    with pytest.raises(CancelledError):
        storage.put_file("videos", "videos/x/x_1_a.mp4", str(source), "video/mp4", cancel=token)

    bucket_dir = tmp_path / "store" / "videos" / "videos" / "x"
    assert not any(bucket_dir.iterdir())
