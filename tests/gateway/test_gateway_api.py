"""Integration Tests for the upload/download endpoints

Self-Explanatory: Full HTTP round trips against the in-memory object store.
Why: Status codes are the whole contract; bodies of errors are empty.
How: TestClient drives the app (lifespan included); the store is inspected directly.
Run: pytest tests/gateway/
"""
import contextlib
import io
import logging
import os

import anyio
import pytest
from fastapi.testclient import TestClient

from src.gateway.config import GatewaySettings
from src.gateway.errors import BackendError, StartupFatal
from src.main import create_app
from src.security.stream_cipher import MAX_PAYLOAD_SIZE, encrypted_size
from src.storage.memory_backend import InMemoryObjectStore

BUCKET = "test-bucket"


def upload(client, name, data):
    return client.post("/upload", files={"file": (name, data, "application/octet-stream")})


class FlakyObjectStore(InMemoryObjectStore):
    """Reads part of the ciphertext, then loses the connection"""

    def put(self, bucket, name, stream, size, part_size, cancel_event=None):
        stream.read(10)
        raise BackendError("connection reset by peer")


class BrokenBucketStore(InMemoryObjectStore):
    def ensure_bucket(self, bucket):
        raise ConnectionError("object store unreachable")


# ============================================================================
# UPLOAD + DOWNLOAD
# ============================================================================

def test_upload_then_download_round_trip(client, store):
    response = upload(client, "hello.txt", b"hello world")
    assert response.status_code == 201
    assert response.content == b""

    stored = store.get(BUCKET, "hello.txt").read()
    assert len(stored) == encrypted_size(11)
    assert b"hello world" not in stored

    response = client.get("/file/hello.txt")
    assert response.status_code == 200
    assert response.content == b"hello world"


def test_download_unknown_file_is_404(client):
    response = client.get("/file/missing.txt")
    assert response.status_code == 404
    assert response.content == b""


def test_download_empty_name_is_404(client):
    assert client.get("/file/").status_code == 404


def test_empty_file_round_trip(client):
    assert upload(client, "empty.txt", b"").status_code == 201

    response = client.get("/file/empty.txt")
    assert response.status_code == 200
    assert response.content == b""


def test_multi_frame_file_round_trip(client, store):
    data = os.urandom(3 * MAX_PAYLOAD_SIZE + 17)
    assert upload(client, "big.bin", data).status_code == 201
    assert len(store.get(BUCKET, "big.bin").read()) == encrypted_size(len(data))

    response = client.get("/file/big.bin")
    assert response.status_code == 200
    assert response.content == data


def test_names_with_slashes_are_opaque_keys(client, store):
    assert upload(client, "docs/2024/report.txt", b"quarterly").status_code == 201
    assert store.bucket_exists(BUCKET)

    response = client.get("/file/docs/2024/report.txt")
    assert response.status_code == 200
    assert response.content == b"quarterly"


def test_overwrite_keeps_latest(client):
    upload(client, "note.txt", b"first draft")
    upload(client, "note.txt", b"final")
    assert client.get("/file/note.txt").content == b"final"


# ============================================================================
# BAD REQUESTS
# ============================================================================

def test_upload_without_file_field_is_400(client):
    response = client.post("/upload", data={"other": "value"})
    assert response.status_code == 400
    assert response.content == b""


def test_upload_with_wrong_field_name_is_400(client):
    response = client.post("/upload", files={"document": ("a.txt", b"data")})
    assert response.status_code == 400


def test_upload_without_multipart_boundary_is_400(client):
    response = client.post(
        "/upload",
        content=b"not really multipart",
        headers={"Content-Type": "multipart/form-data"},
    )
    assert response.status_code == 400


def test_upload_with_plain_body_is_400(client):
    response = client.post("/upload", content=b"raw bytes", headers={"Content-Type": "application/octet-stream"})
    assert response.status_code == 400


# ============================================================================
# INTEGRITY
# ============================================================================

def test_tampered_object_is_500(client, store):
    upload(client, "hello.txt", b"hello world")
    blob = bytearray(store.get(BUCKET, "hello.txt").read())
    blob[-1] ^= 0x01
    store._objects[(BUCKET, "hello.txt")] = bytes(blob)

    response = client.get("/file/hello.txt")
    assert response.status_code == 500
    assert response.content == b""


def test_object_copied_to_another_name_is_500(client, store):
    upload(client, "hello.txt", b"hello world")
    store._objects[(BUCKET, "hello2.txt")] = store.get(BUCKET, "hello.txt").read()

    assert client.get("/file/hello2.txt").status_code == 500


def test_zero_byte_stored_object_is_500(client, store):
    store._objects[(BUCKET, "blank.txt")] = b""
    assert client.get("/file/blank.txt").status_code == 500


def test_different_secret_cannot_read(client, store):
    upload(client, "hello.txt", b"hello world")

    other = GatewaySettings(backend="memory", bucket_name=BUCKET, encryption_secret="some other secret")
    with TestClient(create_app(settings=other, store=store)) as other_client:
        assert other_client.get("/file/hello.txt").status_code == 500


# ============================================================================
# BACKEND FAILURES
# ============================================================================

def test_backend_failure_mid_upload_is_500_and_stores_nothing(settings):
    flaky = FlakyObjectStore()
    with TestClient(create_app(settings=settings, store=flaky)) as flaky_client:
        response = upload(flaky_client, "hello.txt", b"hello world")
        assert response.status_code == 500
        assert response.content == b""
        assert flaky_client.get("/file/hello.txt").status_code == 404


def test_unusable_bucket_stops_startup(settings):
    app = create_app(settings=settings, store=BrokenBucketStore())
    with pytest.raises(StartupFatal):
        with TestClient(app):
            pass


def test_missing_secret_stops_startup(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_SECRET", raising=False)
    with pytest.raises(StartupFatal):
        with TestClient(create_app(store=InMemoryObjectStore())):
            pass


# ============================================================================
# HEALTH, METRICS, LOGGING
# ============================================================================

def test_readiness_reports_bucket(client):
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_liveness(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "alive"


def test_metrics_exposed(client):
    upload(client, "hello.txt", b"hello world")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "vaultgate_uploads_total" in response.text
    assert "vaultgate_operation_duration_seconds" in response.text


def test_secret_never_logged(settings, store, caplog):
    caplog.set_level(logging.INFO)
    with TestClient(create_app(settings=settings, store=store)) as test_client:
        upload(test_client, "hello.txt", b"hello world")
        test_client.get("/file/hello.txt")
        test_client.get("/file/missing.txt")

    assert "Uploaded file" in caplog.text
    assert "unit-test encryption secret" not in caplog.text


# ============================================================================
# DOWNLOAD RESOURCE RELEASE
# ============================================================================

class TrackedBody(io.BytesIO):
    """Backend response body that remembers it was closed"""

    closed_by_caller = False

    def close(self):
        self.closed_by_caller = True
        super().close()


def download_scope(app, path):
    return {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
        "app": app,
    }


async def serve_download(client, path, failing_message_type):
    """Drive GET `path` through the app with a client that vanishes on one send"""
    never = anyio.Event()

    async def receive():
        await never.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        if message["type"] == failing_message_type:
            raise OSError("client gone")

    with contextlib.suppress(Exception):
        await client.app(download_scope(client.app, path), receive, send)


def test_backend_error_on_download_is_500(client, store, mocker):
    mocker.patch.object(store, "get", side_effect=BackendError("object store unavailable"))

    response = client.get("/file/hello.txt")
    assert response.status_code == 500
    assert response.content == b""


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_message_type", ["http.response.start", "http.response.body"])
async def test_backend_body_released_when_client_disconnects(client, store, mocker, failing_message_type):
    upload(client, "a.txt", os.urandom(2 * MAX_PAYLOAD_SIZE + 5))
    body = TrackedBody(store.get(BUCKET, "a.txt").read())
    mocker.patch.object(store, "get", return_value=body)

    await serve_download(client, "/file/a.txt", failing_message_type)

    assert body.closed_by_caller
