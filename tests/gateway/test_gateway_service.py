"""Unit Tests for the gateway service layer and disconnect cancellation

How: Async tests (pytest-asyncio) against FileGateway with the in-memory store.
Run: pytest tests/gateway/
"""
import io
import os
import threading
from types import SimpleNamespace

import anyio
import pytest

from src.gateway.cancellation import cancel_on_disconnect
from src.gateway.errors import BackendError, IntegrityError, ObjectNotFound, StartupFatal, UploadCancelled
from src.gateway.service import DownloadStream, FileGateway
from src.security.stream_cipher import MAX_FRAME_SIZE, MAX_PAYLOAD_SIZE, DecryptingReader, encrypt_stream

KEY = bytes(range(32))


class TrackedBody(io.BytesIO):
    """BytesIO that remembers it was closed (like a backend response body)"""

    closed_by_caller = False

    def close(self):
        self.closed_by_caller = True
        super().close()


def fake_request(receive):
    return SimpleNamespace(receive=receive, url=SimpleNamespace(path="/upload"))


async def open_stream(blob: bytes) -> DownloadStream:
    body = TrackedBody(blob)
    reader = DecryptingReader(body, KEY)
    return DownloadStream("a.bin", body, reader, reader.next_chunk())


@pytest.fixture
def gateway(settings, store):
    gw = FileGateway(settings, store)
    gw.start()
    return gw


# ============================================================================
# FILE GATEWAY
# ============================================================================

def test_start_creates_bucket(gateway, store, settings):
    assert store.bucket_exists(settings.bucket_name)


def test_start_wraps_backend_errors(settings, store, mocker):
    mocker.patch.object(store, "ensure_bucket", side_effect=BackendError("down"))
    with pytest.raises(StartupFatal):
        FileGateway(settings, store).start()


def test_keys_differ_per_name(gateway):
    assert gateway.key_for("a.txt") != gateway.key_for("b.txt")


@pytest.mark.asyncio
async def test_upload_and_open_download(gateway):
    info = await gateway.upload("a.txt", io.BytesIO(b"payload"), 7)
    assert info.name == "a.txt"

    download = await gateway.open_download("a.txt")
    chunks = [chunk async for chunk in download.chunks()]
    assert b"".join(chunks) == b"payload"


@pytest.mark.asyncio
async def test_cancelled_upload_stores_nothing(gateway):
    cancel_event = threading.Event()
    cancel_event.set()
    with pytest.raises(UploadCancelled):
        await gateway.upload("a.txt", io.BytesIO(b"payload"), 7, cancel_event)
    with pytest.raises(ObjectNotFound):
        await gateway.open_download("a.txt")


@pytest.mark.asyncio
async def test_open_download_closes_body_on_integrity_failure(gateway, store, mocker):
    body = TrackedBody(b"\x00" * 64)
    mocker.patch.object(store, "get", return_value=body)
    with pytest.raises(IntegrityError):
        await gateway.open_download("a.txt")
    assert body.closed_by_caller


# ============================================================================
# DOWNLOAD STREAM
# ============================================================================

@pytest.mark.asyncio
async def test_download_stream_closes_body_when_done():
    download = await open_stream(encrypt_stream(io.BytesIO(b"hello world"), KEY).read())
    chunks = [chunk async for chunk in download.chunks()]
    assert chunks == [b"hello world"]
    assert download._body.closed_by_caller


@pytest.mark.asyncio
async def test_download_stream_closes_body_when_abandoned():
    plaintext = os.urandom(3 * MAX_PAYLOAD_SIZE)
    download = await open_stream(encrypt_stream(io.BytesIO(plaintext), KEY).read())
    chunks = download.chunks()
    assert await chunks.__anext__() == plaintext[:MAX_PAYLOAD_SIZE]
    await chunks.aclose()
    assert download._body.closed_by_caller


@pytest.mark.asyncio
async def test_download_stream_aborts_on_later_tampering():
    plaintext = os.urandom(2 * MAX_PAYLOAD_SIZE)
    blob = bytearray(encrypt_stream(io.BytesIO(plaintext), KEY).read())
    blob[MAX_FRAME_SIZE + 20] ^= 0x01
    download = await open_stream(bytes(blob))

    received = []
    with pytest.raises(IntegrityError):
        async for chunk in download.chunks():
            received.append(chunk)
    assert b"".join(received) == plaintext[:MAX_PAYLOAD_SIZE]
    assert download._body.closed_by_caller


# ============================================================================
# DISCONNECT CANCELLATION
# ============================================================================

@pytest.mark.asyncio
async def test_disconnect_sets_cancel_event():
    async def receive():
        return {"type": "http.disconnect"}

    async with cancel_on_disconnect(fake_request(receive)) as cancel_event:
        for _ in range(100):
            if cancel_event.is_set():
                break
            await anyio.sleep(0.01)
        assert cancel_event.is_set()


@pytest.mark.asyncio
async def test_connected_client_leaves_event_clear():
    async def receive():
        await anyio.sleep_forever()

    async with cancel_on_disconnect(fake_request(receive)) as cancel_event:
        await anyio.sleep(0.05)
    assert not cancel_event.is_set()


@pytest.mark.asyncio
async def test_errors_inside_pass_through_unwrapped():
    async def receive():
        await anyio.sleep_forever()

    with pytest.raises(BackendError):
        async with cancel_on_disconnect(fake_request(receive)):
            raise BackendError("put failed")
