"""File Gateway - Encrypt on the way in, decrypt on the way out

Self-Explanatory: Glues key derivation, the cipher pipeline and the object store.
Why: Handlers stay thin HTTP translation; this is the per-request state machine.
How: Blocking work (Argon2id, backend I/O, frame crypto) runs in worker threads.

Upload:  stream -> derive key(bucket, name) -> encrypt -> store.put(size = encrypted_size)
Download: store.get -> derive key(bucket, name) -> verify first frame -> stream frames
"""

import threading
import time
from typing import AsyncIterator, BinaryIO, Optional

import anyio
import structlog
from starlette.concurrency import run_in_threadpool

from src.gateway.config import GatewaySettings
from src.gateway.errors import (
    CipherError,
    IntegrityError,
    ObjectNotFound,
    StartupFatal,
)
from src.security.key_derivation import derive_key
from src.security.stream_cipher import (
    DecryptingReader,
    encrypt_stream,
    encrypted_size,
    parse_cipher_suite,
)
from src.storage.base import ObjectStore, UploadInfo
from src.utils.metrics import observe_duration, record_downloaded_bytes, record_integrity_failure

logger = structlog.get_logger()


class DownloadStream:
    """An opened, first-frame-verified download

    chunks() closes the backend stream on every exit path: completion,
    integrity failure, or cancellation after a client disconnect.
    """

    def __init__(self, name: str, body: BinaryIO, reader: DecryptingReader, first_chunk: bytes):
        self.name = name
        self._body = body
        self._reader = reader
        self._first_chunk = first_chunk
        self._started = time.time()
        self._closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        try:
            if self._first_chunk:
                yield self._first_chunk
            while True:
                chunk = await run_in_threadpool(self._reader.next_chunk)
                if chunk is None:
                    break
                if chunk:
                    yield chunk
            logger.info("Downloaded file", name=self.name, size=self._reader.plaintext_bytes)
        except IntegrityError as e:
            # Status line is already sent; aborting is the only signal left
            record_integrity_failure()
            logger.error("Integrity failure mid-stream, aborting response", name=self.name, error=str(e))
            raise
        except anyio.get_cancelled_exc_class():
            logger.info("Client disconnected during download", name=self.name, sent=self._reader.plaintext_bytes)
            raise
        except Exception as e:
            logger.error("Download stream aborted", name=self.name, error_type=type(e).__name__, error=str(e))
            raise
        finally:
            self.close()
            record_downloaded_bytes(self._reader.plaintext_bytes)
            observe_duration("download", time.time() - self._started)

    def close(self) -> None:
        """Release the backend stream; safe to call more than once"""
        if self._closed:
            return
        self._closed = True
        self._body.close()


class FileGateway:
    """Per-process gateway service holding only immutable configuration"""

    def __init__(self, settings: GatewaySettings, store: ObjectStore):
        self.settings = settings
        self.store = store
        self.bucket = settings.bucket_name
        self.suite = parse_cipher_suite(settings.cipher_suite)
        self._secret = settings.encryption_secret.get_secret_value().encode("utf-8")

    def key_for(self, name: str) -> bytes:
        return derive_key(self._secret, self.bucket, name)

    def start(self) -> None:
        """Bucket bootstrap and KDF self-check; any failure is fatal"""
        try:
            created = self.store.ensure_bucket(self.bucket)
        except StartupFatal:
            raise
        except Exception as e:
            raise StartupFatal(f"cannot prepare bucket {self.bucket}") from e
        logger.info("Bucket ready", bucket=self.bucket, created=created)

        try:
            self.key_for("startup-self-check")
        except Exception as e:
            raise StartupFatal("key derivation unavailable") from e

    async def upload(
        self,
        name: str,
        source: BinaryIO,
        size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadInfo:
        """Encrypt `source` (exactly `size` plaintext bytes) and store it under `name`"""
        try:
            expected_size = encrypted_size(size)
        except ValueError as e:
            raise CipherError(str(e)) from e

        key = await run_in_threadpool(self.key_for, name)
        encrypted = encrypt_stream(source, key, self.suite)
        try:
            return await run_in_threadpool(
                self.store.put,
                self.bucket,
                name,
                encrypted,
                expected_size,
                self.settings.part_size,
                cancel_event,
            )
        finally:
            encrypted.close()

    async def open_download(self, name: str) -> DownloadStream:
        """Open `name` and verify its first frame before any byte is sent

        Raises:
            ObjectNotFound: nothing stored under this name
            IntegrityError: wrong key or damaged first frame
            BackendError: object store failure
        """
        if not name:
            raise ObjectNotFound(self.bucket, name)

        body = await run_in_threadpool(self.store.get, self.bucket, name)
        try:
            key = await run_in_threadpool(self.key_for, name)
            reader = DecryptingReader(body, key)
            first_chunk = await run_in_threadpool(reader.next_chunk)
        except IntegrityError:
            record_integrity_failure()
            body.close()
            raise
        except BaseException:
            body.close()
            raise

        return DownloadStream(name, body, reader, first_chunk or b"")
