"""Object Store Adapter - The narrow interface the gateway talks to

Self-Explanatory: put/get opaque bytes under (bucket, name), plus bucket bootstrap.
Why: Keeps the gateway independent of the concrete storage client; tests swap in memory.
How: typing.Protocol implemented by S3ObjectStore (boto3) and InMemoryObjectStore.

Adapters never encrypt or decrypt. Backend-specific "not found" signals are
turned into ObjectNotFound at this boundary.
"""

import threading
from typing import BinaryIO, Optional, Protocol

from pydantic import BaseModel

from src.gateway.errors import ObjectSizeMismatch, UploadCancelled


class UploadInfo(BaseModel):
    """What the backend reports after a put (logging only)"""

    bucket: str
    name: str
    size: int
    etag: Optional[str] = None


class ObjectStore(Protocol):
    def put(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        part_size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadInfo:
        """Store exactly `size` bytes from `stream`; overwrites silently"""
        ...

    def get(self, bucket: str, name: str) -> BinaryIO:
        """Open the object for reading; the caller must close it

        Raises:
            ObjectNotFound if nothing is stored under (bucket, name)
        """
        ...

    def bucket_exists(self, bucket: str) -> bool:
        ...

    def ensure_bucket(self, bucket: str) -> bool:
        """Create the bucket if absent; True if it was created"""
        ...


class SizedReader:
    """Reader that yields exactly `size` bytes from `source` or fails

    A stream that ends early or runs long raises ObjectSizeMismatch, and a set
    cancel event raises UploadCancelled, both from inside read() so the
    backend transfer aborts before the object is committed.
    """

    def __init__(self, source: BinaryIO, size: int, cancel_event: Optional[threading.Event] = None):
        self._source = source
        self._remaining = size
        self._size = size
        self._cancel_event = cancel_event
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def read(self, size: Optional[int] = -1) -> bytes:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise UploadCancelled("upload cancelled by client")

        if self._remaining == 0:
            if self._source.read(1):
                raise ObjectSizeMismatch(f"stream longer than declared size {self._size}")
            return b""

        # Fill the whole request so a short source can never look like EOF
        want = self._remaining if size is None or size < 0 else min(size, self._remaining)
        chunks = []
        missing = want
        while missing > 0:
            chunk = self._source.read(missing)
            if not chunk:
                raise ObjectSizeMismatch(
                    f"stream ended after {self.bytes_read + want - missing} of {self._size} declared bytes"
                )
            chunks.append(chunk)
            missing -= len(chunk)

        data = b"".join(chunks)
        self._remaining -= len(data)
        self.bytes_read += len(data)
        return data

    def close(self) -> None:
        """No-op: the caller owns (and closes) the source"""
