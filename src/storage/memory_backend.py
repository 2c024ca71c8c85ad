"""In-Memory Object Store - Same contract as S3, no network

Used by the test suite and by OBJECT_STORE_BACKEND=memory for local runs.
Objects are committed only after the full declared size has been read.
"""

import io
import threading
from typing import BinaryIO, Dict, Optional, Set, Tuple

import structlog

from src.gateway.errors import BackendError, ObjectNotFound
from src.storage.base import SizedReader, UploadInfo

logger = structlog.get_logger()


class InMemoryObjectStore:
    """Dict-backed object store, safe to share between request threads"""

    def __init__(self, auto_create_buckets: bool = False):
        self._objects: Dict[Tuple[str, str], bytes] = {}
        self._buckets: Set[str] = set()
        self._auto_create_buckets = auto_create_buckets
        self._lock = threading.Lock()

    def _check_bucket(self, bucket: str) -> None:
        if bucket in self._buckets:
            return
        if not self._auto_create_buckets:
            raise BackendError(f"bucket does not exist: {bucket}")
        self._buckets.add(bucket)

    def put(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        part_size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadInfo:
        with self._lock:
            self._check_bucket(bucket)

        reader = SizedReader(stream, size, cancel_event)
        buffer = io.BytesIO()
        while True:
            chunk = reader.read(part_size)
            if not chunk:
                break
            buffer.write(chunk)

        with self._lock:
            self._objects[(bucket, name)] = buffer.getvalue()
        return UploadInfo(bucket=bucket, name=name, size=reader.bytes_read)

    def get(self, bucket: str, name: str) -> BinaryIO:
        with self._lock:
            data = self._objects.get((bucket, name))
        if data is None:
            raise ObjectNotFound(bucket, name)
        return io.BytesIO(data)

    def bucket_exists(self, bucket: str) -> bool:
        with self._lock:
            return bucket in self._buckets

    def ensure_bucket(self, bucket: str) -> bool:
        with self._lock:
            if bucket in self._buckets:
                return False
            self._buckets.add(bucket)
        logger.info("In-memory bucket created", bucket=bucket)
        return True
