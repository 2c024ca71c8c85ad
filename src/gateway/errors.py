"""Gateway Errors - One exception per failure class, one status per exception

Why: Handlers map every internal failure to exactly one HTTP status.
How: Each class carries its status code; the router returns it with an empty body.

Taxonomy:
- ClientInputError: malformed multipart, missing file field -> 400
- ObjectNotFound: no object at (bucket, name) -> 404
- IntegrityError: ciphertext failed authentication -> 500
- BackendError: object store unavailable or rejected the request -> 500
- StartupFatal: backend/bucket/KDF unusable -> process does not serve
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for all gateway failures"""

    status_code: Optional[int] = 500


class ClientInputError(GatewayError):
    status_code = 400


class ObjectNotFound(GatewayError):
    status_code = 404

    def __init__(self, bucket: str, name: str):
        super().__init__(f"object not found: {bucket}/{name}")
        self.bucket = bucket
        self.name = name


class CipherError(GatewayError):
    """Encryption pipeline could not be set up (bad key, unsupported suite)"""

    status_code = 500


class IntegrityError(CipherError):
    """Ciphertext failed authentication: wrong key, truncated or tampered"""

    status_code = 500


class BackendError(GatewayError):
    status_code = 500


class ObjectSizeMismatch(BackendError):
    """Stream did not yield exactly the declared number of bytes"""


class UploadCancelled(BackendError):
    """Client went away while the backend transfer was running"""


class StartupFatal(GatewayError):
    """Raised during startup; the process must not serve traffic"""

    status_code = None
