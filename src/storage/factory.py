"""Object store factory - picks the backend named in settings"""

import structlog

from src.storage.base import ObjectStore

logger = structlog.get_logger()


def create_object_store(settings) -> ObjectStore:
    if settings.backend == "memory":
        from src.storage.memory_backend import InMemoryObjectStore

        logger.warning("Using in-memory object store (data is lost on restart)")
        return InMemoryObjectStore()

    from src.storage.s3_backend import S3ObjectStore

    return S3ObjectStore.from_settings(settings)
