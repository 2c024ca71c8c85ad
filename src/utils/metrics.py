"""Prometheus Metrics - Upload/download observability for the gateway

Self-Explanatory: Counters and histograms for the two gateway operations.
Why: See throughput, failure classes and integrity alarms without reading logs.
How: prometheus_client; exported at /metrics.

Metrics:
1. Operations: uploads/downloads by outcome (status code)
2. Volume: plaintext bytes in and out
3. Latency: duration per operation
4. Security: integrity failures (tampering or wrong secret)
"""

import time
from functools import wraps
from typing import Callable

import structlog
from prometheus_client import (
    Counter,
    Histogram,
    generate_latest,
    REGISTRY,
)

logger = structlog.get_logger()

# ============================================================================
# OPERATION METRICS
# ============================================================================

uploads_total = Counter(
    "vaultgate_uploads_total",
    "Upload requests by response status",
    ["status"],
)

downloads_total = Counter(
    "vaultgate_downloads_total",
    "Download requests by response status",
    ["status"],
)

plaintext_bytes_uploaded_total = Counter(
    "vaultgate_plaintext_bytes_uploaded_total",
    "Plaintext bytes accepted and stored encrypted",
)

plaintext_bytes_downloaded_total = Counter(
    "vaultgate_plaintext_bytes_downloaded_total",
    "Plaintext bytes decrypted and sent to clients",
)

operation_duration_seconds = Histogram(
    "vaultgate_operation_duration_seconds",
    "Time spent handling a gateway operation",
    ["operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 300],
)

integrity_failures_total = Counter(
    "vaultgate_integrity_failures_total",
    "Downloads whose ciphertext failed authentication",
)

# ============================================================================
# DECORATOR UTILITIES
# ============================================================================


def track_duration(operation: str):
    """Decorator to track how long an async handler takes"""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                operation_duration_seconds.labels(operation=operation).observe(time.time() - start_time)
        return wrapper
    return decorator


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def record_upload(status: int, plaintext_bytes: int = 0):
    uploads_total.labels(status=str(status)).inc()
    if plaintext_bytes:
        plaintext_bytes_uploaded_total.inc(plaintext_bytes)


def record_download(status: int):
    downloads_total.labels(status=str(status)).inc()


def record_downloaded_bytes(plaintext_bytes: int):
    plaintext_bytes_downloaded_total.inc(plaintext_bytes)


def record_integrity_failure():
    integrity_failures_total.inc()


def observe_duration(operation: str, seconds: float):
    operation_duration_seconds.labels(operation=operation).observe(seconds)


def get_metrics_text() -> bytes:
    """Get Prometheus metrics in text format

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(REGISTRY)
