"""Health Check - Liveness and readiness for the gateway

Self-Explanatory: Is the process up, and can it reach its bucket?
Why: Orchestrators should stop routing traffic when the object store is gone.
How: Liveness is static; readiness asks the object store whether the bucket exists.

K8s Integration:
- /health/live: Liveness probe (is service running?)
- /health/ready: Readiness probe (can serve traffic?)
"""

import time
from datetime import datetime, timezone
from typing import Dict

import structlog
from fastapi import status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

logger = structlog.get_logger()


class HealthStatus:
    """Health status constants"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthChecker:
    """Health checks for the gateway and its object store"""

    def __init__(self, store, bucket: str):
        self.store = store
        self.bucket = bucket
        self.start_time = time.time()

    async def check_object_store(self) -> Dict:
        """Check the object store answers and the bucket is there"""
        try:
            start = time.time()
            exists = await run_in_threadpool(self.store.bucket_exists, self.bucket)
            latency_ms = (time.time() - start) * 1000

            if not exists:
                return {
                    "status": HealthStatus.UNHEALTHY,
                    "message": "Bucket missing",
                }
            return {
                "status": HealthStatus.HEALTHY,
                "latency_ms": round(latency_ms, 2),
                "message": "Object store reachable",
            }

        except Exception as e:
            logger.error("Object store health check failed", error_type=type(e).__name__)
            return {
                "status": HealthStatus.UNHEALTHY,
                "message": "Object store unreachable",
            }

    async def liveness_check(self) -> JSONResponse:
        """Always alive unless the process crashed"""
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={
                "status": "alive",
                "timestamp": _now(),
                "uptime_seconds": int(time.time() - self.start_time),
            },
        )

    async def readiness_check(self) -> JSONResponse:
        """200 if the object store is usable, 503 otherwise"""
        store_status = await self.check_object_store()
        is_ready = store_status["status"] == HealthStatus.HEALTHY

        return JSONResponse(
            status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if is_ready else "not_ready",
                "timestamp": _now(),
                "checks": {"object_store": store_status},
            },
        )
