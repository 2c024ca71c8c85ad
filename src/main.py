"""VaultGate Main FastAPI App - Encrypted object storage gateway

This file builds the HTTP gateway that stores files encrypted at rest.
Run with: uvicorn src.main:app  (or: python -m src.main)

Endpoints:
1. POST /upload: store a multipart "file" encrypted under its filename
2. GET /file/{name}: fetch and decrypt a stored file
3. /health, /health/live, /health/ready: liveness and readiness probes
4. /metrics: Prometheus metrics
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from src.gateway.config import GatewaySettings
from src.gateway.errors import StartupFatal
from src.gateway.router import router as gateway_router
from src.gateway.service import FileGateway
from src.storage.base import ObjectStore
from src.storage.factory import create_object_store
from src.utils.health_check import HealthChecker
from src.utils.metrics import get_metrics_text

# Stdlib logging is the sink; the level is set from settings at startup
logging.basicConfig(format="%(message)s", level=logging.INFO)

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

APP_VERSION = "1.0.0"


def create_app(settings: Optional[GatewaySettings] = None, store: Optional[ObjectStore] = None) -> FastAPI:
    """Build the gateway app

    Args:
        settings: Gateway settings; read from the environment at startup if None
        store: Object store; built from settings at startup if None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            app_settings = settings or GatewaySettings.from_env()
        except ValidationError as e:
            fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
            raise StartupFatal(f"invalid configuration: {fields}") from None

        logging.getLogger().setLevel(app_settings.log_level)
        logger.info(
            "VaultGate starting",
            backend=app_settings.backend,
            bucket=app_settings.bucket_name,
            cipher_suite=app_settings.cipher_suite,
            part_size=app_settings.part_size,
        )

        app_store = store if store is not None else create_object_store(app_settings)
        gateway = FileGateway(app_settings, app_store)
        try:
            await run_in_threadpool(gateway.start)
        except StartupFatal as e:
            logger.critical("Startup failed", error=str(e))
            raise

        app.state.gateway = gateway
        app.state.health_checker = HealthChecker(app_store, app_settings.bucket_name)
        logger.info("VaultGate ready", bucket=app_settings.bucket_name)

        yield

        logger.info("Shutting down VaultGate...")

    app = FastAPI(
        title="VaultGate - Encrypted Object Storage Gateway",
        description="Stores files in an S3-compatible bucket, encrypted per object at rest.",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    app.include_router(gateway_router, tags=["Files"])

    # ========================================================================
    # HEALTH CHECKS
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Basic liveness check"""
        return await app.state.health_checker.liveness_check()

    @app.get("/health/live")
    async def health_live():
        """Kubernetes liveness probe"""
        return await app.state.health_checker.liveness_check()

    @app.get("/health/ready")
    async def health_ready():
        """Kubernetes readiness probe"""
        return await app.state.health_checker.readiness_check()

    # ========================================================================
    # PROMETHEUS METRICS
    # ========================================================================

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        """Prometheus metrics endpoint"""
        return PlainTextResponse(get_metrics_text(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/")
    async def root():
        """Root endpoint with service info"""
        return {
            "message": "VaultGate - Encrypted Object Storage Gateway",
            "version": APP_VERSION,
            "endpoints": {
                "upload": "POST /upload",
                "download": "GET /file/{name}",
            },
            "health": "/health/ready",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def run():
    """Console entry point"""
    settings = GatewaySettings.from_env()
    logger.info("Starting VaultGate server...", host=settings.api_host, port=settings.api_port)
    uvicorn.run("src.main:app", host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
