"""Client disconnect -> backend cancellation

Backend transfers run in worker threads, which asyncio cannot interrupt.
A watcher task waits for the ASGI http.disconnect message and sets a
threading.Event that the transfer's reader checks on every read.
"""

import threading
from contextlib import asynccontextmanager
from typing import AsyncIterator

import anyio
import structlog
from starlette.requests import Request

logger = structlog.get_logger()


async def wait_for_disconnect(request: Request) -> None:
    """Block until the client goes away (call only after the body is consumed)"""
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


@asynccontextmanager
async def cancel_on_disconnect(request: Request) -> AsyncIterator[threading.Event]:
    cancel_event = threading.Event()

    async def watch() -> None:
        await wait_for_disconnect(request)
        logger.warning("Client disconnected, cancelling backend transfer", path=request.url.path)
        cancel_event.set()

    # Errors from the body are re-raised outside the task group so callers
    # see them as-is, not wrapped in an ExceptionGroup
    error = None
    async with anyio.create_task_group() as tg:
        tg.start_soon(watch)
        try:
            yield cancel_event
        except Exception as e:
            error = e
        finally:
            tg.cancel_scope.cancel()
    if error is not None:
        raise error
