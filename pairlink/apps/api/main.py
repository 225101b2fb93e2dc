from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from pairlink.apps.api.errors import (
    invalid_input_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from pairlink.apps.api.routes.health import router as health_router
from pairlink.apps.api.routes.ops import router as ops_router
from pairlink.apps.api.routes.pair import router as pair_router
from pairlink.apps.api.routes.sessions import router as sessions_router
from pairlink.core.config import get_settings
from pairlink.core.errors import InvalidInputError
from pairlink.core.logging import configure_logging, install_crash_handlers
from pairlink.services.supervisor import SessionSupervisor, build_supervisor
from pairlink.services.telemetry import record_request


logger = logging.getLogger(__name__)


async def _restore_in_background(supervisor: SessionSupervisor) -> None:
    try:
        await supervisor.restore_all()
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001 - the API keeps serving triggers when boot restore fails
        logger.error("restore_on_startup_failed", exc_info=exc)


def create_app(supervisor: SessionSupervisor | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        install_crash_handlers(asyncio.get_running_loop())
        owned = supervisor is None
        active = supervisor or build_supervisor()
        app.state.supervisor = active
        restore_task: asyncio.Task | None = None
        if owned and get_settings().restore_on_startup:
            restore_task = asyncio.create_task(_restore_in_background(active), name="restore-on-startup")
        logger.info("api_started restore=%s", restore_task is not None)
        try:
            yield
        finally:
            if restore_task is not None and not restore_task.done():
                restore_task.cancel()
                await asyncio.gather(restore_task, return_exceptions=True)
            if owned:
                await active.shutdown()
            logger.info("api_stopped")

    app = FastAPI(title="pairlink", lifespan=lifespan)
    # Tests drive the app without a lifespan, so an injected supervisor is attached up front.
    if supervisor is not None:
        app.state.supervisor = supervisor

    @app.middleware("http")
    async def request_timing_middleware(request: Request, call_next):  # type: ignore[override]
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        return response

    @app.exception_handler(InvalidInputError)
    async def _invalid_input_exception_handler(request: Request, exc: InvalidInputError):
        return await invalid_input_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(pair_router)
    app.include_router(health_router)
    app.include_router(sessions_router)
    app.include_router(ops_router)

    return app


app = create_app()
