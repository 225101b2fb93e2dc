from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from pairlink.core.errors import InvalidInputError


logger = logging.getLogger(__name__)


def error_body(message: str) -> dict[str, str]:
    return {"status": "error", "message": message}


async def invalid_input_exception_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    # Malformed tenant ids and tokens are caller errors, never retried server-side.
    return JSONResponse(content=error_body(str(exc)), status_code=400)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(content={**error_body("Validation error"), "details": exc.errors()}, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.error("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    return JSONResponse(content=error_body("Internal server error"), status_code=500)
