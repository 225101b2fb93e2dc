from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pairlink.apps.api.deps import get_supervisor
from pairlink.core.errors import InvalidInputError
from pairlink.services.supervisor import SessionSupervisor


logger = logging.getLogger(__name__)

router = APIRouter(tags=["pairing"])


class ConnectResponse(BaseModel):
    status: str
    message: str
    code: str | None = None


@router.get(
    "/",
    response_model=ConnectResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ConnectResponse}, 408: {"model": ConnectResponse}, 500: {"model": ConnectResponse}},
)
async def trigger_connect(
    number: str | None = Query(default=None, description="Phone number, digits only after normalization"),
    supervisor: SessionSupervisor = Depends(get_supervisor),
) -> JSONResponse:
    # Start (or report) one tenant's connection and relay the single outcome of that attempt.
    try:
        outcome = await supervisor.connect(number)
    except InvalidInputError:
        raise
    except Exception as exc:  # noqa: BLE001 - setup failures map to the stable 500 body
        logger.error("connect_setup_failed number=%s", number, exc_info=exc)
        return JSONResponse(
            content={"status": "error", "message": "Failed to initialize connection."},
            status_code=500,
        )
    return JSONResponse(content=outcome.to_payload(), status_code=outcome.http_status)
