from __future__ import annotations

from fastapi import HTTPException, Request, status

from pairlink.services.supervisor import SessionSupervisor


def get_supervisor(request: Request) -> SessionSupervisor:
    # The lifespan (or the app factory, in tests) attaches one supervisor per app.
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return supervisor
