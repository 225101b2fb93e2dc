from __future__ import annotations

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pairlink.apps.api.deps import get_supervisor
from pairlink.services.supervisor import SessionSupervisor

router = APIRouter(tags=["sessions"])


class LiveSessionResponse(BaseModel):
    tenant_id: str
    state: str
    connected_since: datetime
    uptime_s: float


class LiveSessionListResponse(BaseModel):
    count: int
    sessions: list[LiveSessionResponse]


@router.get("/sessions", response_model=LiveSessionListResponse)
async def list_live_sessions(supervisor: SessionSupervisor = Depends(get_supervisor)) -> LiveSessionListResponse:
    now = time.time()
    sessions = sorted(supervisor.live_sessions.snapshot(), key=lambda item: item.created_at)
    items = [
        LiveSessionResponse(
            tenant_id=session.tenant_id,
            state=session.state,
            connected_since=datetime.fromtimestamp(session.created_at, tz=timezone.utc),
            uptime_s=round(session.uptime_s(now), 3),
        )
        for session in sessions
    ]
    return LiveSessionListResponse(count=len(items), sessions=items)
