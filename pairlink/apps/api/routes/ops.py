from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel

from pairlink.services.telemetry import (
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
    request_status_counts,
)

router = APIRouter(prefix="/ops", tags=["ops"])


class MetricsResponse(BaseModel):
    window_s: int
    counters: dict[str, int]
    gauges: dict[str, float]
    external_calls: dict[str, dict[str, Any]]
    request_status: dict[str, int]


@router.get("/metrics", response_model=MetricsResponse)
async def metrics(window_s: int = Query(default=300, ge=1, le=86400)) -> MetricsResponse:
    # Expose in-process counters; values reset with the process.
    return MetricsResponse(
        window_s=window_s,
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        external_calls=external_latency_by_integration(window_s),
        request_status=request_status_counts(window_s),
    )
