from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pairlink.core.config import Settings, get_settings
from pairlink.services.telemetry import increment_counter


Sleep = Callable[[float], Awaitable[None]]


def retry_everything(exc: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior; waits backoff_ms * attempt between tries.
    timeout_ms: int | None
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        return (self.backoff_ms / 1000.0) * attempt


def pairing_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.pairing_max_attempts,
        backoff_ms=settings.pairing_backoff_ms,
    )


def escrow_download_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.escrow_download_max_attempts,
        backoff_ms=settings.escrow_download_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool],
    on_retry: Callable[[int, Exception], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> Any:
    # Retry helper; the last failure propagates once attempts are exhausted.
    attempt = 1
    while True:
        try:
            if policy.timeout_ms is None:
                return await func()
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller decides which failures are retryable
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(policy.delay_s(attempt))
            attempt += 1
