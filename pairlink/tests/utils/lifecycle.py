from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Callable

from pairlink.core.config import CREDS_FILENAME
from pairlink.services.lifecycle.manager import LifecycleConfig
from pairlink.services.resilience import RetryPolicy


TENANT = "15551234567"


def fast_config(*, connect_timeout_s: float = 5.0, restart_delay_s: float = 0.01) -> LifecycleConfig:
    return LifecycleConfig(
        connect_timeout_s=connect_timeout_s,
        pairing_initial_delay_s=0.0,
        pairing_policy=RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=300),
        restart_delay_s=restart_delay_s,
    )


def write_bundle(session_dir: Path, identity: str | None = None) -> Path:
    session_dir.mkdir(parents=True, exist_ok=True)
    path = session_dir / CREDS_FILENAME
    path.write_text(json.dumps({"registered": True, "me": {"id": identity}}), encoding="utf-8")
    return path


async def eventually(predicate: Callable[[], bool], timeout_s: float = 2.0) -> None:
    # Poll until background tasks settle; fail loudly instead of hanging.
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class StubEscrow:
    """Escrow double that records uploads and returns a fixed token."""

    def __init__(
        self,
        token: str = "SESSION-ID~abc123",
        error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.token = token
        self.error = error
        # When set, uploads block until the gate opens.
        self.gate = gate
        self.uploads: list[Path] = []
        self.cancelled = 0

    async def upload(self, bundle_path: Path) -> str:
        self.uploads.append(Path(bundle_path))
        if self.gate is not None:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.error is not None:
            raise self.error
        return self.token
