from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator

from pairlink.providers.socket.base import ProtocolSocket
from pairlink.services.telemetry import set_gauge

if TYPE_CHECKING:
    from pairlink.services.lifecycle.manager import ConnectionLifecycleManager


@dataclass
class LiveSession:
    tenant_id: str
    socket: ProtocolSocket
    manager: "ConnectionLifecycleManager"
    created_at: float = field(default_factory=time.time)

    @property
    def state(self) -> str:
        return self.manager.state.value

    def uptime_s(self, now: float | None = None) -> float:
        return max(0.0, (now if now is not None else time.time()) - self.created_at)


class LiveSessionTable:
    """Process-wide tenant -> open connection map.

    Mutations are serialized by a lock; lookups read the dict directly so a
    tenant worker never waits on another tenant's insert.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, LiveSession] = {}
        self._lock = asyncio.Lock()

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._sessions))

    def get(self, tenant_id: str) -> LiveSession | None:
        return self._sessions.get(tenant_id)

    def snapshot(self) -> list[LiveSession]:
        return list(self._sessions.values())

    async def add(self, session: LiveSession) -> LiveSession | None:
        async with self._lock:
            previous = self._sessions.get(session.tenant_id)
            self._sessions[session.tenant_id] = session
            set_gauge("live_sessions", len(self._sessions))
            return previous

    async def remove(self, tenant_id: str, *, owner: object | None = None) -> bool:
        # With an owner, only that manager's own entry is removed; a newer manager's entry stays.
        async with self._lock:
            current = self._sessions.get(tenant_id)
            if current is None:
                return False
            if owner is not None and current.manager is not owner:
                return False
            del self._sessions[tenant_id]
            set_gauge("live_sessions", len(self._sessions))
            return True

    async def drain(self) -> list[LiveSession]:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            set_gauge("live_sessions", 0)
            return sessions
