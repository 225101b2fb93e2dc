from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator

from pairlink.core.config import CREDS_FILENAME
from pairlink.providers.socket.base import SocketEvent, SocketEventKind


class FakeProtocolSocket:
    """Scriptable in-memory socket; tests drive it through ``emit`` and ``complete_pairing``."""

    def __init__(
        self,
        tenant_id: str,
        session_dir: Path,
        *,
        registered: bool = False,
        identity: str | None = None,
        pairing_code: str = "ABCD-1234",
        pairing_failures: int = 0,
    ) -> None:
        self.tenant_id = tenant_id
        self.session_dir = Path(session_dir)
        self._registered = registered
        self._identity = identity
        self._pairing_code = pairing_code
        self.pairing_failures = pairing_failures
        self.pairing_requests = 0
        self.sent: list[tuple[str, str]] = []
        self.saved = 0
        self.closed = False
        self._queue: asyncio.Queue[SocketEvent | None] = asyncio.Queue()

    @property
    def is_registered(self) -> bool:
        return self._registered

    @property
    def identity(self) -> str | None:
        return self._identity

    async def events(self) -> AsyncIterator[SocketEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def emit(self, kind: SocketEventKind | str, reason_code: int | None = None) -> None:
        self._queue.put_nowait(SocketEvent(kind=SocketEventKind(kind), reason_code=reason_code))

    async def request_pairing_code(self, tenant_id: str) -> str:
        self.pairing_requests += 1
        if self.pairing_failures > 0:
            self.pairing_failures -= 1
            raise ConnectionError("pairing code request rejected")
        return self._pairing_code

    def complete_pairing(self, identity: str | None = None, *, emit_open: bool = True) -> None:
        # Simulate the user entering the code: credentials register and the bundle lands on disk.
        self._registered = True
        self._identity = identity or self._identity or f"{self.tenant_id}:1@s.whatsapp.net"
        self.write_bundle()
        if emit_open:
            self.emit(SocketEventKind.OPEN)

    def write_bundle(self) -> Path:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        path = self.session_dir / CREDS_FILENAME
        payload = {"registered": self._registered, "me": {"id": self._identity}}
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    async def send_text(self, address: str, text: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append((address, text))

    async def save_credentials(self) -> None:
        self.saved += 1
        self.write_bundle()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)


class FakeSocketFactory:
    """Creates fake sockets and keeps every instance for inspection.

    With ``autopilot`` the socket announces ``connecting`` and, when a bundle
    already exists, ``open`` right after, which is enough to run the API locally.
    """

    def __init__(self, *, autopilot: bool = False, pairing_failures: int = 0) -> None:
        self.autopilot = autopilot
        self.pairing_failures = pairing_failures
        self.created: list[FakeProtocolSocket] = []

    async def __call__(self, tenant_id: str, session_dir: Path) -> FakeProtocolSocket:
        registered = (Path(session_dir) / CREDS_FILENAME).exists()
        socket = FakeProtocolSocket(
            tenant_id,
            session_dir,
            registered=registered,
            identity=f"{tenant_id}:1@s.whatsapp.net" if registered else None,
            pairing_failures=self.pairing_failures,
        )
        self.created.append(socket)
        if self.autopilot:
            socket.emit(SocketEventKind.CONNECTING)
            if registered:
                socket.emit(SocketEventKind.OPEN)
        return socket

    def latest(self, tenant_id: str) -> FakeProtocolSocket:
        for socket in reversed(self.created):
            if socket.tenant_id == tenant_id:
                return socket
        raise KeyError(tenant_id)
