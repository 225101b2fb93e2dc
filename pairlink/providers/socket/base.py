from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Protocol


class SocketEventKind(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"
    CREDS_UPDATE = "creds_update"


@dataclass(frozen=True)
class SocketEvent:
    kind: SocketEventKind
    reason_code: int | None = None


class ProtocolSocket(Protocol):
    """Opaque messaging-network connection; payload semantics stay inside it."""

    @property
    def is_registered(self) -> bool:
        ...

    @property
    def identity(self) -> str | None:
        ...

    def events(self) -> AsyncIterator[SocketEvent]:
        ...

    async def request_pairing_code(self, tenant_id: str) -> str:
        ...

    async def send_text(self, address: str, text: str) -> None:
        ...

    async def save_credentials(self) -> None:
        ...

    async def close(self) -> None:
        ...


# Builds a socket for (tenant_id, session_dir); the socket keeps its bundle in session_dir.
SocketFactory = Callable[[str, Path], Awaitable[ProtocolSocket]]
