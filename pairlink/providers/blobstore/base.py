from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Protocol


@dataclass(frozen=True)
class BlobAttributes:
    locator: str
    name: str | None
    size_bytes: int | None


class BlobStore(Protocol):
    provider: str

    async def upload_stream(self, name: str, size_bytes: int, stream: AsyncIterator[bytes]) -> str:
        ...

    async def fetch_attributes(self, locator: str) -> BlobAttributes:
        ...

    def download_stream(self, locator: str) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...
