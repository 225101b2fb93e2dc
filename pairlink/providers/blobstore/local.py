from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, Final

from pairlink.core.config import Settings, get_settings
from pairlink.core.errors import EscrowError
from pairlink.providers.blobstore.base import BlobAttributes


_CHUNK_SIZE = 64 * 1024


class LocalBlobStore:
    """Filesystem-backed blob store for local development and tests."""

    provider: Final[str] = "local"

    def __init__(self, settings: Settings | None = None, root: Path | None = None) -> None:
        settings = settings or get_settings()
        self._root = Path(root or settings.blob_store_local_dir)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, locator: str) -> Path:
        # Locators come from tokens, so they must not escape the store root.
        root = self._root.resolve()
        path = (root / locator).resolve()
        if path.parent != root:
            raise EscrowError(f"Invalid blob locator: {locator!r}")
        return path

    async def upload_stream(self, name: str, size_bytes: int, stream: AsyncIterator[bytes]) -> str:
        path = self._resolve(name)
        chunks = [chunk async for chunk in stream]
        payload = b"".join(chunks)
        if len(payload) != size_bytes:
            raise EscrowError(f"Upload size mismatch: expected {size_bytes}, got {len(payload)}")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(payload)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise EscrowError(f"Local blob write failed: {exc}") from exc
        return name

    async def fetch_attributes(self, locator: str) -> BlobAttributes:
        path = self._resolve(locator)
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError as exc:
            raise EscrowError(f"Blob not found: {locator}") from exc
        except OSError as exc:
            raise EscrowError(f"Failed to load blob attributes: {exc}") from exc
        return BlobAttributes(locator=locator, name=path.name, size_bytes=stat.st_size)

    async def download_stream(self, locator: str) -> AsyncIterator[bytes]:
        path = self._resolve(locator)
        try:
            handle = await asyncio.to_thread(path.open, "rb")
        except OSError as exc:
            raise EscrowError(f"Blob download failed: {exc}") from exc
        try:
            while True:
                chunk = await asyncio.to_thread(handle.read, _CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    async def aclose(self) -> None:
        return None
