from __future__ import annotations

import time
from typing import AsyncIterator, Final
from urllib.parse import quote

import httpx

from pairlink.core.config import Settings, get_settings
from pairlink.core.errors import BlobStoreConfigError, EscrowError
from pairlink.providers.blobstore.base import BlobAttributes
from pairlink.services.telemetry import record_external_call


_INTEGRATION = "blobstore.http"


class HttpBlobStore:
    """Object store reached over HTTP with account (basic auth) credentials.

    Objects live under ``<base>/files/<locator>``. Uploads are ``PUT`` to the
    random name; the store answers with ``{"locator": ...}`` and that locator
    is what escrow tokens carry.
    """

    provider: Final[str] = "http"

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per store for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    def _credentials(self) -> tuple[str, httpx.BasicAuth]:
        base_url = self._settings.blob_store_url
        username = self._settings.blob_store_username
        password = self._settings.blob_store_password
        if not base_url:
            raise BlobStoreConfigError("BLOB_STORE_URL must be set")
        if not username or not password:
            raise BlobStoreConfigError("BLOB_STORE_USERNAME and BLOB_STORE_PASSWORD must be set")
        return base_url.rstrip("/"), httpx.BasicAuth(username, password)

    def _object_url(self, base_url: str, locator: str) -> str:
        return f"{base_url}/files/{quote(locator, safe='')}"

    async def upload_stream(self, name: str, size_bytes: int, stream: AsyncIterator[bytes]) -> str:
        base_url, auth = self._credentials()
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.put(
                self._object_url(base_url, name),
                content=stream,
                headers={"Content-Length": str(size_bytes), "Content-Type": "application/octet-stream"},
                auth=auth,
            )
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            raise EscrowError(f"Blob store upload failed: {exc}") from exc
        if response.status_code >= 400:
            self._record(start, success=False)
            raise _status_error("upload", response)
        self._record(start, success=True)
        locator: str | None = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict) and payload.get("locator"):
                locator = str(payload["locator"])
        return locator or name

    async def fetch_attributes(self, locator: str) -> BlobAttributes:
        base_url, auth = self._credentials()
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.head(self._object_url(base_url, locator), auth=auth)
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            raise EscrowError(f"Failed to load blob attributes: {exc}") from exc
        if response.status_code >= 400:
            self._record(start, success=False)
            raise _status_error("attributes", response)
        self._record(start, success=True)
        length = response.headers.get("Content-Length")
        if response.headers.get("Content-Encoding"):
            # Encoded length differs from the decoded bytes the download yields.
            length = None
        return BlobAttributes(
            locator=locator,
            name=response.headers.get("X-Blob-Name"),
            size_bytes=int(length) if length and length.isdigit() else None,
        )

    async def download_stream(self, locator: str) -> AsyncIterator[bytes]:
        base_url, auth = self._credentials()
        client = self._get_client()
        start = time.monotonic()
        try:
            async with client.stream("GET", self._object_url(base_url, locator), auth=auth) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise _status_error("download", response)
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as exc:
            self._record(start, success=False)
            raise EscrowError(f"Blob store download failed: {exc}") from exc
        except EscrowError:
            self._record(start, success=False)
            raise
        self._record(start, success=True)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _record(self, start: float, *, success: bool) -> None:
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )


def _status_error(operation: str, response: httpx.Response) -> EscrowError:
    if response.status_code in {401, 403}:
        error: EscrowError = BlobStoreConfigError(
            f"Blob store rejected credentials during {operation}: {response.status_code}"
        )
    else:
        error = EscrowError(f"Blob store {operation} error: {response.status_code}")
    setattr(error, "status_code", response.status_code)
    return error
