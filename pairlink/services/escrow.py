from __future__ import annotations

import asyncio
import logging
import secrets
import string
from pathlib import Path
from typing import AsyncIterator
from uuid import uuid4

from pairlink.core.config import CREDS_FILENAME, ESCROW_TOKEN_PREFIX
from pairlink.core.errors import BlobStoreConfigError, EscrowError, InvalidTokenError
from pairlink.providers.blobstore.base import BlobStore
from pairlink.services.resilience import RetryPolicy, Sleep, escrow_download_policy, retry_async


logger = logging.getLogger(__name__)

_NAME_ALPHABET = string.ascii_letters + string.digits
_READ_CHUNK = 64 * 1024


def random_blob_name(length: int = 6, number_length: int = 4) -> str:
    # Six alphanumerics plus a random number of up to four digits, e.g. "aB3xYz417.json".
    prefix = "".join(secrets.choice(_NAME_ALPHABET) for _ in range(length))
    number = secrets.randbelow(10**number_length)
    return f"{prefix}{number}.json"


class CredentialEscrow:
    """Moves a tenant's secret bundle to and from the remote blob store.

    Tokens are ``<prefix><locator>``; the locator is whatever the store
    returned on upload, so a token alone is enough to rehydrate a session.
    """

    def __init__(
        self,
        store: BlobStore,
        *,
        prefix: str = ESCROW_TOKEN_PREFIX,
        download_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._prefix = prefix
        self._download_policy = download_policy or escrow_download_policy()
        self._sleep = sleep

    @property
    def prefix(self) -> str:
        return self._prefix

    def parse_token(self, token: str | None) -> str:
        if not token or not isinstance(token, str) or not token.startswith(self._prefix):
            raise InvalidTokenError("Invalid session ID format")
        locator = token[len(self._prefix):]
        if not locator:
            raise InvalidTokenError("Session ID carries no blob locator")
        return locator

    def build_token(self, locator: str) -> str:
        return f"{self._prefix}{locator}"

    async def upload(self, bundle_path: Path) -> str:
        bundle_path = Path(bundle_path)
        try:
            size_bytes = (await asyncio.to_thread(bundle_path.stat)).st_size
        except FileNotFoundError as exc:
            raise EscrowError(f"File not found: {bundle_path}") from exc
        except OSError as exc:
            raise EscrowError(f"Cannot read bundle {bundle_path}: {exc}") from exc

        name = random_blob_name()
        try:
            locator = await self._store.upload_stream(name, size_bytes, _read_chunks(bundle_path))
        except EscrowError:
            raise
        except Exception as exc:  # noqa: BLE001 - any store failure is an escrow failure
            raise EscrowError(f"Upload failed: {exc}") from exc
        if not locator:
            raise EscrowError("Blob store returned an empty locator")
        logger.info("escrow_uploaded name=%s size_bytes=%s", name, size_bytes)
        return self.build_token(locator)

    async def download(self, token: str, destination_dir: Path) -> Path:
        # Reject malformed tokens before touching the network.
        locator = self.parse_token(token)
        destination_dir = Path(destination_dir)
        target = destination_dir / CREDS_FILENAME

        async def _fetch() -> Path:
            attributes = await self._store.fetch_attributes(locator)
            await asyncio.to_thread(destination_dir.mkdir, parents=True, exist_ok=True)
            partial = destination_dir / f".{CREDS_FILENAME}.{uuid4().hex}.part"
            try:
                received = 0
                with partial.open("wb") as handle:
                    async for chunk in self._store.download_stream(locator):
                        received += len(chunk)
                        await asyncio.to_thread(handle.write, chunk)
                # A short stream must never replace a working bundle.
                if attributes.size_bytes is not None and received != attributes.size_bytes:
                    raise EscrowError(f"Download size mismatch: expected {attributes.size_bytes}, got {received}")
                await asyncio.to_thread(partial.replace, target)
            finally:
                partial.unlink(missing_ok=True)
            return target

        def _log_retry(attempt: int, exc: Exception) -> None:
            logger.warning("escrow_download_attempt_failed attempt=%s error=%s", attempt, exc)

        try:
            return await retry_async(
                _fetch,
                policy=self._download_policy,
                retryable=_retryable_download,
                on_retry=_log_retry,
                sleep=self._sleep,
            )
        except BlobStoreConfigError:
            raise
        except Exception as exc:  # noqa: BLE001 - surface the last failure reason
            raise EscrowError(f"Download failed after {self._download_policy.max_attempts} attempts: {exc}") from exc


def _retryable_download(exc: Exception) -> bool:
    # Missing store credentials will not fix themselves between attempts.
    return not isinstance(exc, BlobStoreConfigError)


async def _read_chunks(path: Path) -> AsyncIterator[bytes]:
    handle = await asyncio.to_thread(path.open, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(handle.read, _READ_CHUNK)
            if not chunk:
                break
            yield chunk
    finally:
        handle.close()
