from __future__ import annotations

import re

import pytest

from pairlink.core.config import CREDS_FILENAME
from pairlink.core.errors import BlobStoreConfigError, EscrowError, InvalidTokenError
from pairlink.providers.blobstore.base import BlobAttributes
from pairlink.providers.blobstore.local import LocalBlobStore
from pairlink.services.escrow import CredentialEscrow, random_blob_name
from pairlink.services.resilience import RetryPolicy


class ExplodingStore:
    provider = "exploding"

    def __init__(self) -> None:
        self.calls = 0

    async def upload_stream(self, name, size_bytes, stream):
        self.calls += 1
        raise AssertionError("store must not be called")

    async def fetch_attributes(self, locator):
        self.calls += 1
        raise AssertionError("store must not be called")

    def download_stream(self, locator):
        self.calls += 1
        raise AssertionError("store must not be called")

    async def aclose(self) -> None:
        return None


class FlakyStore:
    """Fails attribute lookups a fixed number of times, then serves a payload."""

    provider = "flaky"

    def __init__(self, failures: int, payload: bytes = b'{"ok": true}') -> None:
        self.failures = failures
        self.payload = payload
        self.attempts = 0

    async def upload_stream(self, name, size_bytes, stream):
        return name

    async def fetch_attributes(self, locator):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store unreachable")
        return BlobAttributes(locator=locator, name=locator, size_bytes=len(self.payload))

    async def download_stream(self, locator):
        yield self.payload

    async def aclose(self) -> None:
        return None


def _bundle(tmp_path, content: bytes = b'{"noiseKey": "secret", "registered": true}'):
    path = tmp_path / "session_15551234567" / CREDS_FILENAME
    path.parent.mkdir(parents=True)
    path.write_bytes(content)
    return path


def test_random_blob_name_shape() -> None:
    for _ in range(50):
        assert re.fullmatch(r"[A-Za-z0-9]{6}\d{1,4}\.json", random_blob_name())


@pytest.mark.asyncio
async def test_upload_then_download_reproduces_bundle(tmp_path) -> None:
    content = b'{"me": {"id": "15551234567:3@s.whatsapp.net"}, "advSecretKey": "abc=="}'
    bundle = _bundle(tmp_path, content)
    escrow = CredentialEscrow(LocalBlobStore(root=tmp_path / "blobs"))

    token = await escrow.upload(bundle)
    assert token.startswith("SESSION-ID~")
    assert bundle.read_bytes() == content

    restored = await escrow.download(token, tmp_path / "restored")
    assert restored == tmp_path / "restored" / CREDS_FILENAME
    assert restored.read_bytes() == content
    assert not list((tmp_path / "restored").glob("*.part"))


@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["", "abc123", "SESSION-ID~", "session-id~abc"])
async def test_malformed_token_fails_before_any_store_call(tmp_path, token) -> None:
    store = ExplodingStore()
    escrow = CredentialEscrow(store)
    with pytest.raises(InvalidTokenError):
        await escrow.download(token, tmp_path)
    assert store.calls == 0
    assert not (tmp_path / CREDS_FILENAME).exists()


@pytest.mark.asyncio
async def test_upload_missing_bundle_raises(tmp_path) -> None:
    escrow = CredentialEscrow(ExplodingStore())
    with pytest.raises(EscrowError, match="File not found"):
        await escrow.upload(tmp_path / "missing" / CREDS_FILENAME)


@pytest.mark.asyncio
async def test_download_retries_with_linear_backoff(tmp_path) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    store = FlakyStore(failures=2)
    escrow = CredentialEscrow(
        store,
        download_policy=RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=2000),
        sleep=fake_sleep,
    )
    path = await escrow.download("SESSION-ID~blob1.json", tmp_path)
    assert path.read_bytes() == store.payload
    assert store.attempts == 3
    assert delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_download_gives_up_with_last_reason(tmp_path) -> None:
    async def fake_sleep(seconds: float) -> None:
        return None

    escrow = CredentialEscrow(
        FlakyStore(failures=10),
        download_policy=RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=1),
        sleep=fake_sleep,
    )
    with pytest.raises(EscrowError, match="after 3 attempts: store unreachable"):
        await escrow.download("SESSION-ID~blob1.json", tmp_path)


def test_custom_prefix_round_trips_locator() -> None:
    escrow = CredentialEscrow(ExplodingStore(), prefix="TENANT~")
    assert escrow.parse_token(escrow.build_token("blob.json")) == "blob.json"


class TruncatingStore(FlakyStore):
    """Advertises the full payload size but streams only part of it."""

    async def download_stream(self, locator):
        yield self.payload[:4]


@pytest.mark.asyncio
async def test_short_download_keeps_existing_bundle(tmp_path) -> None:
    async def fake_sleep(seconds: float) -> None:
        return None

    existing = _bundle(tmp_path, b'{"registered": true}')
    escrow = CredentialEscrow(
        TruncatingStore(failures=0),
        download_policy=RetryPolicy(timeout_ms=None, max_attempts=2, backoff_ms=1),
        sleep=fake_sleep,
    )
    with pytest.raises(EscrowError, match="size mismatch"):
        await escrow.download("SESSION-ID~blob1.json", existing.parent)
    assert existing.read_bytes() == b'{"registered": true}'
    assert not list(existing.parent.glob("*.part"))


class UnconfiguredStore(FlakyStore):
    async def fetch_attributes(self, locator):
        self.attempts += 1
        raise BlobStoreConfigError("BLOB_STORE_URL must be set")


@pytest.mark.asyncio
async def test_config_error_is_not_retried(tmp_path) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    store = UnconfiguredStore(failures=0)
    escrow = CredentialEscrow(
        store,
        download_policy=RetryPolicy(timeout_ms=None, max_attempts=3, backoff_ms=2000),
        sleep=fake_sleep,
    )
    with pytest.raises(BlobStoreConfigError):
        await escrow.download("SESSION-ID~blob1.json", tmp_path)
    assert store.attempts == 1
    assert delays == []
