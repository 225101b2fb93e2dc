from __future__ import annotations

from pairlink.core.config import Settings, get_settings
from pairlink.core.errors import BlobStoreConfigError
from pairlink.providers.blobstore.base import BlobAttributes, BlobStore
from pairlink.providers.blobstore.http_store import HttpBlobStore
from pairlink.providers.blobstore.local import LocalBlobStore


_BLOB_STORES: dict[str, type] = {
    "http": HttpBlobStore,
    "local": LocalBlobStore,
}


def get_blob_store(settings: Settings | None = None) -> BlobStore:
    settings = settings or get_settings()
    provider_name = (settings.blob_store_provider or "http").lower()
    provider_cls = _BLOB_STORES.get(provider_name)
    if provider_cls is None:
        raise BlobStoreConfigError(f"Unsupported blob store provider: {provider_name}")
    return provider_cls(settings=settings)


__all__ = ["BlobAttributes", "BlobStore", "HttpBlobStore", "LocalBlobStore", "get_blob_store"]
