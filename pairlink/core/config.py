from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


# Literal prefix of every escrow token; changing it orphans existing registry rows.
ESCROW_TOKEN_PREFIX = "SESSION-ID~"
# File name of the serialized secret bundle inside a tenant session directory.
CREDS_FILENAME = "creds.json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "pairlink"
    log_level: str = "INFO"
    port: int = 10000

    # Directory holding settings.json and sessions.json.
    data_dir: str = "./data"
    # Parent directory of per-tenant session_<tenant> bundle directories.
    session_base_path: str = "./session"

    # Overall window for one connect attempt to reach the open state.
    connect_timeout_ms: int = 60000
    # Pairing code requests: delay before the first request, attempts, and linear backoff step.
    pairing_initial_delay_ms: int = 1500
    pairing_max_attempts: int = 3
    pairing_backoff_ms: int = 300
    # Fixed delay before a fresh manager replaces one closed with restart-required.
    restart_delay_ms: int = 2000

    escrow_token_prefix: str = ESCROW_TOKEN_PREFIX
    # Download retries for escrowed bundles use linear backoff (backoff * attempt).
    escrow_download_max_attempts: int = 3
    escrow_download_backoff_ms: int = 2000

    # Blob store backend for credential escrow: http or local.
    blob_store_provider: str = "http"
    blob_store_url: str | None = None
    blob_store_username: str | None = None
    blob_store_password: str | None = None
    # Local filesystem target used by the local blob store provider.
    blob_store_local_dir: str = "./blobs"
    # Centralize external call timeouts for integrations (ms).
    ext_call_timeout_ms: int = 30000

    # Protocol socket backend: "fake" or an import path "package.module:factory".
    socket_provider: str = "fake"

    # Number receiving new-connection notices.
    admin_number: str | None = None

    # Reconnect every registered tenant when the API starts.
    restore_on_startup: bool = True
    # Bound parallel bundle downloads during boot restore.
    restore_max_concurrency: int = 4

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def session_base(self) -> Path:
        return Path(self.session_base_path)


@lru_cache
def get_settings() -> Settings:
    return Settings()
