from __future__ import annotations

import pytest

from pairlink.core.config import get_settings
from pairlink.services import telemetry


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    # Point every file-backed component at the test's own directory.
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SESSION_BASE_PATH", str(tmp_path / "session"))
    monkeypatch.setenv("BLOB_STORE_PROVIDER", "local")
    monkeypatch.setenv("BLOB_STORE_LOCAL_DIR", str(tmp_path / "blobs"))
    monkeypatch.setenv("SOCKET_PROVIDER", "fake")
    monkeypatch.setenv("RESTORE_ON_STARTUP", "false")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_telemetry():
    telemetry.reset()
    yield
    telemetry.reset()
