from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
from pathlib import Path
from typing import Callable, Generic, TypeVar
from uuid import uuid4

from pairlink.core.errors import PersistenceError


logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class JsonDocument(Generic[T]):
    """A single JSON file shared by every tenant worker in the process.

    Writes (and read-modify-write updates) are serialized through one lock and
    land via an atomic replace, so readers never block and never observe a
    half-written file. Keep exactly one instance per path.
    """

    def __init__(self, path: Path, default_factory: Callable[[], T]) -> None:
        self._path = Path(path)
        self._default_factory = default_factory
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read_sync(self) -> T:
        if not self._path.exists():
            # Read-repair: initialize the document on first access.
            default = self._default_factory()
            self._write_sync(default)
            logger.info("json_document_initialized path=%s", self._path)
            return copy.deepcopy(default)
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else None
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Failed to read {self._path}: {exc}", operation="read") from exc
        if not data:
            return self._default_factory()
        return data

    def _write_sync(self, data: T) -> None:
        tmp_path = self._path.with_name(f".{self._path.name}.{uuid4().hex}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except (OSError, TypeError, ValueError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write {self._path}: {exc}", operation="write") from exc

    async def read(self) -> T:
        if not self._path.exists():
            # Initialization writes, so it goes through the writer lock.
            async with self._lock:
                return await asyncio.to_thread(self._read_sync)
        return await asyncio.to_thread(self._read_sync)

    async def write(self, data: T) -> None:
        async with self._lock:
            await asyncio.to_thread(self._write_sync, data)

    async def update(self, mutate: Callable[[T], R]) -> R:
        # Hold the lock across read and write so concurrent tenants never drop each other's rows.
        async with self._lock:
            data = await asyncio.to_thread(self._read_sync)
            result = mutate(data)
            await asyncio.to_thread(self._write_sync, data)
            return result
