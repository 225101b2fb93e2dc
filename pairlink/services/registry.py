from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator

from pairlink.core.errors import InvalidInputError, PersistenceError
from pairlink.domain.models import SessionRecord, utc_now_iso
from pairlink.domain.tenant import normalize_tenant_id
from pairlink.persistence.json_store import JsonDocument


logger = logging.getLogger(__name__)


class SessionRegistry:
    """Durable tenant -> escrow token mapping, stored as an ordered JSON list."""

    def __init__(self, path: Path) -> None:
        self._document: JsonDocument[list[dict[str, Any]]] = JsonDocument(path, list)

    async def list(self) -> Iterator[SessionRecord]:
        # Snapshot at call time; the returned iterator is single-pass.
        rows = _as_rows(await self._document.read())
        snapshot = list(rows)

        def _records() -> Iterator[SessionRecord]:
            for row in snapshot:
                if not isinstance(row, dict):
                    logger.warning("registry_row_skipped reason=not_an_object")
                    continue
                yield SessionRecord.from_dict(row)

        return _records()

    async def upsert(self, tenant_id: str, token: str) -> SessionRecord:
        tenant = normalize_tenant_id(tenant_id)
        if not tenant:
            raise InvalidInputError("tenant id is empty after normalization")
        if not token:
            raise InvalidInputError("escrow token is empty")

        def _apply(rows: list[dict[str, Any]]) -> SessionRecord:
            rows = _as_rows(rows)
            for index, row in enumerate(rows):
                if not isinstance(row, dict):
                    continue
                existing = SessionRecord.from_dict(row)
                if normalize_tenant_id(existing.tenant_id) != tenant:
                    continue
                record = SessionRecord(
                    tenant_id=tenant,
                    escrow_token=token,
                    created_at=existing.created_at or utc_now_iso(),
                )
                rows[index] = record.to_dict()
                return record
            record = SessionRecord(tenant_id=tenant, escrow_token=token, created_at=utc_now_iso())
            rows.append(record.to_dict())
            return record

        record = await self._document.update(_apply)
        logger.info("registry_upserted tenant=%s", tenant)
        return record


def _as_rows(data: Any) -> list[Any]:
    if not isinstance(data, list):
        raise PersistenceError("sessions document is not a JSON array", operation="read")
    return data
