from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Mapping

from pairlink.core.errors import InvalidInputError, PersistenceError
from pairlink.domain.models import DEFAULT_SETTINGS, WORKTYPES
from pairlink.domain.tenant import normalize_tenant_id
from pairlink.persistence.json_store import JsonDocument


logger = logging.getLogger(__name__)

SettingsRecord = dict[str, Any]


def _is_object(value: Any) -> bool:
    return isinstance(value, dict)


def merge_defaults(defaults: Mapping[str, Any], stored: Mapping[str, Any] | None) -> SettingsRecord:
    # Overlay stored values on the template; object-valued template keys union key-by-key.
    stored = stored if isinstance(stored, Mapping) else {}
    merged: SettingsRecord = copy.deepcopy(dict(defaults))
    merged.update(copy.deepcopy(dict(stored)))
    for key, default_value in defaults.items():
        if _is_object(default_value):
            stored_value = stored.get(key)
            merged[key] = {
                **copy.deepcopy(default_value),
                **(copy.deepcopy(stored_value) if _is_object(stored_value) else {}),
            }
    return merged


def apply_partial(base: Mapping[str, Any], partial: Mapping[str, Any]) -> SettingsRecord:
    # Only named keys change: objects merge key-wise, scalars and arrays are replaced.
    result: SettingsRecord = copy.deepcopy(dict(base))
    for key, value in partial.items():
        if _is_object(value):
            current = result.get(key)
            result[key] = {**(current if _is_object(current) else {}), **copy.deepcopy(value)}
        else:
            result[key] = copy.deepcopy(value)
    return result


class SettingsStore:
    """Per-tenant settings persisted as one JSON mapping of tenant id to record."""

    def __init__(
        self,
        path: Path,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self._defaults: dict[str, Any] = copy.deepcopy(dict(defaults or DEFAULT_SETTINGS))
        self._document: JsonDocument[dict[str, Any]] = JsonDocument(path, dict)

    @property
    def defaults(self) -> SettingsRecord:
        return copy.deepcopy(self._defaults)

    async def get(self, tenant_id: str) -> SettingsRecord:
        tenant = normalize_tenant_id(tenant_id)
        try:
            data = _as_mapping(await self._document.read())
        except PersistenceError as exc:
            # Reads never fail the caller; serve template defaults instead.
            logger.warning("settings_read_failed tenant=%s", tenant, exc_info=exc)
            return self.defaults

        stored = data.get(tenant)
        merged = merge_defaults(self._defaults, stored)
        if stored == merged:
            return merged
        # Persist the healed (or freshly defaulted) record; skip the write when nothing changed.
        try:
            return await self._document.update(lambda rows: self._heal(_as_mapping(rows), tenant))
        except PersistenceError as exc:
            logger.warning("settings_heal_write_failed tenant=%s", tenant, exc_info=exc)
            return merged

    async def update(self, tenant_id: str, partial: Mapping[str, Any]) -> SettingsRecord:
        tenant = normalize_tenant_id(tenant_id)
        if "worktype" in partial and partial["worktype"] not in WORKTYPES:
            raise InvalidInputError(f"worktype must be one of: {', '.join(WORKTYPES)}")
        applied: dict[str, SettingsRecord] = {}

        def _apply(rows: dict[str, Any]) -> SettingsRecord:
            rows = _as_mapping(rows)
            current = merge_defaults(self._defaults, rows.get(tenant))
            updated = apply_partial(current, partial)
            rows[tenant] = updated
            applied["record"] = copy.deepcopy(updated)
            return copy.deepcopy(updated)

        try:
            return await self._document.update(_apply)
        except PersistenceError as exc:
            if exc.operation != "write" or "record" not in applied:
                # Writing over an unreadable document would drop every other tenant.
                raise
            logger.error("settings_write_failed tenant=%s", tenant, exc_info=exc)
            return applied["record"]

    def _heal(self, rows: dict[str, Any], tenant: str) -> SettingsRecord:
        merged = merge_defaults(self._defaults, rows.get(tenant))
        rows[tenant] = merged
        return copy.deepcopy(merged)


def _as_mapping(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise PersistenceError("settings document is not a JSON object", operation="read")
    return data
