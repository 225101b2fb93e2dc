from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping


# Template every stored settings record is healed against.
DEFAULT_SETTINGS: dict[str, Any] = {
    "online": "off",
    "autoread": False,
    "autoswview": False,
    "autoswlike": False,
    "autoreact": False,
    "autorecord": False,
    "autotype": False,
    "worktype": "public",
    "antidelete": "off",
    "autoai": "off",
    "autosticker": "off",
    "autovoice": "off",
    "anticall": False,
    "stemoji": "❤️",
    "onlyworkgroup_links": {"whitelist": []},
}

WORKTYPES = ("public", "private", "group", "inbox")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class SessionRecord:
    # One registry row per tenant; created_at survives re-pairs.
    tenant_id: str
    escrow_token: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "tenant_id": self.tenant_id,
            "escrow_token": self.escrow_token,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionRecord":
        # Accept rows written with the legacy number/sessionId/createdAt keys.
        tenant_id = payload.get("tenant_id", payload.get("number")) or ""
        escrow_token = payload.get("escrow_token", payload.get("sessionId")) or ""
        created_at = payload.get("created_at", payload.get("createdAt")) or ""
        return cls(tenant_id=str(tenant_id), escrow_token=str(escrow_token), created_at=str(created_at))
