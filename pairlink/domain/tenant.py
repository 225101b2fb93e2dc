from __future__ import annotations

import re

from pairlink.core.errors import InvalidInputError


MIN_TENANT_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def normalize_tenant_id(raw: str | None) -> str:
    # Strip formatting so "+1 (555) 123-4567" and "15551234567" share one key.
    return _NON_DIGITS.sub("", raw or "")


def validate_tenant_id(raw: str | None) -> str:
    if not raw:
        raise InvalidInputError("Number parameter is required")
    tenant_id = normalize_tenant_id(raw)
    if len(tenant_id) < MIN_TENANT_DIGITS:
        raise InvalidInputError("Invalid phone number format")
    return tenant_id


def decode_identity(identity: str | None) -> str | None:
    """Reduce a socket identity such as ``15551234567:12@s.whatsapp.net`` to its digits.

    The device suffix after ``:`` and the server after ``@`` are dropped.
    Returns ``None`` when nothing usable remains.
    """
    if not identity:
        return None
    user = identity.split("@", 1)[0].split(":", 1)[0]
    digits = normalize_tenant_id(user)
    return digits or None


def user_address(tenant_id: str) -> str:
    return f"{tenant_id}@s.whatsapp.net"
