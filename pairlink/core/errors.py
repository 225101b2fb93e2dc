from __future__ import annotations


class PairlinkError(Exception):
    """Base error for pairlink."""


class InvalidInputError(PairlinkError):
    """Malformed tenant identifier or token, rejected before any I/O."""


class InvalidTokenError(InvalidInputError):
    """Escrow token is missing the required prefix or locator."""


class EscrowError(PairlinkError):
    """Credential escrow upload/download failure."""


class BlobStoreConfigError(EscrowError):
    """Blob store account credentials or endpoint not configured."""


class PersistenceError(PairlinkError):
    """Backing JSON document unreadable or unwritable."""

    def __init__(self, message: str, *, operation: str = "read") -> None:
        super().__init__(message)
        self.operation = operation


class PairingError(PairlinkError):
    """Pairing code could not be obtained from the protocol socket."""


class ProtocolDisconnect(PairlinkError):
    """Protocol socket closed; carries the reason code and its disposition."""

    def __init__(self, message: str, *, reason_code: int | None, disposition: str) -> None:
        super().__init__(message)
        self.reason_code = reason_code
        self.disposition = disposition


class ConnectTimeoutError(PairlinkError, TimeoutError):
    """No terminal state reached within the connect window."""
