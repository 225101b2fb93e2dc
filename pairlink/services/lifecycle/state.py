"""Connection lifecycle decision logic.

Everything here is pure: ``transition`` maps a snapshot and an event to the
next snapshot plus the effects the manager has to execute. Nothing in this
module performs I/O, so every rule can be checked with plain assertions.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Callable

from pairlink.core.errors import (
    ConnectTimeoutError,
    PairingError,
    PairlinkError,
    PersistenceError,
    ProtocolDisconnect,
)


class LifecycleState(str, Enum):
    UNPAIRED = "unpaired"
    PAIRING = "pairing"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class EventKind(str, Enum):
    START = "start"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSE = "close"
    CREDS_UPDATE = "creds_update"
    PAIRING_CODE = "pairing_code"
    PAIRING_FAILED = "pairing_failed"
    CREDENTIALS_MISSING = "credentials_missing"
    CREDENTIALS_PERSISTED = "credentials_persisted"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: EventKind
    registered: bool = False
    reason_code: int | None = None
    code: str | None = None
    detail: str | None = None


class DisconnectReason(IntEnum):
    # Close codes reported by the protocol layer. 408 covers both "lost" and "timed out".
    LOGGED_OUT = 401
    FORBIDDEN = 403
    CONNECTION_LOST = 408
    MULTIDEVICE_MISMATCH = 411
    CONNECTION_CLOSED = 428
    CONNECTION_REPLACED = 440
    BAD_SESSION = 500
    UNAVAILABLE_SERVICE = 503
    RESTART_REQUIRED = 515


class Disposition(str, Enum):
    FATAL_INVALIDATE = "fatal_invalidate"
    SOFT_RECOVERABLE = "soft_recoverable"
    RESTART_REQUIRED = "restart_required"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True)
class DisconnectClassification:
    disposition: Disposition
    message: str


_CLASSIFICATIONS: dict[int, DisconnectClassification] = {
    DisconnectReason.LOGGED_OUT: DisconnectClassification(
        Disposition.FATAL_INVALIDATE, "Session invalid or logged out. Please pair again."
    ),
    DisconnectReason.BAD_SESSION: DisconnectClassification(
        Disposition.FATAL_INVALIDATE, "Session invalid or logged out. Please pair again."
    ),
    DisconnectReason.CONNECTION_CLOSED: DisconnectClassification(
        Disposition.SOFT_RECOVERABLE, "Connection was closed by the server"
    ),
    DisconnectReason.CONNECTION_LOST: DisconnectClassification(
        Disposition.SOFT_RECOVERABLE, "Connection lost due to network issues"
    ),
    DisconnectReason.CONNECTION_REPLACED: DisconnectClassification(
        Disposition.SOFT_RECOVERABLE, "Connection replaced by another session"
    ),
    DisconnectReason.RESTART_REQUIRED: DisconnectClassification(
        Disposition.RESTART_REQUIRED, "Server requires a client restart"
    ),
}

_UNCLASSIFIED = DisconnectClassification(Disposition.UNCLASSIFIED, "Unexpected disconnection")


def classify_disconnect(reason_code: int | None) -> DisconnectClassification:
    if reason_code is None:
        return _UNCLASSIFIED
    return _CLASSIFICATIONS.get(int(reason_code), _UNCLASSIFIED)


class ResultStatus(str, Enum):
    PAIRING_CODE_SENT = "pairing_code_sent"
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already_connected"
    TIMEOUT = "timeout"
    ERROR = "error"


_HTTP_STATUS = {
    ResultStatus.PAIRING_CODE_SENT: 200,
    ResultStatus.CONNECTED: 200,
    ResultStatus.ALREADY_CONNECTED: 200,
    ResultStatus.TIMEOUT: 408,
    ResultStatus.ERROR: 500,
}


@dataclass(frozen=True)
class ConnectOutcome:
    # The single outward result of one connect attempt.
    status: ResultStatus
    message: str
    code: str | None = None

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.status]

    def to_payload(self) -> dict[str, str]:
        payload = {"status": self.status.value, "message": self.message}
        if self.code is not None:
            payload["code"] = self.code
        return payload

    @classmethod
    def pairing_code(cls, tenant_id: str, code: str) -> "ConnectOutcome":
        return cls(
            ResultStatus.PAIRING_CODE_SENT,
            f"[ {tenant_id} ] Enter this code on your phone: {code}",
            code=code,
        )

    @classmethod
    def connected(cls, tenant_id: str) -> "ConnectOutcome":
        return cls(ResultStatus.CONNECTED, f"[ {tenant_id} ] Successfully connected!")

    @classmethod
    def already_connected(cls, tenant_id: str) -> "ConnectOutcome":
        return cls(ResultStatus.ALREADY_CONNECTED, f"[ {tenant_id} ] This number is already connected.")

    @classmethod
    def timeout(cls, tenant_id: str) -> "ConnectOutcome":
        return cls(ResultStatus.TIMEOUT, f"[ {tenant_id} ] Connection timeout. Please try again.")

    @classmethod
    def error(cls, tenant_id: str, message: str) -> "ConnectOutcome":
        return cls(ResultStatus.ERROR, f"[ {tenant_id} ] {message}")


class EffectKind(str, Enum):
    REQUEST_PAIRING_CODE = "request_pairing_code"
    RECORD_LIVE = "record_live"
    PERSIST_CREDENTIALS = "persist_credentials"
    NOTIFY_CONNECTED = "notify_connected"
    SAVE_CREDENTIALS = "save_credentials"
    RECORD_ERROR = "record_error"
    WIPE_CREDENTIALS = "wipe_credentials"
    CLOSE_SOCKET = "close_socket"
    SCHEDULE_RESTART = "schedule_restart"
    FORGET_LIVE = "forget_live"
    RESPOND = "respond"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    outcome: ConnectOutcome | None = None
    error: PairlinkError | None = None


@dataclass(frozen=True)
class Snapshot:
    tenant_id: str
    state: LifecycleState = LifecycleState.UNPAIRED
    responded: bool = False
    code_sent: bool = False


@dataclass(frozen=True)
class Transition:
    snapshot: Snapshot
    effects: tuple[Effect, ...] = field(default_factory=tuple)


_PRE_OPEN = (LifecycleState.UNPAIRED, LifecycleState.PAIRING, LifecycleState.CONNECTING)
_AWAITING_CODE = (LifecycleState.PAIRING, LifecycleState.CONNECTING)


def _respond(snapshot: Snapshot, outcome: ConnectOutcome) -> tuple[Snapshot, tuple[Effect, ...]]:
    # Only the first outcome of an attempt reaches the caller.
    if snapshot.responded:
        return snapshot, ()
    return replace(snapshot, responded=True), (Effect(EffectKind.RESPOND, outcome=outcome),)


def _unchanged(snapshot: Snapshot) -> Transition:
    return Transition(snapshot)


def _on_start(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state is not LifecycleState.UNPAIRED:
        return _unchanged(snapshot)
    if event.registered:
        return Transition(replace(snapshot, state=LifecycleState.CONNECTING))
    return Transition(
        replace(snapshot, state=LifecycleState.PAIRING),
        (Effect(EffectKind.REQUEST_PAIRING_CODE),),
    )


def _on_connecting(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state in (LifecycleState.UNPAIRED, LifecycleState.PAIRING):
        return Transition(replace(snapshot, state=LifecycleState.CONNECTING))
    return _unchanged(snapshot)


def _on_pairing_code(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state not in _AWAITING_CODE or not event.code:
        return _unchanged(snapshot)
    snapshot = replace(snapshot, code_sent=True)
    snapshot, effects = _respond(snapshot, ConnectOutcome.pairing_code(snapshot.tenant_id, event.code))
    return Transition(snapshot, effects)


def _on_pairing_failed(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state not in _AWAITING_CODE:
        return _unchanged(snapshot)
    error = PairingError(event.detail or "pairing code request failed")
    snapshot, effects = _respond(
        snapshot, ConnectOutcome.error(snapshot.tenant_id, "Failed to generate pairing code.")
    )
    return Transition(snapshot, (Effect(EffectKind.RECORD_ERROR, error=error), *effects))


def _on_open(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state not in _PRE_OPEN:
        return _unchanged(snapshot)
    return Transition(
        replace(snapshot, state=LifecycleState.OPEN),
        (Effect(EffectKind.RECORD_LIVE), Effect(EffectKind.PERSIST_CREDENTIALS)),
    )


def _on_credentials_missing(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state is not LifecycleState.OPEN:
        return _unchanged(snapshot)
    error = PersistenceError(event.detail or "credentials file not found", operation="read")
    snapshot, effects = _respond(snapshot, ConnectOutcome.error(snapshot.tenant_id, "Credentials file not found"))
    return Transition(snapshot, (Effect(EffectKind.RECORD_ERROR, error=error), *effects))


def _on_credentials_persisted(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state is not LifecycleState.OPEN:
        return _unchanged(snapshot)
    snapshot, effects = _respond(snapshot, ConnectOutcome.connected(snapshot.tenant_id))
    return Transition(snapshot, (*effects, Effect(EffectKind.NOTIFY_CONNECTED)))


def _on_creds_update(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    return Transition(snapshot, (Effect(EffectKind.SAVE_CREDENTIALS),))


def _on_close(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    classification = classify_disconnect(event.reason_code)
    error = ProtocolDisconnect(
        classification.message,
        reason_code=event.reason_code,
        disposition=classification.disposition.value,
    )
    effects: list[Effect] = [Effect(EffectKind.RECORD_ERROR, error=error)]
    if classification.disposition is Disposition.FATAL_INVALIDATE:
        effects.append(Effect(EffectKind.WIPE_CREDENTIALS))
    elif classification.disposition is Disposition.RESTART_REQUIRED:
        effects.append(Effect(EffectKind.CLOSE_SOCKET))
        effects.append(Effect(EffectKind.SCHEDULE_RESTART))
    effects.append(Effect(EffectKind.FORGET_LIVE))
    closed = replace(snapshot, state=LifecycleState.CLOSED)
    closed, respond = _respond(closed, ConnectOutcome.error(snapshot.tenant_id, classification.message))
    return Transition(closed, (*effects, *respond))


def _on_timeout(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    if snapshot.state not in _PRE_OPEN:
        return _unchanged(snapshot)
    if snapshot.code_sent:
        # The user holds a pairing code; keep the socket so pairing can still finish.
        return _unchanged(snapshot)
    error = ConnectTimeoutError("connection did not open within the connect window")
    closed = replace(snapshot, state=LifecycleState.CLOSED)
    closed, respond = _respond(closed, ConnectOutcome.timeout(snapshot.tenant_id))
    return Transition(
        closed,
        (
            Effect(EffectKind.RECORD_ERROR, error=error),
            Effect(EffectKind.CLOSE_SOCKET),
            Effect(EffectKind.FORGET_LIVE),
            *respond,
        ),
    )


_HANDLERS: dict[EventKind, Callable[[Snapshot, LifecycleEvent], Transition]] = {
    EventKind.START: _on_start,
    EventKind.CONNECTING: _on_connecting,
    EventKind.OPEN: _on_open,
    EventKind.CLOSE: _on_close,
    EventKind.CREDS_UPDATE: _on_creds_update,
    EventKind.PAIRING_CODE: _on_pairing_code,
    EventKind.PAIRING_FAILED: _on_pairing_failed,
    EventKind.CREDENTIALS_MISSING: _on_credentials_missing,
    EventKind.CREDENTIALS_PERSISTED: _on_credentials_persisted,
    EventKind.TIMEOUT: _on_timeout,
}


def transition(snapshot: Snapshot, event: LifecycleEvent) -> Transition:
    # Closed is terminal: later events are observed by the manager's log only.
    if snapshot.state is LifecycleState.CLOSED:
        return _unchanged(snapshot)
    return _HANDLERS[event.kind](snapshot, event)
