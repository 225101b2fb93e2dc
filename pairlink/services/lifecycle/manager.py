from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from pairlink.core.config import CREDS_FILENAME, Settings, get_settings
from pairlink.core.errors import PairingError, PairlinkError, ProtocolDisconnect
from pairlink.domain.tenant import decode_identity, user_address
from pairlink.providers.socket.base import ProtocolSocket, SocketEvent, SocketEventKind, SocketFactory
from pairlink.services.escrow import CredentialEscrow
from pairlink.services.lifecycle.state import (
    ConnectOutcome,
    Disposition,
    Effect,
    EffectKind,
    EventKind,
    LifecycleEvent,
    LifecycleState,
    Snapshot,
    transition,
)
from pairlink.services.live_sessions import LiveSession, LiveSessionTable
from pairlink.services.registry import SessionRegistry
from pairlink.services.resilience import RetryPolicy, pairing_retry_policy, retry_async, retry_everything
from pairlink.services.settings_store import SettingsStore
from pairlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

RestartHook = Callable[[str, float], None]


@dataclass(frozen=True)
class LifecycleConfig:
    connect_timeout_s: float
    pairing_initial_delay_s: float
    pairing_policy: RetryPolicy
    restart_delay_s: float
    admin_number: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LifecycleConfig":
        settings = settings or get_settings()
        return cls(
            connect_timeout_s=settings.connect_timeout_ms / 1000.0,
            pairing_initial_delay_s=settings.pairing_initial_delay_ms / 1000.0,
            pairing_policy=pairing_retry_policy(settings),
            restart_delay_s=settings.restart_delay_ms / 1000.0,
            admin_number=settings.admin_number,
        )


_SOCKET_EVENTS = {
    SocketEventKind.CONNECTING: EventKind.CONNECTING,
    SocketEventKind.OPEN: EventKind.OPEN,
    SocketEventKind.CLOSE: EventKind.CLOSE,
    SocketEventKind.CREDS_UPDATE: EventKind.CREDS_UPDATE,
}


class ConnectionLifecycleManager:
    """Drives one connect attempt for one tenant.

    Socket events, pairing results, escrow completion and the connect timeout
    all land in one queue that a single task drains in arrival order. Each
    event goes through the pure ``transition`` function; this class only runs
    the effects it returns. Slow effect chains (pairing, escrow) run as their
    own tasks and report back through the queue, so a close is never stuck
    behind them.
    """

    def __init__(
        self,
        tenant_id: str,
        *,
        session_dir: Path,
        socket_factory: SocketFactory,
        escrow: CredentialEscrow,
        registry: SessionRegistry,
        settings_store: SettingsStore,
        live_sessions: LiveSessionTable,
        config: LifecycleConfig,
        on_restart: RestartHook | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.tenant_id = tenant_id
        self.session_dir = Path(session_dir)
        self._socket_factory = socket_factory
        self._escrow = escrow
        self._registry = registry
        self._settings_store = settings_store
        self._live_sessions = live_sessions
        self._config = config
        self._on_restart = on_restart
        self._sleep = sleep
        self._snapshot = Snapshot(tenant_id=tenant_id)
        self._socket: ProtocolSocket | None = None
        self._queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue()
        self._result: asyncio.Future[ConnectOutcome] | None = None
        self._tasks: set[asyncio.Task] = set()
        self._run_task: asyncio.Task | None = None
        self._timeout_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._last_error: PairlinkError | None = None
        self._restart_scheduled = False
        self._invalidated = False
        self.created_at: float | None = None

    @property
    def state(self) -> LifecycleState:
        return self._snapshot.state

    @property
    def last_error(self) -> PairlinkError | None:
        return self._last_error

    @property
    def socket(self) -> ProtocolSocket | None:
        return self._socket

    @property
    def closed(self) -> bool:
        return self._snapshot.state is LifecycleState.CLOSED

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        # Make sure a defaulted settings record exists for every tenant we connect.
        await self._settings_store.get(self.tenant_id)
        try:
            self._socket = await self._socket_factory(self.tenant_id, self.session_dir)
        except Exception:  # noqa: BLE001 - a broken transport must still answer the caller
            logger.exception("socket_setup_failed tenant=%s", self.tenant_id)
            self._snapshot = Snapshot(tenant_id=self.tenant_id, state=LifecycleState.CLOSED, responded=True)
            # stop() may already have answered while the factory was awaited.
            self._resolve(ConnectOutcome.error(self.tenant_id, "Failed to initialize connection."))
            return
        if self.closed:
            logger.info("lifecycle_stopped_during_setup tenant=%s", self.tenant_id)
            await self._close_socket()
            return
        self.created_at = time.time()
        increment_counter("lifecycle_started_total")

        self._run_task = asyncio.create_task(self._run(), name=f"lifecycle:{self.tenant_id}")
        self._pump_task = asyncio.create_task(self._pump(self._socket), name=f"socket-pump:{self.tenant_id}")
        self._timeout_task = asyncio.create_task(self._watch_timeout(), name=f"connect-timeout:{self.tenant_id}")
        if self._socket.is_registered:
            logger.info("lifecycle_already_registered tenant=%s", self.tenant_id)
        self._queue.put_nowait(LifecycleEvent(EventKind.START, registered=self._socket.is_registered))

    async def wait_result(self) -> ConnectOutcome:
        if self._result is None:
            raise RuntimeError("manager not started")
        return await asyncio.shield(self._result)

    async def wait_closed(self) -> None:
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def stop(self) -> None:
        # Process shutdown: drop the connection without touching credentials or the registry.
        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
        self._snapshot = Snapshot(
            tenant_id=self.tenant_id,
            state=LifecycleState.CLOSED,
            responded=self._snapshot.responded,
            code_sent=self._snapshot.code_sent,
        )
        await self._teardown()
        self._resolve(ConnectOutcome.error(self.tenant_id, "Connection stopped."))

    async def _run(self) -> None:
        try:
            while not self.closed:
                event = await self._queue.get()
                try:
                    await self._apply(event)
                except Exception:  # noqa: BLE001 - a defect in one event must not kill the tenant worker
                    logger.exception("lifecycle_event_failed tenant=%s event=%s", self.tenant_id, event.kind.value)
        finally:
            if self.closed:
                await self._teardown()

    async def _apply(self, event: LifecycleEvent) -> None:
        before = self._snapshot
        result = transition(before, event)
        self._snapshot = result.snapshot
        if before.state is not result.snapshot.state:
            logger.info(
                "lifecycle_transition tenant=%s from=%s to=%s event=%s",
                self.tenant_id,
                before.state.value,
                result.snapshot.state.value,
                event.kind.value,
            )
        elif not result.effects:
            logger.debug(
                "lifecycle_event_ignored tenant=%s state=%s event=%s",
                self.tenant_id,
                before.state.value,
                event.kind.value,
            )
        for effect in result.effects:
            try:
                await self._execute(effect)
            except Exception:  # noqa: BLE001 - later effects (e.g. removing the live entry) still run
                logger.exception("lifecycle_effect_failed tenant=%s effect=%s", self.tenant_id, effect.kind.value)

    async def _execute(self, effect: Effect) -> None:
        kind = effect.kind
        if kind is EffectKind.REQUEST_PAIRING_CODE:
            self._spawn(self._request_pairing_code(), "pairing")
        elif kind is EffectKind.RECORD_LIVE:
            await self._record_live()
        elif kind is EffectKind.PERSIST_CREDENTIALS:
            self._spawn(self._persist_credentials(), "escrow")
        elif kind is EffectKind.NOTIFY_CONNECTED:
            self._spawn(self._notify_connected(), "notify")
        elif kind is EffectKind.SAVE_CREDENTIALS:
            await self._save_credentials()
        elif kind is EffectKind.RECORD_ERROR:
            self._record_error(effect.error)
        elif kind is EffectKind.WIPE_CREDENTIALS:
            await self._wipe_credentials()
        elif kind is EffectKind.CLOSE_SOCKET:
            await self._close_socket()
        elif kind is EffectKind.SCHEDULE_RESTART:
            self._schedule_restart()
        elif kind is EffectKind.FORGET_LIVE:
            await self._live_sessions.remove(self.tenant_id, owner=self)
        elif kind is EffectKind.RESPOND and effect.outcome is not None:
            self._resolve(effect.outcome)

    def _spawn(self, coro: Awaitable[None], label: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{label}:{self.tenant_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _resolve(self, outcome: ConnectOutcome) -> None:
        # Guard every outward result: the first terminal outcome wins.
        if self._result is None or self._result.done():
            logger.debug("lifecycle_result_suppressed tenant=%s status=%s", self.tenant_id, outcome.status.value)
            return
        self._result.set_result(outcome)
        logger.info("lifecycle_result tenant=%s status=%s", self.tenant_id, outcome.status.value)

    async def _pump(self, socket: ProtocolSocket) -> None:
        try:
            async for socket_event in socket.events():
                self._queue.put_nowait(_translate(socket_event))
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001 - a broken event stream is logged; close/timeout still settle the attempt
            logger.exception("socket_event_stream_failed tenant=%s", self.tenant_id)

    async def _watch_timeout(self) -> None:
        await asyncio.sleep(self._config.connect_timeout_s)
        self._queue.put_nowait(LifecycleEvent(EventKind.TIMEOUT))

    async def _request_pairing_code(self) -> None:
        socket = self._socket
        if socket is None:
            return
        await self._sleep(self._config.pairing_initial_delay_s)

        async def _request() -> str:
            code = await socket.request_pairing_code(self.tenant_id)
            if not code:
                raise PairingError("empty pairing code")
            return code

        def _log_retry(attempt: int, exc: Exception) -> None:
            remaining = self._config.pairing_policy.max_attempts - attempt
            logger.warning(
                "pairing_code_request_failed tenant=%s retries_left=%s error=%s", self.tenant_id, remaining, exc
            )

        try:
            code = await retry_async(
                _request,
                policy=self._config.pairing_policy,
                retryable=retry_everything,
                on_retry=_log_retry,
                sleep=self._sleep,
            )
        except Exception as exc:  # noqa: BLE001 - exhausted retries become one failure event
            logger.error("pairing_code_unavailable tenant=%s error=%s", self.tenant_id, exc)
            self._queue.put_nowait(LifecycleEvent(EventKind.PAIRING_FAILED, detail=str(exc)))
            return
        logger.info("pairing_code_generated tenant=%s", self.tenant_id)
        self._queue.put_nowait(LifecycleEvent(EventKind.PAIRING_CODE, code=code))

    async def _record_live(self) -> None:
        if self._socket is None:
            return
        session = LiveSession(
            tenant_id=self.tenant_id,
            socket=self._socket,
            manager=self,
            created_at=self.created_at or time.time(),
        )
        previous = await self._live_sessions.add(session)
        if previous is not None and previous.manager is not self:
            logger.warning("live_session_replaced tenant=%s", self.tenant_id)
        increment_counter("lifecycle_opened_total")

    async def _persist_credentials(self) -> None:
        bundle = self.session_dir / CREDS_FILENAME
        if not await asyncio.to_thread(bundle.exists):
            logger.error("credentials_bundle_missing tenant=%s path=%s", self.tenant_id, bundle)
            self._queue.put_nowait(LifecycleEvent(EventKind.CREDENTIALS_MISSING, detail=str(bundle)))
            return
        try:
            token = await self._escrow.upload(bundle)
            if self._invalidated:
                # Logged out mid-upload: the escrowed bundle must not be restored on boot.
                logger.warning("credentials_escrow_discarded tenant=%s", self.tenant_id)
                return
            identity = self._canonical_identity()
            await self._registry.upsert(identity, token)
            logger.info("credentials_escrowed tenant=%s identity=%s", self.tenant_id, identity)
        except Exception as exc:  # noqa: BLE001 - degraded mode: session stays open but will not survive restart
            increment_counter("escrow_failures_total")
            logger.error("credentials_escrow_failed tenant=%s error=%s", self.tenant_id, exc, exc_info=exc)
        self._queue.put_nowait(LifecycleEvent(EventKind.CREDENTIALS_PERSISTED))

    def _canonical_identity(self) -> str:
        # The socket's own identity wins over the dialed number; they can differ after re-pairing.
        identity = self._socket.identity if self._socket is not None else None
        return decode_identity(identity) or self.tenant_id

    async def _notify_connected(self) -> None:
        socket = self._socket
        if socket is None:
            return
        identity = self._canonical_identity()
        connected_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        try:
            await socket.send_text(
                user_address(identity),
                f"Connected\n\nNumber: {self.tenant_id}\nConnected at: {connected_at}",
            )
        except Exception as exc:  # noqa: BLE001 - best-effort notice
            logger.warning("connect_notice_failed tenant=%s", self.tenant_id, exc_info=exc)
        admin = self._config.admin_number
        if not admin:
            return
        try:
            await socket.send_text(
                user_address(admin),
                f"New connection\n\nUser: {self.tenant_id}\nTime: {connected_at}\n"
                f"Active sessions: {len(self._live_sessions)}",
            )
        except Exception as exc:  # noqa: BLE001 - best-effort notice
            logger.warning("admin_notice_failed tenant=%s", self.tenant_id, exc_info=exc)

    async def _save_credentials(self) -> None:
        if self._socket is None:
            return
        try:
            await self._socket.save_credentials()
        except Exception as exc:  # noqa: BLE001 - next creds_update retries the save
            logger.error("credentials_save_failed tenant=%s", self.tenant_id, exc_info=exc)

    def _record_error(self, error: PairlinkError | None) -> None:
        if error is None:
            return
        self._last_error = error
        if isinstance(error, ProtocolDisconnect):
            increment_counter(f"disconnect_{error.disposition}_total")
            level = logging.WARNING if error.disposition == Disposition.FATAL_INVALIDATE.value else logging.INFO
            logger.log(
                level,
                "connection_closed tenant=%s reason=%s disposition=%s message=%s",
                self.tenant_id,
                error.reason_code,
                error.disposition,
                error,
            )
            return
        logger.warning("lifecycle_error tenant=%s type=%s message=%s", self.tenant_id, type(error).__name__, error)

    async def _wipe_credentials(self) -> None:
        self._invalidated = True
        await asyncio.to_thread(shutil.rmtree, self.session_dir, True)
        logger.warning("credentials_wiped tenant=%s path=%s", self.tenant_id, self.session_dir)

    async def _close_socket(self) -> None:
        if self._socket is None:
            return
        try:
            await self._socket.close()
        except Exception as exc:  # noqa: BLE001 - socket may already be gone
            logger.debug("socket_close_failed tenant=%s", self.tenant_id, exc_info=exc)

    def _schedule_restart(self) -> None:
        if self._restart_scheduled or self._on_restart is None:
            return
        self._restart_scheduled = True
        increment_counter("lifecycle_restarts_total")
        logger.info("lifecycle_restart_scheduled tenant=%s delay_s=%s", self.tenant_id, self._config.restart_delay_s)
        self._on_restart(self.tenant_id, self._config.restart_delay_s)

    async def _teardown(self) -> None:
        # Pairing, escrow and notice tasks must not outlive the attempt that spawned them.
        current = asyncio.current_task()
        pending = [
            task
            for task in (self._timeout_task, self._pump_task, *self._tasks)
            if task is not None and task is not current and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self._close_socket()
        await self._live_sessions.remove(self.tenant_id, owner=self)


def _translate(event: SocketEvent) -> LifecycleEvent:
    return LifecycleEvent(_SOCKET_EVENTS[event.kind], reason_code=event.reason_code)
