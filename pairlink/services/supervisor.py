from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from pairlink.core.config import Settings, get_settings
from pairlink.core.errors import PairlinkError, PersistenceError
from pairlink.domain.models import SessionRecord
from pairlink.domain.tenant import normalize_tenant_id, validate_tenant_id
from pairlink.providers.blobstore import BlobStore, get_blob_store
from pairlink.providers.socket import SocketFactory, get_socket_factory
from pairlink.services.escrow import CredentialEscrow
from pairlink.services.lifecycle.manager import ConnectionLifecycleManager, LifecycleConfig
from pairlink.services.lifecycle.state import ConnectOutcome
from pairlink.services.live_sessions import LiveSessionTable
from pairlink.services.registry import SessionRegistry
from pairlink.services.resilience import escrow_download_policy
from pairlink.services.settings_store import SettingsStore
from pairlink.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
SESSIONS_FILENAME = "sessions.json"


@dataclass
class RestoreReport:
    restored: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {"restored": self.restored, "skipped": self.skipped, "failed": self.failed}


class SessionSupervisor:
    """Owns every tenant's lifecycle manager and the live-session table.

    Entry points are the trigger (``connect``), boot recovery (``restore_all``)
    and restart-required closes, which come back through ``schedule_restart``.
    """

    def __init__(
        self,
        *,
        settings_store: SettingsStore,
        registry: SessionRegistry,
        escrow: CredentialEscrow,
        socket_factory: SocketFactory,
        config: LifecycleConfig,
        session_base: Path,
        live_sessions: LiveSessionTable | None = None,
        restore_concurrency: int = 4,
        blob_store: BlobStore | None = None,
    ) -> None:
        self.settings_store = settings_store
        self.registry = registry
        self.escrow = escrow
        self._socket_factory = socket_factory
        self._config = config
        self._session_base = Path(session_base)
        self.live_sessions = live_sessions or LiveSessionTable()
        self._restore_concurrency = max(1, restore_concurrency)
        self._blob_store = blob_store
        self._managers: dict[str, ConnectionLifecycleManager] = {}
        self._launch_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()
        self._closing = False

    def session_dir(self, tenant_id: str) -> Path:
        return self._session_base / f"session_{tenant_id}"

    def manager_for(self, tenant_id: str) -> ConnectionLifecycleManager | None:
        return self._managers.get(tenant_id)

    def _is_busy(self, tenant_id: str) -> bool:
        if tenant_id in self.live_sessions:
            return True
        manager = self._managers.get(tenant_id)
        return manager is not None and not manager.closed

    async def connect(self, raw_number: str | None) -> ConnectOutcome:
        tenant_id = validate_tenant_id(raw_number)
        if tenant_id in self.live_sessions:
            logger.info("connect_already_live tenant=%s", tenant_id)
            return ConnectOutcome.already_connected(tenant_id)
        manager = await self.launch(tenant_id)
        return await manager.wait_result()

    async def launch(self, tenant_id: str) -> ConnectionLifecycleManager:
        async with self._launch_lock:
            existing = self._managers.get(tenant_id)
            if existing is not None and not existing.closed:
                # A newer attempt supersedes one still waiting for pairing or open.
                logger.info("lifecycle_superseded tenant=%s state=%s", tenant_id, existing.state.value)
                await existing.stop()
            manager = ConnectionLifecycleManager(
                tenant_id,
                session_dir=self.session_dir(tenant_id),
                socket_factory=self._socket_factory,
                escrow=self.escrow,
                registry=self.registry,
                settings_store=self.settings_store,
                live_sessions=self.live_sessions,
                config=self._config,
                on_restart=self.schedule_restart,
            )
            self._managers[tenant_id] = manager
        await manager.start()
        return manager

    def schedule_restart(self, tenant_id: str, delay_s: float) -> None:
        if self._closing:
            logger.info("restart_skipped_shutdown tenant=%s", tenant_id)
            return
        task = asyncio.create_task(self._restart_after(tenant_id, delay_s), name=f"restart:{tenant_id}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _restart_after(self, tenant_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if self._closing:
            return
        logger.info("lifecycle_restarting tenant=%s", tenant_id)
        try:
            await self.launch(tenant_id)
        except Exception as exc:  # noqa: BLE001 - a failed restart leaves the tenant for the next trigger
            logger.error("lifecycle_restart_failed tenant=%s", tenant_id, exc_info=exc)

    async def _registry_records(self) -> list[SessionRecord]:
        try:
            records = list(await self.registry.list())
        except PersistenceError as exc:
            logger.error("restore_registry_unreadable error=%s", exc)
            return []
        unique: dict[str, SessionRecord] = {}
        for record in records:
            tenant_id = normalize_tenant_id(record.tenant_id)
            if tenant_id:
                unique[tenant_id] = record
        return list(unique.values())

    async def restore_all(self, *, connect: bool = True) -> RestoreReport:
        """Rehydrate every registered tenant; with ``connect=False`` only the bundles are downloaded."""
        report = RestoreReport()
        records = await self._registry_records()
        semaphore = asyncio.Semaphore(self._restore_concurrency)

        async def _restore(record: SessionRecord) -> None:
            tenant_id = normalize_tenant_id(record.tenant_id)
            if connect and self._is_busy(tenant_id):
                report.skipped.append(tenant_id)
                return
            async with semaphore:
                try:
                    await self.escrow.download(record.escrow_token, self.session_dir(tenant_id))
                except PairlinkError as exc:
                    logger.error("restore_download_failed tenant=%s error=%s", tenant_id, exc)
                    report.failed[tenant_id] = str(exc)
                    increment_counter("restore_failures_total")
                    return
            if connect:
                if self._closing:
                    report.skipped.append(tenant_id)
                    return
                try:
                    await self.launch(tenant_id)
                except Exception as exc:  # noqa: BLE001 - one tenant must not abort the boot sweep
                    logger.error("restore_launch_failed tenant=%s", tenant_id, exc_info=exc)
                    report.failed[tenant_id] = str(exc)
                    increment_counter("restore_failures_total")
                    return
            report.restored.append(tenant_id)

        await asyncio.gather(*(_restore(record) for record in records))
        logger.info(
            "restore_completed restored=%s skipped=%s failed=%s",
            len(report.restored),
            len(report.skipped),
            len(report.failed),
        )
        return report

    async def shutdown(self) -> None:
        self._closing = True
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        managers = list(self._managers.values())
        self._managers.clear()
        for manager in managers:
            await manager.stop()
        await self.live_sessions.drain()
        if self._blob_store is not None:
            await self._blob_store.aclose()
        logger.info("supervisor_stopped managers=%s", len(managers))


def build_supervisor(
    settings: Settings | None = None,
    *,
    socket_factory: SocketFactory | None = None,
    blob_store: BlobStore | None = None,
) -> SessionSupervisor:
    settings = settings or get_settings()
    store = blob_store or get_blob_store(settings)
    escrow = CredentialEscrow(
        store,
        prefix=settings.escrow_token_prefix,
        download_policy=escrow_download_policy(settings),
    )
    return SessionSupervisor(
        settings_store=SettingsStore(settings.data_path / SETTINGS_FILENAME),
        registry=SessionRegistry(settings.data_path / SESSIONS_FILENAME),
        escrow=escrow,
        socket_factory=socket_factory or get_socket_factory(settings),
        config=LifecycleConfig.from_settings(settings),
        session_base=settings.session_base,
        restore_concurrency=settings.restore_max_concurrency,
        blob_store=store,
    )
