from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from pairlink.core.errors import ConnectTimeoutError, EscrowError, ProtocolDisconnect
from pairlink.providers.socket import FakeSocketFactory, SocketEventKind
from pairlink.services.lifecycle.manager import ConnectionLifecycleManager
from pairlink.services.lifecycle.state import LifecycleState, ResultStatus
from pairlink.services.live_sessions import LiveSessionTable
from pairlink.services.registry import SessionRegistry
from pairlink.services.settings_store import SettingsStore
from pairlink.services.telemetry import counters_snapshot
from pairlink.tests.utils.lifecycle import TENANT, StubEscrow, eventually, fast_config, write_bundle


class Harness:
    def __init__(self, tmp_path, *, escrow=None, factory=None, config=None, sleep=asyncio.sleep) -> None:
        self.session_dir = tmp_path / "session" / f"session_{TENANT}"
        self.factory = factory or FakeSocketFactory()
        self.escrow = escrow or StubEscrow()
        self.registry_path = tmp_path / "data" / "sessions.json"
        self.registry = SessionRegistry(self.registry_path)
        self.settings_store = SettingsStore(tmp_path / "data" / "settings.json")
        self.live_sessions = LiveSessionTable()
        self.restarts: list[tuple[str, float]] = []
        self.manager = ConnectionLifecycleManager(
            TENANT,
            session_dir=self.session_dir,
            socket_factory=self.factory,
            escrow=self.escrow,
            registry=self.registry,
            settings_store=self.settings_store,
            live_sessions=self.live_sessions,
            config=config or fast_config(),
            on_restart=lambda tenant, delay: self.restarts.append((tenant, delay)),
            sleep=sleep,
        )

    @property
    def socket(self):
        return self.factory.latest(TENANT)

    async def open_registered(self):
        write_bundle(self.session_dir, identity=f"{TENANT}:7@s.whatsapp.net")
        await self.manager.start()
        self.socket.emit(SocketEventKind.OPEN)
        return await asyncio.wait_for(self.manager.wait_result(), timeout=2)


@pytest.mark.asyncio
async def test_open_escrows_bundle_and_registers_token(tmp_path) -> None:
    harness = Harness(tmp_path)
    outcome = await harness.open_registered()

    assert outcome.status is ResultStatus.CONNECTED
    assert harness.manager.state is LifecycleState.OPEN
    assert TENANT in harness.live_sessions
    assert harness.escrow.uploads == [harness.session_dir / "creds.json"]
    records = list(await harness.registry.list())
    assert [(record.tenant_id, record.escrow_token) for record in records] == [(TENANT, "SESSION-ID~abc123")]

    await eventually(lambda: len(harness.socket.sent) == 1)
    address, text = harness.socket.sent[0]
    assert address == f"{TENANT}@s.whatsapp.net"
    assert TENANT in text
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_start_creates_default_settings(tmp_path) -> None:
    harness = Harness(tmp_path)
    await harness.open_registered()
    settings_file = tmp_path / "data" / "settings.json"
    assert TENANT in settings_file.read_text(encoding="utf-8")
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_escrow_failure_keeps_session_open_in_degraded_mode(tmp_path) -> None:
    harness = Harness(tmp_path, escrow=StubEscrow(error=EscrowError("store unreachable")))
    outcome = await harness.open_registered()

    assert outcome.status is ResultStatus.CONNECTED
    assert TENANT in harness.live_sessions
    assert list(await harness.registry.list()) == []
    assert counters_snapshot()["escrow_failures_total"] == 1
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_pairing_code_then_completed_pairing(tmp_path) -> None:
    harness = Harness(tmp_path)
    await harness.manager.start()
    outcome = await asyncio.wait_for(harness.manager.wait_result(), timeout=2)

    assert outcome.status is ResultStatus.PAIRING_CODE_SENT
    assert outcome.code == "ABCD-1234"
    assert harness.socket.pairing_requests == 1

    harness.socket.complete_pairing(identity="15559876543:3@s.whatsapp.net")
    await eventually(lambda: TENANT in harness.live_sessions)
    await eventually(lambda: harness.escrow.uploads != [])
    await eventually(
        lambda: harness.registry_path.exists()
        and "15559876543" in harness.registry_path.read_text(encoding="utf-8")
    )
    records = list(await harness.registry.list())
    # The socket's own identity keys the registry row.
    assert [record.tenant_id for record in records] == ["15559876543"]
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_pairing_failures_exhaust_with_linear_backoff(tmp_path) -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    harness = Harness(tmp_path, factory=FakeSocketFactory(pairing_failures=5), sleep=fake_sleep)
    await harness.manager.start()
    outcome = await asyncio.wait_for(harness.manager.wait_result(), timeout=2)

    assert outcome.status is ResultStatus.ERROR
    assert outcome.http_status == 500
    assert harness.socket.pairing_requests == 3
    assert delays == [0.0, 0.3, 0.6]
    assert harness.manager.state is LifecycleState.PAIRING
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_timeout_without_open_responds_once_and_leaves_no_live_entry(tmp_path) -> None:
    harness = Harness(tmp_path, config=fast_config(connect_timeout_s=0.05))
    write_bundle(harness.session_dir)
    await harness.manager.start()
    outcome = await asyncio.wait_for(harness.manager.wait_result(), timeout=2)

    assert outcome.status is ResultStatus.TIMEOUT
    assert outcome.http_status == 408
    await asyncio.wait_for(harness.manager.wait_closed(), timeout=2)
    assert harness.manager.state is LifecycleState.CLOSED
    assert isinstance(harness.manager.last_error, ConnectTimeoutError)
    assert TENANT not in harness.live_sessions
    assert harness.socket.closed
    # Credentials are kept so the next trigger can reconnect without pairing.
    assert (harness.session_dir / "creds.json").exists()


@pytest.mark.asyncio
async def test_logged_out_close_deletes_bundle_and_never_restarts(tmp_path) -> None:
    harness = Harness(tmp_path)
    await harness.open_registered()

    harness.socket.emit(SocketEventKind.CLOSE, reason_code=401)
    await asyncio.wait_for(harness.manager.wait_closed(), timeout=2)

    assert not harness.session_dir.exists()
    assert TENANT not in harness.live_sessions
    assert harness.restarts == []
    error = harness.manager.last_error
    assert isinstance(error, ProtocolDisconnect)
    assert error.disposition == "fatal_invalidate"


@pytest.mark.asyncio
async def test_restart_required_close_schedules_one_restart(tmp_path) -> None:
    harness = Harness(tmp_path, config=fast_config(restart_delay_s=2.0))
    await harness.open_registered()

    harness.socket.emit(SocketEventKind.CLOSE, reason_code=515)
    harness.socket.emit(SocketEventKind.CLOSE, reason_code=515)
    await asyncio.wait_for(harness.manager.wait_closed(), timeout=2)

    assert harness.restarts == [(TENANT, 2.0)]
    assert (harness.session_dir / "creds.json").exists()
    assert harness.socket.closed
    assert TENANT not in harness.live_sessions


@pytest.mark.asyncio
async def test_soft_close_keeps_bundle_without_restart(tmp_path) -> None:
    harness = Harness(tmp_path)
    await harness.open_registered()

    harness.socket.emit(SocketEventKind.CLOSE, reason_code=428)
    await asyncio.wait_for(harness.manager.wait_closed(), timeout=2)

    assert (harness.session_dir / "creds.json").exists()
    assert harness.restarts == []
    assert TENANT not in harness.live_sessions


@pytest.mark.asyncio
async def test_creds_update_saves_credentials(tmp_path) -> None:
    harness = Harness(tmp_path)
    await harness.open_registered()

    harness.socket.emit(SocketEventKind.CREDS_UPDATE)
    await eventually(lambda: harness.socket.saved == 1)
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_missing_bundle_on_open_reports_error(tmp_path) -> None:
    harness = Harness(tmp_path)
    bundle = write_bundle(harness.session_dir)
    await harness.manager.start()
    bundle.unlink()
    harness.socket.emit(SocketEventKind.OPEN)
    outcome = await asyncio.wait_for(harness.manager.wait_result(), timeout=2)

    assert outcome.status is ResultStatus.ERROR
    assert "Credentials file not found" in outcome.message
    assert harness.escrow.uploads == []
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_socket_factory_failure_answers_with_error(tmp_path) -> None:
    async def broken_factory(tenant_id, session_dir):
        raise OSError("transport unavailable")

    harness = Harness(tmp_path, factory=FakeSocketFactory())
    harness.manager._socket_factory = broken_factory
    await harness.manager.start()
    outcome = await harness.manager.wait_result()

    assert outcome.status is ResultStatus.ERROR
    assert "Failed to initialize connection." in outcome.message
    assert harness.manager.closed


@pytest.mark.asyncio
async def test_admin_receives_new_connection_notice(tmp_path) -> None:
    config = replace(fast_config(), admin_number="15550001111")
    harness = Harness(tmp_path, config=config)
    await harness.open_registered()

    await eventually(lambda: len(harness.socket.sent) == 2)
    addresses = [address for address, _text in harness.socket.sent]
    assert addresses == [f"{TENANT}@s.whatsapp.net", "15550001111@s.whatsapp.net"]
    assert "Active sessions: 1" in harness.socket.sent[1][1]
    await harness.manager.stop()


@pytest.mark.asyncio
async def test_logged_out_close_is_not_held_behind_pending_escrow(tmp_path) -> None:
    escrow = StubEscrow(gate=asyncio.Event())
    harness = Harness(tmp_path, escrow=escrow)
    write_bundle(harness.session_dir, identity=f"{TENANT}:7@s.whatsapp.net")
    await harness.manager.start()
    harness.socket.emit(SocketEventKind.OPEN)
    await eventually(lambda: escrow.uploads != [])
    assert TENANT in harness.live_sessions

    harness.socket.emit(SocketEventKind.CLOSE, reason_code=401)
    outcome = await asyncio.wait_for(harness.manager.wait_result(), timeout=2)

    assert not escrow.gate.is_set()
    assert outcome.status is ResultStatus.ERROR
    await asyncio.wait_for(harness.manager.wait_closed(), timeout=2)
    assert harness.manager.state is LifecycleState.CLOSED
    assert TENANT not in harness.live_sessions
    assert not harness.session_dir.exists()
    assert escrow.cancelled == 1

    # Releasing the store afterwards must not resurrect the invalidated session.
    escrow.gate.set()
    await asyncio.sleep(0.01)
    assert list(await harness.registry.list()) == []


@pytest.mark.asyncio
async def test_stop_cancels_pending_escrow(tmp_path) -> None:
    escrow = StubEscrow(gate=asyncio.Event())
    harness = Harness(tmp_path, escrow=escrow)
    write_bundle(harness.session_dir)
    await harness.manager.start()
    harness.socket.emit(SocketEventKind.OPEN)
    await eventually(lambda: escrow.uploads != [])

    await harness.manager.stop()

    assert escrow.cancelled == 1
    outcome = await harness.manager.wait_result()
    assert "Connection stopped." in outcome.message
    escrow.gate.set()
    await asyncio.sleep(0.01)
    assert list(await harness.registry.list()) == []
    assert (harness.session_dir / "creds.json").exists()


@pytest.mark.asyncio
async def test_factory_failure_after_stop_keeps_first_outcome(tmp_path) -> None:
    entered = asyncio.Event()
    release = asyncio.Event()

    async def slow_broken_factory(tenant_id, session_dir):
        entered.set()
        await release.wait()
        raise OSError("transport unavailable")

    harness = Harness(tmp_path)
    harness.manager._socket_factory = slow_broken_factory
    starting = asyncio.create_task(harness.manager.start())
    await asyncio.wait_for(entered.wait(), timeout=2)

    await harness.manager.stop()
    release.set()
    await asyncio.wait_for(starting, timeout=2)

    outcome = await harness.manager.wait_result()
    assert "Connection stopped." in outcome.message
    assert harness.manager.closed
