"""
Tests for the pairing state machine driven through ConnectionManager: fresh pairing, rollback,
reconnect identity, deadline, cancel and the cancel/connected race.
"""
import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from apps.api.db.models import Department
from apps.connections.errors import (
    BootstrapError,
    GatewayError,
    InvalidState,
    MigrationError,
    PairingCancelled,
    PairingFailed,
    PairingTimeout,
)
from apps.connections.gateway import GatewayStatus
from apps.connections.lease import PairingLease
from apps.connections.manager import ConnectionManager
from apps.connections.pairing import PairingState
from apps.connections.settings import ConnectionSettings

from conftest import QR_PNG, add_connection, add_conversations

PHONE = "+5511999998888"
PENDING = GatewayStatus("connecting")


def _departments(store, connection_id):
    with store.transaction() as s:
        return s.query(Department).filter(Department.connection_id == connection_id).all()


def _manager_with_deadline(store, gateway, deadline):
    settings = ConnectionSettings(POLL_INTERVAL_SECONDS=0.01, PAIRING_DEADLINE_SECONDS=deadline, UAZAPI_API_KEY="k")
    return ConnectionManager(store, gateway, settings=settings, lease=PairingLease(use_redis=False))


# --- fresh pairing ---


def test_fresh_pairing_connects_after_pending_ticks(manager, gateway, store):
    gateway.statuses = [PENDING, PENDING, PENDING, GatewayStatus("open", PHONE)]
    qrs = []

    async def scenario():
        session = await manager.start_pairing("acme", "Vendas", on_qr=lambda cid, qr: qrs.append((cid, qr)))
        assert session.state is PairingState.POLLING
        row = store.get(session.connection_id)
        assert row.status == "qr_ready"
        assert row.qr_code == QR_PNG
        return await session.wait()

    result = asyncio.run(scenario())

    assert result.ok
    assert result.state is PairingState.CONNECTED
    assert result.normalized_phone == "5511999998888"
    assert result.migration_id is None
    assert gateway.ops() == ["init", "status", "status", "status", "status"]
    row = store.get(result.connection_id)
    assert row.status == "connected"
    assert row.phone_number == PHONE
    assert row.normalized_phone == "5511999998888"
    assert row.qr_code is None
    assert row.last_connected_at is not None
    depts = _departments(store, row.id)
    assert [(d.name, d.is_default) for d in depts] == [("Geral", True)]
    assert qrs == [(row.id, QR_PNG)]
    assert manager.get_pairing(row.id) is None


def test_empty_name_rejected(manager, gateway):
    with pytest.raises(ValueError):
        asyncio.run(manager.start_pairing("acme", "   "))
    assert gateway.calls == []


def test_missing_qr_rolls_back_row(manager, gateway, store):
    gateway.qr = None
    with pytest.raises(PairingFailed):
        asyncio.run(manager.start_pairing("acme", "Vendas"))
    assert store.list_for_company("acme", include_archived=True) == []
    assert gateway.ops() == ["init", "delete"]


def test_init_error_rolls_back_row(manager, gateway, store):
    gateway.fail["init"] = GatewayError("502 from provider", operation="init", status_code=502)
    with pytest.raises(PairingFailed):
        asyncio.run(manager.start_pairing("acme", "Vendas"))
    assert store.list_for_company("acme", include_archived=True) == []


def test_qr_store_error_rolls_back_row(manager, gateway, store):
    db_down = OperationalError("UPDATE whatsapp_connections", {}, Exception("database is locked"))
    outcomes = []
    with patch.object(store, "set_qr", side_effect=db_down):
        with pytest.raises(PairingFailed):
            asyncio.run(manager.start_pairing("acme", "Vendas", on_complete=outcomes.append))
    assert store.list_for_company("acme", include_archived=True) == []
    assert gateway.ops() == ["init", "delete"]
    assert [r.state for r in outcomes] == [PairingState.FAILED]
    assert manager.live_pairings() == 0
    assert manager.get_pairing(outcomes[0].connection_id) is None
    assert manager.lease.acquire(outcomes[0].connection_id, "other-worker")


def test_qr_store_error_on_reconnect_restores_status(manager, gateway, store):
    row = add_connection(store, status="disconnected", phone=PHONE)
    db_down = OperationalError("UPDATE whatsapp_connections", {}, Exception("database is locked"))
    with patch.object(store, "set_qr", side_effect=db_down):
        with pytest.raises(PairingFailed):
            asyncio.run(manager.reconnect(row.id))
    assert store.get(row.id).status == "disconnected"
    assert manager.get_pairing(row.id) is None
    assert manager.lease.acquire(row.id, "other-worker")


def test_polling_errors_are_retried(manager, gateway, store):
    gateway.statuses = [GatewayError("timeout", operation="status"), GatewayStatus("open", PHONE)]

    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        result = await session.wait()
        return session, result

    session, result = asyncio.run(scenario())
    assert result.ok
    assert session.last_poll_error is not None
    assert session.ticks == 2


def test_connected_pairing_migrates_same_number_history(manager, gateway, store):
    from datetime import datetime, timezone

    old = add_connection(
        store, name="Old", status="disconnected", phone="5511999998888",
        archived_at=datetime.now(timezone.utc),
    )
    add_conversations(store, old.id, [f"contact-{i}" for i in range(42)])
    gateway.statuses = [GatewayStatus("open", "+55 (11) 99999-8888")]

    async def scenario():
        session = await manager.start_pairing("acme", "Nova")
        return await session.wait()

    result = asyncio.run(scenario())

    assert result.ok
    assert result.migration_id is not None
    assert result.migrated_conversations == 42
    assert store.count_conversations(result.connection_id) == 42
    assert store.count_conversations(old.id) == 0


def test_migration_failure_does_not_fail_pairing(manager, gateway, store):
    gateway.statuses = [GatewayStatus("open", PHONE)]

    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        return await session.wait()

    with patch.object(manager.migrations, "reconcile_if_duplicate", side_effect=MigrationError("db down")):
        result = asyncio.run(scenario())
    assert result.ok
    assert store.get(result.connection_id).status == "connected"
    assert len(_departments(store, result.connection_id)) == 1


def test_bootstrap_failure_does_not_fail_pairing(manager, gateway, store):
    gateway.statuses = [GatewayStatus("open", PHONE)]

    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        return await session.wait()

    with patch.object(manager.departments, "ensure_default", side_effect=BootstrapError("db down")):
        result = asyncio.run(scenario())
    assert result.ok
    assert store.get(result.connection_id).status == "connected"


def test_unknown_phone_skips_migration(manager, gateway, store):
    gateway.statuses = [GatewayStatus("open", None)]

    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        return await session.wait()

    with patch.object(manager.migrations, "reconcile_if_duplicate") as reconcile:
        result = asyncio.run(scenario())
    assert result.ok
    assert result.normalized_phone is None
    reconcile.assert_not_called()


# --- reconnect ---


def test_reconnect_preserves_identity(manager, gateway, store):
    row = add_connection(store, name="Vendas", status="disconnected", phone=PHONE)
    gateway.statuses = [PENDING, GatewayStatus("open", PHONE)]

    async def scenario():
        session = await manager.reconnect(row.id)
        assert store.get(row.id).status == "qr_ready"
        return await session.wait()

    result = asyncio.run(scenario())

    assert result.ok
    assert result.connection_id == row.id
    assert result.session_id == row.session_id
    assert "init" not in gateway.ops()
    assert gateway.ops()[0] == "reconnect"
    rows = store.list_for_company("acme", include_archived=True)
    assert [r.id for r in rows] == [row.id]
    assert rows[0].session_id == row.session_id
    assert rows[0].status == "connected"


def test_reconnect_archived_is_invalid(manager, store):
    from datetime import datetime, timezone

    row = add_connection(store, status="disconnected", archived_at=datetime.now(timezone.utc))
    with pytest.raises(InvalidState):
        asyncio.run(manager.reconnect(row.id))


def test_reconnect_blocked_by_other_worker_lease(manager, gateway, store):
    row = add_connection(store, status="disconnected", phone=PHONE)
    manager.lease.acquire(row.id, "other-worker")
    with pytest.raises(InvalidState):
        asyncio.run(manager.reconnect(row.id))
    assert store.get(row.id).status == "disconnected"
    assert gateway.calls == []


def test_reconnect_failure_restores_prior_status(manager, gateway, store):
    row = add_connection(store, status="error", phone=PHONE)
    gateway.qr = None
    with pytest.raises(PairingFailed):
        asyncio.run(manager.reconnect(row.id))
    got = store.get(row.id)
    assert got.status == "error"
    assert got.session_id == row.session_id
    assert "delete" not in gateway.ops()


# --- deadline ---


def test_timeout_fires_at_deadline_not_before(store, gateway):
    mgr = _manager_with_deadline(store, gateway, deadline=0.3)

    async def scenario():
        loop = asyncio.get_running_loop()
        session = await mgr.start_pairing("acme", "Vendas")
        await asyncio.sleep(0.1)
        state_before = session.state
        result = await session.wait()
        elapsed = loop.time() - session.started_at
        calls_at_expiry = list(gateway.calls)
        await asyncio.sleep(0.1)
        return session, state_before, result, elapsed, calls_at_expiry

    session, state_before, result, elapsed, calls_at_expiry = asyncio.run(scenario())

    assert state_before is PairingState.POLLING
    assert result.state is PairingState.TIMED_OUT
    assert isinstance(result.error, PairingTimeout)
    assert elapsed >= 0.3
    assert session.ticks >= 1
    # nothing reaches the provider after expiry except the teardown
    assert gateway.calls == calls_at_expiry
    assert gateway.ops()[-1] == "delete"
    assert store.get(session.connection_id) is None


# --- cancel ---


def test_cancel_new_connection_deletes_row(manager, gateway, store):
    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        result = await session.cancel()
        again = await session.cancel()
        return session, result, again

    session, result, again = asyncio.run(scenario())

    assert result.state is PairingState.CANCELLED
    assert isinstance(result.error, PairingCancelled)
    assert again is result
    assert store.get(session.connection_id) is None
    assert "delete" in gateway.ops()
    assert "logout" not in gateway.ops()


def test_cancel_reconnect_reverts_status(manager, gateway, store):
    row = add_connection(store, status="disconnected", phone=PHONE)

    async def scenario():
        session = await manager.reconnect(row.id)
        return await manager.cancel_pairing(row.id)

    result = asyncio.run(scenario())

    assert result.state is PairingState.CANCELLED
    got = store.get(row.id)
    assert got.status == "disconnected"
    assert got.qr_code is None
    assert got.session_id == row.session_id
    assert [r.id for r in store.list_for_company("acme")] == [row.id]
    assert "delete" in gateway.ops()


def test_connected_result_after_cancel_is_discarded(manager, gateway, store):
    async def scenario():
        gateway.gate = asyncio.Event()
        gateway.status_entered = asyncio.Event()
        session = await manager.start_pairing("acme", "Vendas")
        await gateway.status_entered.wait()
        # tick in flight; the provider answers "open" only after the cancel
        result = await session.cancel()
        gateway.statuses = [GatewayStatus("open", PHONE)]
        gateway.gate.set()
        await asyncio.sleep(0.05)
        return session, result

    session, result = asyncio.run(scenario())

    assert result.state is PairingState.CANCELLED
    assert session.state is PairingState.CANCELLED
    assert session.result is result
    assert store.get(session.connection_id) is None
    assert _departments(store, session.connection_id) == []


def test_cancel_without_live_session_returns_none(manager):
    assert asyncio.run(manager.cancel_pairing("nothing")) is None


def test_shutdown_cancels_live_sessions(manager, store):
    async def scenario():
        session = await manager.start_pairing("acme", "Vendas")
        await manager.shutdown()
        return session

    session = asyncio.run(scenario())
    assert session.state is PairingState.CANCELLED
    assert store.get(session.connection_id) is None
    assert manager.live_pairings() == 0
