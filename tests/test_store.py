"""Tests for ConnectionStore conditional writes: stale actions must not overwrite newer state."""
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from apps.api.db.models import Conversation, Department
from apps.connections.errors import ConnectionNotFound
from apps.connections.phone import PAIRING_PHONE_PLACEHOLDER
from apps.connections.store import ARCHIVED_BY_USER, ConnectionStatus

from conftest import add_connection, add_conversations


def test_create_pending_uses_placeholder_phone(store):
    row = store.create_pending("acme", "Vendas", "wa-1")
    assert row.status == ConnectionStatus.CONNECTING.value
    assert row.phone_number == PAIRING_PHONE_PLACEHOLDER
    assert row.normalized_phone is None
    assert row.archived_at is None


def test_require_raises_not_found(store):
    with pytest.raises(ConnectionNotFound):
        store.require("missing")


def test_live_session_id_is_unique_per_company(store):
    store.create_pending("acme", "A", "wa-dup")
    with pytest.raises(IntegrityError):
        store.create_pending("acme", "B", "wa-dup")
    # other tenants may reuse the name
    store.create_pending("other", "C", "wa-dup")


def test_set_qr_only_from_connecting(store):
    row = store.create_pending("acme", "Vendas", "wa-1")
    assert store.set_qr(row.id, "qr-1")
    assert store.get(row.id).status == ConnectionStatus.QR_READY.value
    # already qr_ready: a second set is rejected
    assert not store.set_qr(row.id, "qr-2")
    assert store.get(row.id).qr_code == "qr-1"


def test_mark_connected_clears_qr_and_is_conditional(store):
    row = store.create_pending("acme", "Vendas", "wa-1")
    store.set_qr(row.id, "qr")
    assert store.mark_connected(row.id, "+5511999998888", "5511999998888")
    got = store.get(row.id)
    assert got.status == ConnectionStatus.CONNECTED.value
    assert got.qr_code is None
    assert got.normalized_phone == "5511999998888"
    assert got.last_connected_at is not None
    # not pending anymore: a late second connect does nothing
    assert not store.mark_connected(row.id, "+5511000000000", "5511000000000")
    assert store.get(row.id).normalized_phone == "5511999998888"


def test_delete_if_pending_leaves_connected_rows(store):
    pending = store.create_pending("acme", "A", "wa-a")
    connected = add_connection(store, name="B", status="connected", phone="5511999998888")
    assert store.delete_if_pending(pending.id)
    assert store.get(pending.id) is None
    assert not store.delete_if_pending(connected.id)
    assert store.get(connected.id) is not None


def test_update_if_ignores_archived_rows(store):
    row = add_connection(store, status="disconnected", archived_at=datetime.now(timezone.utc))
    assert not store.update_if(row.id, {"disconnected"}, status="connecting")
    assert store.get(row.id).status == "disconnected"


def test_archive_keeps_conversations(store):
    row = add_connection(store, phone="5511999998888")
    add_conversations(store, row.id, ["c1", "c2"])
    assert store.archive(row.id)
    got = store.get(row.id)
    assert got.archived
    assert got.archived_reason == ARCHIVED_BY_USER
    assert got.status == ConnectionStatus.DISCONNECTED.value
    assert not got.active
    assert got.normalized_phone == "5511999998888"
    assert store.count_conversations(row.id) == 2
    # second archive is a no-op
    assert not store.archive(row.id)


def test_delete_archived_removes_history(store):
    row = add_connection(store)
    other = add_connection(store, name="Suporte")
    add_conversations(store, row.id, ["c1", "c2", "c3"])
    with store.transaction() as s:
        dept = Department(company_id="acme", connection_id=row.id, name="Geral", is_default=True)
        s.add(dept)
        s.flush()
        # migrated earlier, still routed to the old department
        s.add(Conversation(company_id="acme", connection_id=other.id, contact_id="c9", department_id=dept.id))

    assert not store.delete_archived(row.id)  # live rows are never deleted
    store.archive(row.id)
    assert store.delete_archived(row.id)

    assert store.get(row.id) is None
    assert store.count_conversations(row.id) == 0
    with store.transaction() as s:
        assert s.query(Department).filter(Department.connection_id == row.id).count() == 0
        moved = s.query(Conversation).filter(Conversation.connection_id == other.id).one()
        assert moved.department_id is None


def test_list_for_company_hides_archived_by_default(store):
    live = add_connection(store, name="A")
    archived = add_connection(store, name="B", archived_at=datetime.now(timezone.utc))
    add_connection(store, company_id="other", name="C")
    assert [r.id for r in store.list_for_company("acme")] == [live.id]
    assert {r.id for r in store.list_for_company("acme", include_archived=True)} == {live.id, archived.id}
