"""Tests for conversation migration: same-number auto migration, manual import, per-contact moves."""
from datetime import datetime, timedelta, timezone

import pytest

from apps.api.db.models import Conversation
from apps.connections.errors import InvalidState
from apps.connections.migration import (
    AUTO_SAME_NUMBER,
    IMPORT_ALL,
    MANUAL_BULK,
    MANUAL_SINGLE,
    MigrationEngine,
)
from apps.connections.store import ARCHIVED_MIGRATED

from conftest import add_connection, add_conversations

PHONE = "5511999998888"


def _archived(store, name, when=None, phone=PHONE):
    return add_connection(
        store, name=name, status="disconnected", phone=phone,
        archived_at=when or datetime.now(timezone.utc),
    )


def _contacts_on(store, connection_id):
    with store.transaction() as s:
        rows = s.query(Conversation).filter(Conversation.connection_id == connection_id).all()
        return sorted(r.contact_id for r in rows)


def test_auto_migration_moves_every_conversation(store):
    """42 conversations of 30 contacts move from the archived connection to the new one."""
    old = _archived(store, "Old")
    contacts = [f"contact-{i % 30}" for i in range(42)]
    add_conversations(store, old.id, contacts)
    new = add_connection(store, name="New", phone=PHONE)

    record = MigrationEngine(store).reconcile_if_duplicate("acme", new.id, PHONE)

    assert record is not None
    assert record.migration_type == AUTO_SAME_NUMBER
    assert record.source_connection_id == old.id
    assert record.target_connection_id == new.id
    assert record.migrated_conversations_count == 42
    assert record.migrated_contacts_count == 30
    assert record.migrated_by is None
    assert store.count_conversations(old.id) == 0
    assert store.count_conversations(new.id) == 42
    assert store.get(old.id).archived_reason == ARCHIVED_MIGRATED


def test_auto_migration_is_idempotent(store):
    old = _archived(store, "Old")
    add_conversations(store, old.id, ["a", "b"])
    new = add_connection(store, name="New", phone=PHONE)
    engine = MigrationEngine(store)

    first = engine.reconcile_if_duplicate("acme", new.id, PHONE)
    second = engine.reconcile_if_duplicate("acme", new.id, PHONE)

    assert first is not None
    assert second is None
    assert len(store.list_migrations("acme")) == 1
    assert store.count_conversations(new.id) == 2


def test_no_candidate_no_record(store):
    new = add_connection(store, name="New", phone=PHONE)
    assert MigrationEngine(store).reconcile_if_duplicate("acme", new.id, PHONE) is None
    assert store.list_migrations("acme") == []


def test_unmatchable_phone_never_migrates(store):
    old = _archived(store, "Old", phone="12345")
    add_conversations(store, old.id, ["a"])
    new = add_connection(store, name="New", phone="12345")
    assert MigrationEngine(store).reconcile_if_duplicate("acme", new.id, "12345") is None
    assert store.count_conversations(old.id) == 1


def test_live_connection_with_same_number_is_not_a_source(store):
    live = add_connection(store, name="Live", phone=PHONE)
    add_conversations(store, live.id, ["a"])
    new = add_connection(store, name="New", phone=PHONE)
    assert MigrationEngine(store).reconcile_if_duplicate("acme", new.id, PHONE) is None
    assert store.count_conversations(live.id) == 1


def test_other_company_is_not_a_source(store):
    old = add_connection(
        store, company_id="other", name="Old", status="disconnected", phone=PHONE,
        archived_at=datetime.now(timezone.utc),
    )
    add_conversations(store, old.id, ["a"], company_id="other")
    new = add_connection(store, name="New", phone=PHONE)
    assert MigrationEngine(store).reconcile_if_duplicate("acme", new.id, PHONE) is None


def test_ambiguous_candidates_pick_most_recently_archived(store):
    now = datetime.now(timezone.utc)
    older = _archived(store, "Older", when=now - timedelta(days=10))
    newer = _archived(store, "Newer", when=now - timedelta(days=1))
    add_conversations(store, older.id, ["o1"])
    add_conversations(store, newer.id, ["n1", "n2"])
    new = add_connection(store, name="New", phone=PHONE)
    engine = MigrationEngine(store)

    record = engine.reconcile_if_duplicate("acme", new.id, PHONE)
    assert record.source_connection_id == newer.id
    assert _contacts_on(store, new.id) == ["n1", "n2"]
    assert store.count_conversations(older.id) == 1

    # the older one is still a candidate for the next reconcile
    record = engine.reconcile_if_duplicate("acme", new.id, PHONE)
    assert record.source_connection_id == older.id
    assert store.count_conversations(new.id) == 3


def test_import_requires_archived_source(store):
    source = add_connection(store, name="Live")
    target = add_connection(store, name="Target")
    with pytest.raises(InvalidState):
        MigrationEngine(store).import_conversations("acme", source.id, target.id)


def test_import_moves_all_and_records_operator(store):
    source = _archived(store, "Old", phone="5511000000000")
    add_conversations(store, source.id, ["a", "b", "b"])
    target = add_connection(store, name="Target", phone=PHONE)

    record = MigrationEngine(store).import_conversations("acme", source.id, target.id, migrated_by="user-7")

    assert record.migration_type == IMPORT_ALL
    assert record.migrated_conversations_count == 3
    assert record.migrated_contacts_count == 2
    assert record.migrated_by == "user-7"
    assert store.count_conversations(target.id) == 3


def test_migrate_contacts_one_record_per_source(store):
    a = add_connection(store, name="A")
    b = add_connection(store, name="B")
    target = add_connection(store, name="T")
    add_conversations(store, a.id, ["c1", "c2"])
    add_conversations(store, b.id, ["c1", "c3"])
    engine = MigrationEngine(store)

    records = engine.migrate_contacts("acme", ["c1", "c3"], target.id, migrated_by="user-1")

    assert {r.source_connection_id for r in records} == {a.id, b.id}
    assert all(r.migration_type == MANUAL_BULK for r in records)
    assert sum(r.migrated_conversations_count for r in records) == 3
    assert _contacts_on(store, a.id) == ["c2"]
    assert _contacts_on(store, target.id) == ["c1", "c1", "c3"]

    single = engine.migrate_contacts("acme", ["c2"], target.id)
    assert [r.migration_type for r in single] == [MANUAL_SINGLE]


def test_migrate_contacts_rejects_archived_target(store):
    target = _archived(store, "Gone")
    with pytest.raises(InvalidState):
        MigrationEngine(store).migrate_contacts("acme", ["c1"], target.id)
