"""
Conversation history transfer between connections.

Automatic: when a new connection comes up with the phone number of an archived one, every
conversation of the archived connection is re-pointed to the new one and the source is marked
archived_reason="migrated" so it is never a candidate again.
Manual: operator-driven import of an archived connection's history, or moving the conversations
of selected contacts to another live connection.

Count, re-point, audit row and source marking run in one transaction: either all of them are
committed or none.
"""
from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.db.models import Connection, ConnectionMigration, Conversation
from apps.connections.errors import InvalidState, MigrationError
from apps.connections.phone import is_matchable
from apps.connections.store import ARCHIVED_MIGRATED, ConnectionStore
from apps.observability import get_logger

logger = get_logger(__name__)

AUTO_SAME_NUMBER = "auto_same_number"
IMPORT_ALL = "import_all"
MANUAL_SINGLE = "manual_single"
MANUAL_BULK = "manual_bulk"


def _move_conversations(
    session: Session,
    company_id: str,
    source_id: str,
    target_id: str,
    migration_type: str,
    migrated_by: Optional[str],
    contact_ids: Optional[list[str]] = None,
) -> ConnectionMigration:
    scope = [Conversation.connection_id == source_id]
    if contact_ids is not None:
        scope.append(Conversation.contact_id.in_(contact_ids))

    conversations = session.query(func.count(Conversation.id)).filter(*scope).scalar() or 0
    contacts = session.query(func.count(func.distinct(Conversation.contact_id))).filter(*scope).scalar() or 0
    moved = (
        session.query(Conversation)
        .filter(*scope)
        .update({Conversation.connection_id: target_id}, synchronize_session=False)
    )
    if moved != conversations:
        logger.warning(
            "migration_count_drift",
            source_connection_id=source_id,
            target_connection_id=target_id,
            counted=conversations,
            moved=moved,
        )

    record = ConnectionMigration(
        company_id=company_id,
        source_connection_id=source_id,
        target_connection_id=target_id,
        migration_type=migration_type,
        migrated_conversations_count=conversations,
        migrated_contacts_count=contacts,
        migrated_by=migrated_by,
    )
    session.add(record)
    session.flush()
    return record


class MigrationEngine:
    def __init__(self, store: ConnectionStore):
        self.store = store

    def reconcile_if_duplicate(
        self,
        company_id: str,
        new_connection_id: str,
        normalized_phone: Optional[str],
    ) -> Optional[ConnectionMigration]:
        """
        Move the history of an archived connection with the same number to new_connection_id.
        Returns the audit record, or None when there was nothing to migrate.
        When several unmigrated archived rows share the number, the most recently archived wins.
        Raises MigrationError; nothing is committed in that case.
        """
        if not is_matchable(normalized_phone):
            return None
        try:
            with self.store.transaction() as s:
                candidates = (
                    s.query(Connection)
                    .filter(
                        Connection.company_id == company_id,
                        Connection.normalized_phone == normalized_phone,
                        Connection.archived_at.isnot(None),
                        Connection.id != new_connection_id,
                        or_(Connection.archived_reason.is_(None), Connection.archived_reason != ARCHIVED_MIGRATED),
                    )
                    .order_by(Connection.archived_at.desc())
                    .all()
                )
                if not candidates:
                    return None
                if len(candidates) > 1:
                    logger.warning(
                        "migration_ambiguous_source",
                        target_connection_id=new_connection_id,
                        candidates=[c.id for c in candidates],
                        chosen=candidates[0].id,
                    )
                source = candidates[0]
                record = _move_conversations(
                    s, company_id, source.id, new_connection_id, AUTO_SAME_NUMBER, migrated_by=None
                )
                s.query(Connection).filter(Connection.id == source.id).update(
                    {Connection.archived_reason: ARCHIVED_MIGRATED}, synchronize_session=False
                )
        except SQLAlchemyError as e:
            raise MigrationError(f"auto migration failed: {e}", connection_id=new_connection_id) from e

        logger.info(
            "migration_completed",
            migration_type=AUTO_SAME_NUMBER,
            source_connection_id=record.source_connection_id,
            target_connection_id=new_connection_id,
            conversations=record.migrated_conversations_count,
            contacts=record.migrated_contacts_count,
        )
        return record

    def import_conversations(
        self,
        company_id: str,
        source_connection_id: str,
        target_connection_id: str,
        migrated_by: Optional[str] = None,
    ) -> ConnectionMigration:
        """Operator import: all conversations of an archived connection into a live one."""
        if source_connection_id == target_connection_id:
            raise InvalidState("source and target are the same connection", connection_id=target_connection_id)
        try:
            with self.store.transaction() as s:
                source = s.get(Connection, source_connection_id)
                target = s.get(Connection, target_connection_id)
                if source is None or source.company_id != company_id or source.archived_at is None:
                    raise InvalidState(
                        "source must be an archived connection of this company", connection_id=source_connection_id
                    )
                if target is None or target.company_id != company_id or target.archived_at is not None:
                    raise InvalidState(
                        "target must be a live connection of this company", connection_id=target_connection_id
                    )
                record = _move_conversations(
                    s, company_id, source_connection_id, target_connection_id, IMPORT_ALL, migrated_by
                )
        except SQLAlchemyError as e:
            raise MigrationError(f"import failed: {e}", connection_id=target_connection_id) from e

        logger.info(
            "migration_completed",
            migration_type=IMPORT_ALL,
            source_connection_id=source_connection_id,
            target_connection_id=target_connection_id,
            conversations=record.migrated_conversations_count,
        )
        return record

    def migrate_contacts(
        self,
        company_id: str,
        contact_ids: Iterable[str],
        target_connection_id: str,
        migrated_by: Optional[str] = None,
    ) -> list[ConnectionMigration]:
        """
        Move every conversation of the given contacts to target_connection_id.
        One audit row per distinct source connection; conversations already on the target are left alone.
        """
        contacts = sorted(set(contact_ids))
        if not contacts:
            return []
        migration_type = MANUAL_SINGLE if len(contacts) == 1 else MANUAL_BULK
        records: list[ConnectionMigration] = []
        try:
            with self.store.transaction() as s:
                target = s.get(Connection, target_connection_id)
                if target is None or target.company_id != company_id or target.archived_at is not None:
                    raise InvalidState(
                        "target must be a live connection of this company", connection_id=target_connection_id
                    )
                source_ids = [
                    row[0]
                    for row in s.query(Conversation.connection_id)
                    .filter(
                        Conversation.company_id == company_id,
                        Conversation.contact_id.in_(contacts),
                        Conversation.connection_id.isnot(None),
                        Conversation.connection_id != target_connection_id,
                    )
                    .distinct()
                    .all()
                ]
                for source_id in sorted(source_ids):
                    records.append(
                        _move_conversations(
                            s, company_id, source_id, target_connection_id, migration_type, migrated_by,
                            contact_ids=contacts,
                        )
                    )
        except SQLAlchemyError as e:
            raise MigrationError(f"contact migration failed: {e}", connection_id=target_connection_id) from e

        logger.info(
            "migration_completed",
            migration_type=migration_type,
            target_connection_id=target_connection_id,
            sources=len(records),
            conversations=sum(r.migrated_conversations_count for r in records),
        )
        return records
