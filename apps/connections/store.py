"""
Persistence boundary for connections, departments, conversations and migrations.
Writes that race with pairing (connect, cancel, disconnect, archive, delete) are conditional
updates: they apply only while the row is still in the expected prior state and report
whether they did.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Generator, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from apps.api.db.models import Connection, ConnectionMigration, Conversation, Department, utcnow
from apps.connections.errors import ConnectionNotFound
from apps.connections.phone import PAIRING_PHONE_PLACEHOLDER


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    QR_READY = "qr_ready"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


PENDING_STATUSES = frozenset({ConnectionStatus.CONNECTING.value, ConnectionStatus.QR_READY.value})
ALL_STATUSES = frozenset(s.value for s in ConnectionStatus)

ARCHIVED_BY_USER = "user_archived"
ARCHIVED_MIGRATED = "migrated"


def _values(statuses: Iterable[Any]) -> list[str]:
    return [s.value if isinstance(s, ConnectionStatus) else str(s) for s in statuses]


class ConnectionStore:
    """SQLAlchemy-backed store. Every public method runs in its own transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Yields a session; commits on success, rolls back on error, always closes."""
        session = self._session_factory()
        # returned rows are read after the session closes
        session.expire_on_commit = False
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- reads ---

    def get(self, connection_id: str) -> Optional[Connection]:
        with self.transaction() as s:
            return s.get(Connection, connection_id)

    def require(self, connection_id: str) -> Connection:
        row = self.get(connection_id)
        if row is None:
            raise ConnectionNotFound(f"connection {connection_id} not found", connection_id=connection_id)
        return row

    def list_for_company(self, company_id: str, include_archived: bool = False) -> list[Connection]:
        with self.transaction() as s:
            q = s.query(Connection).filter(Connection.company_id == company_id)
            if not include_archived:
                q = q.filter(Connection.archived_at.is_(None))
            return q.order_by(Connection.created_at).all()

    def count_conversations(self, connection_id: str) -> int:
        with self.transaction() as s:
            return s.query(func.count(Conversation.id)).filter(Conversation.connection_id == connection_id).scalar() or 0

    def list_migrations(self, company_id: str) -> list[ConnectionMigration]:
        with self.transaction() as s:
            return (
                s.query(ConnectionMigration)
                .filter(ConnectionMigration.company_id == company_id)
                .order_by(ConnectionMigration.created_at.desc())
                .all()
            )

    # --- pairing writes ---

    def create_pending(self, company_id: str, name: str, session_id: str) -> Connection:
        with self.transaction() as s:
            row = Connection(
                company_id=company_id,
                name=name,
                session_id=session_id,
                phone_number=PAIRING_PHONE_PLACEHOLDER,
                status=ConnectionStatus.CONNECTING.value,
                active=True,
            )
            s.add(row)
            s.flush()
            return row

    def update_if(self, connection_id: str, expected: Iterable[Any], **values: Any) -> bool:
        """UPDATE ... WHERE id = ? AND status IN expected AND archived_at IS NULL. True if a row changed."""
        values.setdefault("updated_at", utcnow())
        with self.transaction() as s:
            n = (
                s.query(Connection)
                .filter(
                    Connection.id == connection_id,
                    Connection.status.in_(_values(expected)),
                    Connection.archived_at.is_(None),
                )
                .update(values, synchronize_session=False)
            )
            return n == 1

    def set_qr(self, connection_id: str, qr_code: str) -> bool:
        return self.update_if(
            connection_id,
            [ConnectionStatus.CONNECTING],
            qr_code=qr_code,
            status=ConnectionStatus.QR_READY.value,
        )

    def mark_connected(
        self,
        connection_id: str,
        phone_number: Optional[str],
        normalized_phone: str,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.update_if(
            connection_id,
            PENDING_STATUSES,
            status=ConnectionStatus.CONNECTED.value,
            phone_number=phone_number or PAIRING_PHONE_PLACEHOLDER,
            normalized_phone=normalized_phone or None,
            last_connected_at=now or utcnow(),
            qr_code=None,
        )

    def delete_if_pending(self, connection_id: str) -> bool:
        """Remove a row created by an attempt that never connected."""
        with self.transaction() as s:
            n = (
                s.query(Connection)
                .filter(
                    Connection.id == connection_id,
                    Connection.status.in_(list(PENDING_STATUSES)),
                    Connection.archived_at.is_(None),
                )
                .delete(synchronize_session=False)
            )
            return n == 1

    # --- lifecycle exits ---

    def archive(self, connection_id: str, reason: str = ARCHIVED_BY_USER, now: Optional[datetime] = None) -> bool:
        return self.update_if(
            connection_id,
            ALL_STATUSES,
            archived_at=now or utcnow(),
            archived_reason=reason,
            active=False,
            status=ConnectionStatus.DISCONNECTED.value,
            qr_code=None,
        )

    def delete_archived(self, connection_id: str) -> bool:
        """Delete an archived row with its conversations and departments. False if not archived."""
        with self.transaction() as s:
            row = (
                s.query(Connection)
                .filter(Connection.id == connection_id, Connection.archived_at.isnot(None))
                .with_for_update()
                .first()
            )
            if row is None:
                return False
            s.query(Conversation).filter(Conversation.connection_id == connection_id).delete(synchronize_session=False)
            # conversations migrated away may still point at this connection's departments
            department_ids = select(Department.id).where(Department.connection_id == connection_id)
            s.query(Conversation).filter(Conversation.department_id.in_(department_ids)).update(
                {Conversation.department_id: None}, synchronize_session=False
            )
            s.query(Department).filter(Department.connection_id == connection_id).delete(synchronize_session=False)
            s.delete(row)
            return True

    def set_receive_group_messages(self, connection_id: str, enabled: bool) -> bool:
        return self.update_if(connection_id, ALL_STATUSES, receive_group_messages=enabled)
