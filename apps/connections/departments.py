"""
Default department bootstrap: every connected session gets one department flagged is_default.
Concurrent callers for one connection are serialized in-process by a fixed pool of lock
stripes; across processes the partial unique index on (connection_id) WHERE is_default
turns a lost race into IntegrityError, which is read back as "already created".
"""
import threading
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from apps.api.db.models import Connection, Department
from apps.connections.errors import BootstrapError, InvalidState
from apps.connections.settings import DEFAULT_DEPARTMENT_NAME
from apps.connections.store import ConnectionStore
from apps.observability import get_logger

logger = get_logger(__name__)

LOCK_STRIPES = 64


class DepartmentBootstrapper:
    def __init__(self, store: ConnectionStore, default_name: str = DEFAULT_DEPARTMENT_NAME):
        self.store = store
        self.default_name = default_name
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def _lock_for(self, connection_id: str) -> threading.Lock:
        # fixed pool: unrelated connections may share a stripe, memory stays bounded
        return self._locks[hash(connection_id) % LOCK_STRIPES]

    def _existing(self, connection_id: str) -> Optional[Department]:
        with self.store.transaction() as s:
            return (
                s.query(Department)
                .filter(Department.connection_id == connection_id)
                .order_by(Department.is_default.desc(), Department.created_at)
                .first()
            )

    def ensure_default(self, connection_id: str) -> Department:
        """
        Create the default department when the connection has none; otherwise no-op.
        Returns the default (or first) department of the connection.
        """
        with self._lock_for(connection_id):
            try:
                with self.store.transaction() as s:
                    existing = (
                        s.query(Department)
                        .filter(Department.connection_id == connection_id)
                        .order_by(Department.is_default.desc(), Department.created_at)
                        .first()
                    )
                    if existing is not None:
                        return existing
                    conn = s.get(Connection, connection_id)
                    if conn is None:
                        raise BootstrapError("connection not found", connection_id=connection_id)
                    dept = Department(
                        company_id=conn.company_id,
                        connection_id=connection_id,
                        name=self.default_name,
                        is_default=True,
                        active=True,
                    )
                    s.add(dept)
                    s.flush()
            except IntegrityError:
                existing = self._existing(connection_id)
                if existing is None:
                    raise BootstrapError("default department race lost and none found", connection_id=connection_id)
                return existing
            except SQLAlchemyError as e:
                raise BootstrapError(f"default department failed: {e}", connection_id=connection_id) from e

        logger.info("department_default_created", connection_id=connection_id, department_id=dept.id)
        return dept

    def set_default(self, department_id: str) -> Department:
        """Move the default flag to department_id; the connection keeps exactly one default."""
        with self.store.transaction() as s:
            dept = s.get(Department, department_id)
            if dept is None:
                raise InvalidState(f"department {department_id} not found")
            if dept.is_default:
                return dept
            s.query(Department).filter(
                Department.connection_id == dept.connection_id,
                Department.is_default.is_(True),
            ).update({Department.is_default: False}, synchronize_session=False)
            s.flush()
            dept.is_default = True
            dept.active = True
            s.flush()
            return dept
