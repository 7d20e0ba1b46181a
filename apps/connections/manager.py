"""
Connection lifecycle orchestration: pairing entry points (start, reconnect, cancel) and the
exits that live outside a pairing attempt (disconnect, archive, permanent delete), plus the
group-messages toggle and manual history moves.

One live PairingSession per connection: the registry cancels an existing local session before
a new attempt, and the pairing lease keeps other workers from polling the same row.
"""
from __future__ import annotations

import inspect
import uuid
from typing import Any, Callable, Iterable, Optional

from apps.api.db.models import Connection, ConnectionMigration, Department
from apps.connections.departments import DepartmentBootstrapper
from apps.connections.errors import GatewayError, InvalidState
from apps.connections.gateway import ProviderGateway
from apps.connections.lease import PairingLease
from apps.connections.migration import MigrationEngine
from apps.connections.pairing import PairingResult, PairingSession
from apps.connections.settings import ConnectionSettings, get_settings
from apps.connections.store import ALL_STATUSES, PENDING_STATUSES, ConnectionStatus, ConnectionStore
from apps.observability import get_logger

logger = get_logger(__name__)

LEASE_MARGIN_SECONDS = 30.0


def new_session_id() -> str:
    """Provider instance name; stays with the connection across reconnects."""
    return f"wa-{uuid.uuid4().hex}"


class ConnectionManager:
    def __init__(
        self,
        store: ConnectionStore,
        gateway: ProviderGateway,
        *,
        settings: Optional[ConnectionSettings] = None,
        migrations: Optional[MigrationEngine] = None,
        departments: Optional[DepartmentBootstrapper] = None,
        lease: Optional[PairingLease] = None,
        session_id_factory: Callable[[], str] = new_session_id,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.gateway = gateway
        self.migrations = migrations or MigrationEngine(store)
        self.departments = departments or DepartmentBootstrapper(store, self.settings.DEFAULT_DEPARTMENT_NAME)
        self.lease = lease or PairingLease(ttl_seconds=self.settings.PAIRING_DEADLINE_SECONDS + LEASE_MARGIN_SECONDS)
        self.session_id_factory = session_id_factory
        self._worker_id = uuid.uuid4().hex
        self._sessions: dict[str, PairingSession] = {}

    # --- pairing ---

    async def start_pairing(
        self,
        company_id: str,
        name: str,
        *,
        on_qr: Optional[Callable[[str, str], Any]] = None,
        on_complete: Optional[Callable[[PairingResult], Any]] = None,
    ) -> PairingSession:
        """
        Create a connection row and ask the provider for a QR code. Returns the polling session;
        `await session.wait()` yields the outcome. Raises ValueError on an empty name and
        PairingFailed when the provider gives no QR (the row is removed again).
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("connection name is required")
        row = self.store.create_pending(company_id, name, self.session_id_factory())
        logger.info("pairing_started", company_id=company_id, connection_id=row.id, session_id=row.session_id)
        owner = self._acquire_lease(row.id)
        session = self._build_session(
            row, owner, created=True, prior_status=None, on_qr=on_qr, on_complete=on_complete
        )
        await self._launch(session)
        return session

    async def reconnect(
        self,
        connection_id: str,
        *,
        on_qr: Optional[Callable[[str, str], Any]] = None,
        on_complete: Optional[Callable[[PairingResult], Any]] = None,
    ) -> PairingSession:
        """Re-pair an existing row in place; session_id and row id never change."""
        await self._cancel_live(connection_id)
        row = self.store.require(connection_id)
        if row.archived:
            raise InvalidState("archived connections cannot be reconnected", connection_id=connection_id)

        owner = self._acquire_lease(connection_id)
        prior_status = row.status
        if prior_status in PENDING_STATUSES:
            # leftover of an attempt whose poller is gone (worker restart)
            self.store.update_if(
                connection_id, {prior_status}, status=ConnectionStatus.DISCONNECTED.value, qr_code=None
            )
            prior_status = ConnectionStatus.DISCONNECTED.value

        logger.info("pairing_reconnect_started", connection_id=connection_id, session_id=row.session_id)
        session = self._build_session(
            row, owner, created=False, prior_status=prior_status, on_qr=on_qr, on_complete=on_complete
        )
        await self._launch(session)
        return session

    async def cancel_pairing(self, connection_id: str) -> Optional[PairingResult]:
        """Cancel the live attempt for connection_id, if this worker runs one."""
        session = self._sessions.get(connection_id)
        if session is None:
            return None
        return await session.cancel()

    def get_pairing(self, connection_id: str) -> Optional[PairingSession]:
        return self._sessions.get(connection_id)

    def live_pairings(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.done)

    def _build_session(
        self,
        row: Connection,
        owner: str,
        *,
        created: bool,
        prior_status: Optional[str],
        on_qr: Optional[Callable[[str, str], Any]],
        on_complete: Optional[Callable[[PairingResult], Any]],
    ) -> PairingSession:
        async def _completed(result: PairingResult) -> None:
            if self._sessions.get(result.connection_id) is session:
                del self._sessions[result.connection_id]
            self.lease.release(result.connection_id, owner)
            logger.info(
                "pairing_finished",
                connection_id=result.connection_id,
                state=result.state.value,
                migrated_conversations=result.migrated_conversations,
            )
            if on_complete is not None:
                value = on_complete(result)
                if inspect.isawaitable(value):
                    await value

        session = PairingSession(
            connection_id=row.id,
            company_id=row.company_id,
            session_id=row.session_id,
            store=self.store,
            gateway=self.gateway,
            migrations=self.migrations,
            departments=self.departments,
            created=created,
            prior_status=prior_status,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
            deadline=self.settings.PAIRING_DEADLINE_SECONDS,
            on_qr=on_qr,
            on_complete=_completed,
        )
        return session

    def _acquire_lease(self, connection_id: str) -> str:
        owner = f"{self._worker_id}:{uuid.uuid4().hex}"
        if not self.lease.acquire(connection_id, owner):
            raise InvalidState("pairing already in progress on another worker", connection_id=connection_id)
        return owner

    async def _launch(self, session: PairingSession) -> None:
        self._sessions[session.connection_id] = session
        await session.begin()

    async def _cancel_live(self, connection_id: str) -> None:
        session = self._sessions.get(connection_id)
        if session is not None and not session.done:
            await session.cancel()

    # --- lifecycle exits ---

    async def disconnect(self, connection_id: str) -> Connection:
        """Log the provider session out; history stays on the row."""
        await self._cancel_live(connection_id)
        row = self.store.require(connection_id)
        if row.archived:
            raise InvalidState("connection is archived", connection_id=connection_id)
        await self._best_effort("logout", row)
        self.store.update_if(connection_id, ALL_STATUSES, status=ConnectionStatus.DISCONNECTED.value, qr_code=None)
        logger.info("connection_disconnected", connection_id=connection_id)
        return self.store.require(connection_id)

    async def archive(self, connection_id: str) -> Connection:
        """Soft delete: provider teardown, row archived, conversations kept for later migration."""
        row = self.store.require(connection_id)
        if row.archived:
            raise InvalidState("connection is already archived", connection_id=connection_id)
        await self._cancel_live(connection_id)
        # a cancelled reconnect puts the row back to its prior status
        row = self.store.require(connection_id)
        if row.status == ConnectionStatus.CONNECTED.value:
            await self._best_effort("logout", row)
        await self._best_effort("delete", row)
        if not self.store.archive(connection_id):
            raise InvalidState("connection was archived concurrently", connection_id=connection_id)
        logger.info(
            "connection_archived",
            connection_id=connection_id,
            phone=row.normalized_phone,
            conversations_kept=self.store.count_conversations(connection_id),
        )
        return self.store.require(connection_id)

    async def permanent_delete(self, connection_id: str) -> None:
        """Irreversible. Only archived connections; removes their conversations and departments."""
        row = self.store.require(connection_id)
        if not row.archived:
            raise InvalidState("only archived connections can be deleted permanently", connection_id=connection_id)
        if not self.store.delete_archived(connection_id):
            raise InvalidState("connection is no longer archived", connection_id=connection_id)
        logger.warning("connection_deleted_permanently", connection_id=connection_id, company_id=row.company_id)

    async def set_receive_group_messages(self, connection_id: str, enabled: bool) -> Connection:
        """Provider webhook first, then the flag; GatewayError leaves the row unchanged."""
        row = self.store.require(connection_id)
        if row.archived:
            raise InvalidState("connection is archived", connection_id=connection_id)
        await self.gateway.update_webhook(row.session_id, row.id, enabled)
        self.store.set_receive_group_messages(connection_id, enabled)
        logger.info("connection_group_messages_updated", connection_id=connection_id, enabled=enabled)
        return self.store.require(connection_id)

    async def _best_effort(self, operation: str, row: Connection) -> None:
        try:
            await getattr(self.gateway, operation)(row.session_id)
        except GatewayError as e:
            logger.warning("gateway_teardown_failed", operation=operation, connection_id=row.id, error=str(e))

    # --- history & departments ---

    def import_conversations(
        self,
        company_id: str,
        source_connection_id: str,
        target_connection_id: str,
        migrated_by: Optional[str] = None,
    ) -> ConnectionMigration:
        return self.migrations.import_conversations(company_id, source_connection_id, target_connection_id, migrated_by)

    def migrate_contacts(
        self,
        company_id: str,
        contact_ids: Iterable[str],
        target_connection_id: str,
        migrated_by: Optional[str] = None,
    ) -> list[ConnectionMigration]:
        return self.migrations.migrate_contacts(company_id, contact_ids, target_connection_id, migrated_by)

    def ensure_default_department(self, connection_id: str) -> Department:
        """Manual retry for a bootstrap that failed during pairing."""
        row = self.store.require(connection_id)
        if row.archived:
            raise InvalidState("connection is archived", connection_id=connection_id)
        return self.departments.ensure_default(connection_id)

    def set_default_department(self, department_id: str) -> Department:
        return self.departments.set_default(department_id)

    async def shutdown(self) -> None:
        """Cancel every live attempt of this worker (rows are rolled back like a user cancel)."""
        for session in list(self._sessions.values()):
            if not session.done:
                await session.cancel()
        self._sessions.clear()
