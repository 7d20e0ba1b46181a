"""Shared fixtures: file-backed SQLite store, fake provider gateway, fast pairing settings."""
import asyncio
import uuid
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from apps.api.db.models import Base, Connection, Conversation
from apps.connections.gateway import GatewayQr, GatewayStatus
from apps.connections.lease import PairingLease
from apps.connections.manager import ConnectionManager
from apps.connections.settings import ConnectionSettings
from apps.connections.store import ConnectionStore

QR_PNG = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="


class FakeGateway:
    """
    In-memory ProviderGateway. `statuses` are returned (or raised, for exceptions) in order by status(), then `default_status`.
    `fail` maps an operation name to the exception it raises. `gate` (asyncio.Event) holds status()
    open until set, so tests can act while a tick is in flight.
    """

    def __init__(self, qr: Optional[str] = QR_PNG, statuses=None):
        self.qr = qr
        self.statuses = list(statuses or [])
        self.default_status = GatewayStatus("connecting")
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.gate: Optional[asyncio.Event] = None
        self.status_entered: Optional[asyncio.Event] = None

    def _record(self, op: str, *args):
        self.calls.append((op, *args))
        if op in self.fail:
            raise self.fail[op]

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def init(self, session_id):
        self._record("init", session_id)
        return GatewayQr(self.qr, "instance-token")

    async def reconnect(self, session_id):
        self._record("reconnect", session_id)
        return GatewayQr(self.qr)

    async def status(self, session_id):
        self._record("status", session_id)
        if self.status_entered is not None:
            self.status_entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.statuses:
            item = self.statuses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self.default_status

    async def logout(self, session_id):
        self._record("logout", session_id)

    async def delete(self, session_id):
        self._record("delete", session_id)

    async def update_webhook(self, session_id, connection_id, receive_group_messages):
        self._record("update_webhook", session_id, connection_id, receive_group_messages)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'wa.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return ConnectionStore(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fast_settings():
    return ConnectionSettings(
        POLL_INTERVAL_SECONDS=0.01,
        PAIRING_DEADLINE_SECONDS=5.0,
        UAZAPI_API_KEY="test-key",
    )


@pytest.fixture
def manager(store, gateway, fast_settings):
    return ConnectionManager(
        store,
        gateway,
        settings=fast_settings,
        lease=PairingLease(use_redis=False),
    )


def add_connection(store, company_id="acme", name="Vendas", status="connected", phone=None, archived_at=None):
    """Insert a connection row directly, bypassing pairing."""
    with store.transaction() as s:
        row = Connection(
            company_id=company_id,
            name=name,
            session_id=f"wa-{uuid.uuid4().hex}",
            status=status,
            phone_number=phone,
            normalized_phone="".join(ch for ch in (phone or "") if ch.isdigit()) or None,
            archived_at=archived_at,
            active=archived_at is None,
        )
        s.add(row)
        s.flush()
        return row


def add_conversations(store, connection_id, contact_ids, company_id="acme"):
    with store.transaction() as s:
        for contact_id in contact_ids:
            s.add(Conversation(company_id=company_id, connection_id=connection_id, contact_id=contact_id))
