"""
Table definitions for the connection lifecycle: connections, departments,
conversation references and the migration audit log.
Single Base.metadata so Alembic and create_all() agree.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Single declarative base for all models; Alembic uses Base.metadata."""
    pass


class Connection(Base):
    """
    One WhatsApp session of one tenant.
    Status: connecting -> qr_ready -> connected | disconnected | error.
    Archived rows (archived_at set) keep their history and normalized_phone for migration.
    """
    __tablename__ = "whatsapp_connections"
    __table_args__ = (
        # at most one live row per provider session and tenant
        Index(
            "uq_wa_connections_live_session",
            "company_id",
            "session_id",
            unique=True,
            postgresql_where=text("archived_at IS NULL"),
            sqlite_where=text("archived_at IS NULL"),
        ),
        Index("ix_wa_connections_company_phone", "company_id", "normalized_phone"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    session_id: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(String(255))
    phone_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    normalized_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="connecting", index=True)
    qr_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # user_archived | migrated
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    receive_group_messages: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def archived(self) -> bool:
        return self.archived_at is not None


class Department(Base):
    __tablename__ = "departments"
    __table_args__ = (
        Index(
            "uq_departments_default_per_connection",
            "connection_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    connection_id: Mapped[str] = mapped_column(ForeignKey("whatsapp_connections.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Conversation(Base):
    """Conversation reference only: which connection (and department) owns a contact's thread."""
    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_connection_contact", "connection_id", "contact_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    connection_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("whatsapp_connections.id"), nullable=True, index=True
    )
    contact_id: Mapped[str] = mapped_column(String(64), index=True)
    department_id: Mapped[Optional[str]] = mapped_column(ForeignKey("departments.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ConnectionMigration(Base):
    """Insert-only audit row for one history transfer between connections."""
    __tablename__ = "connection_migrations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    source_connection_id: Mapped[str] = mapped_column(String(36), index=True)
    target_connection_id: Mapped[str] = mapped_column(String(36), index=True)
    migration_type: Mapped[str] = mapped_column(String(32))  # auto_same_number | import_all | manual_single | manual_bulk
    migrated_conversations_count: Mapped[int] = mapped_column(Integer, default=0)
    migrated_contacts_count: Mapped[int] = mapped_column(Integer, default=0)
    migrated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
