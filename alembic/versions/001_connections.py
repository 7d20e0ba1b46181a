"""Connections, departments, conversation references and migration audit log.

Revision ID: 001_connections
Revises:
Create Date: 2026-10-18

Partial unique indexes: one live row per (company_id, session_id); one default department per connection.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_connections"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "whatsapp_connections",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("session_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone_number", sa.String(64), nullable=True),
        sa.Column("normalized_phone", sa.String(32), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="connecting"),
        sa.Column("qr_code", sa.String(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_reason", sa.String(32), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("receive_group_messages", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_whatsapp_connections_company_id", "whatsapp_connections", ["company_id"])
    op.create_index("ix_whatsapp_connections_session_id", "whatsapp_connections", ["session_id"])
    op.create_index("ix_whatsapp_connections_status", "whatsapp_connections", ["status"])
    op.create_index("ix_wa_connections_company_phone", "whatsapp_connections", ["company_id", "normalized_phone"])
    op.create_index(
        "uq_wa_connections_live_session",
        "whatsapp_connections",
        ["company_id", "session_id"],
        unique=True,
        postgresql_where=sa.text("archived_at IS NULL"),
        sqlite_where=sa.text("archived_at IS NULL"),
    )

    op.create_table(
        "departments",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("connection_id", sa.String(36), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["connection_id"], ["whatsapp_connections.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_departments_company_id", "departments", ["company_id"])
    op.create_index("ix_departments_connection_id", "departments", ["connection_id"])
    op.create_index(
        "uq_departments_default_per_connection",
        "departments",
        ["connection_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
        sqlite_where=sa.text("is_default"),
    )

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("connection_id", sa.String(36), nullable=True),
        sa.Column("contact_id", sa.String(64), nullable=False),
        sa.Column("department_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["connection_id"], ["whatsapp_connections.id"]),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversations_company_id", "conversations", ["company_id"])
    op.create_index("ix_conversations_connection_id", "conversations", ["connection_id"])
    op.create_index("ix_conversations_contact_id", "conversations", ["contact_id"])
    op.create_index("ix_conversations_connection_contact", "conversations", ["connection_id", "contact_id"])

    op.create_table(
        "connection_migrations",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("company_id", sa.String(64), nullable=False),
        sa.Column("source_connection_id", sa.String(36), nullable=False),
        sa.Column("target_connection_id", sa.String(36), nullable=False),
        sa.Column("migration_type", sa.String(32), nullable=False),
        sa.Column("migrated_conversations_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("migrated_contacts_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("migrated_by", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_connection_migrations_company_id", "connection_migrations", ["company_id"])
    op.create_index("ix_connection_migrations_source_connection_id", "connection_migrations", ["source_connection_id"])
    op.create_index("ix_connection_migrations_target_connection_id", "connection_migrations", ["target_connection_id"])


def downgrade() -> None:
    op.drop_table("connection_migrations")
    op.drop_index("ix_conversations_connection_contact", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("uq_departments_default_per_connection", table_name="departments")
    op.drop_table("departments")
    op.drop_index("uq_wa_connections_live_session", table_name="whatsapp_connections")
    op.drop_table("whatsapp_connections")
