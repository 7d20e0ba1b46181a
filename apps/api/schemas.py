"""Request/response models for the connection routes."""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from apps.connections.phone import format_phone


class ConnectionCreateIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class ConnectionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    session_id: str
    name: str
    phone_number: Optional[str] = None
    normalized_phone: Optional[str] = None
    display_phone: Optional[str] = None
    status: str
    archived_at: Optional[datetime] = None
    archived_reason: Optional[str] = None
    active: bool = True
    receive_group_messages: bool = False
    last_connected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "ConnectionOut":
        out = cls.model_validate(row)
        if row.normalized_phone:
            out.display_phone = format_phone(row.normalized_phone)
        return out


class PairingOut(BaseModel):
    connection_id: str
    session_id: str
    state: str
    qr_code: Optional[str] = None
    ticks: int = 0
    reconnect: bool = False


class PairingResultOut(BaseModel):
    connection_id: str
    session_id: str
    state: str
    phone_number: Optional[str] = None
    normalized_phone: Optional[str] = None
    migration_id: Optional[str] = None
    migrated_conversations: int = 0
    error: Optional[str] = None


class GroupMessagesIn(BaseModel):
    enabled: bool


class ImportIn(BaseModel):
    source_connection_id: str = Field(..., min_length=1)
    migrated_by: Optional[str] = None


class MigrationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    source_connection_id: str
    target_connection_id: str
    migration_type: str
    migrated_conversations_count: int = 0
    migrated_contacts_count: int = 0
    migrated_by: Optional[str] = None
    created_at: Optional[datetime] = None


class ContactsMigrateIn(BaseModel):
    contact_ids: list[str] = Field(..., min_length=1)
    migrated_by: Optional[str] = None


class DepartmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    connection_id: str
    name: str
    is_default: bool
    active: bool
