"""
WhatsApp connection routes: pairing (start, reconnect, status, cancel) and the lifecycle
exits (disconnect, archive, permanent delete), group-messages toggle and manual import.

Pairing runs in the background on this worker; POST returns as soon as the QR code is
stored and clients poll GET /connections/{id}/pairing (or the connection row) for the outcome.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Request

from apps.api.schemas import (
    ConnectionCreateIn,
    ConnectionOut,
    ContactsMigrateIn,
    DepartmentOut,
    GroupMessagesIn,
    ImportIn,
    MigrationOut,
    PairingOut,
    PairingResultOut,
)
from apps.connections.errors import (
    ConnectionLifecycleError,
    ConnectionNotFound,
    GatewayError,
    InvalidState,
    PairingFailed,
)
from apps.connections.manager import ConnectionManager
from apps.connections.pairing import PairingResult
from apps.observability import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["connections"])


def get_manager(request: Request) -> ConnectionManager:
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Connection manager not initialised")
    return manager


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, ConnectionNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (PairingFailed, GatewayError)):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    logger.error("connection_route_error", error_type=type(e).__name__, error=str(e))
    return HTTPException(status_code=500, detail="Internal error")


def _result_out(result: PairingResult) -> PairingResultOut:
    return PairingResultOut(
        connection_id=result.connection_id,
        session_id=result.session_id,
        state=result.state.value,
        phone_number=result.phone_number,
        normalized_phone=result.normalized_phone,
        migration_id=result.migration_id,
        migrated_conversations=result.migrated_conversations,
        error=str(result.error) if result.error else None,
    )


# --- company scope ---


@router.post("/companies/{company_id}/connections", response_model=PairingOut, status_code=201)
async def create_connection(
    company_id: str,
    body: ConnectionCreateIn,
    manager: ConnectionManager = Depends(get_manager),
):
    """Create a connection and start pairing. Response carries the QR code to scan."""
    try:
        session = await manager.start_pairing(company_id, body.name)
    except (ConnectionLifecycleError, ValueError) as e:
        raise _http_error(e)
    return PairingOut(**session.snapshot())


@router.get("/companies/{company_id}/connections", response_model=list[ConnectionOut])
def list_connections(
    company_id: str,
    include_archived: bool = Query(False),
    manager: ConnectionManager = Depends(get_manager),
):
    rows = manager.store.list_for_company(company_id, include_archived=include_archived)
    return [ConnectionOut.from_row(r) for r in rows]


@router.get("/companies/{company_id}/migrations", response_model=list[MigrationOut])
def list_migrations(company_id: str, manager: ConnectionManager = Depends(get_manager)):
    return [MigrationOut.model_validate(m) for m in manager.store.list_migrations(company_id)]


# --- single connection ---


@router.get("/connections/{connection_id}", response_model=ConnectionOut)
def get_connection(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    try:
        return ConnectionOut.from_row(manager.store.require(connection_id))
    except ConnectionNotFound as e:
        raise _http_error(e)


@router.get("/connections/{connection_id}/pairing", response_model=PairingOut)
def get_pairing(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    """Live pairing attempt on this worker; 404 when none is running here."""
    session = manager.get_pairing(connection_id)
    if session is None:
        raise HTTPException(status_code=404, detail="No pairing in progress for this connection")
    return PairingOut(**session.snapshot())


@router.post("/connections/{connection_id}/reconnect", response_model=PairingOut)
async def reconnect_connection(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    try:
        session = await manager.reconnect(connection_id)
    except (ConnectionLifecycleError, ValueError) as e:
        raise _http_error(e)
    return PairingOut(**session.snapshot())


@router.post("/connections/{connection_id}/pairing/cancel", response_model=PairingResultOut)
async def cancel_pairing(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    result = await manager.cancel_pairing(connection_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No pairing in progress for this connection")
    return _result_out(result)


@router.post("/connections/{connection_id}/disconnect", response_model=ConnectionOut)
async def disconnect_connection(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    try:
        return ConnectionOut.from_row(await manager.disconnect(connection_id))
    except ConnectionLifecycleError as e:
        raise _http_error(e)


@router.post("/connections/{connection_id}/archive", response_model=ConnectionOut)
async def archive_connection(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    """Soft delete; conversations stay and migrate to the next connection with the same number."""
    try:
        return ConnectionOut.from_row(await manager.archive(connection_id))
    except ConnectionLifecycleError as e:
        raise _http_error(e)


@router.delete("/connections/{connection_id}", status_code=204)
async def delete_connection(
    connection_id: str,
    confirm_name: str = Query(..., description="Connection name, typed by the user to confirm"),
    manager: ConnectionManager = Depends(get_manager),
):
    """Permanent delete of an archived connection with its conversations and departments."""
    try:
        row = manager.store.require(connection_id)
        if confirm_name.strip() != row.name:
            raise ValueError("confirm_name does not match the connection name")
        await manager.permanent_delete(connection_id)
    except (ConnectionLifecycleError, ValueError) as e:
        raise _http_error(e)


@router.patch("/connections/{connection_id}/group-messages", response_model=ConnectionOut)
async def set_group_messages(
    connection_id: str,
    body: GroupMessagesIn,
    manager: ConnectionManager = Depends(get_manager),
):
    try:
        return ConnectionOut.from_row(await manager.set_receive_group_messages(connection_id, body.enabled))
    except ConnectionLifecycleError as e:
        raise _http_error(e)


@router.post("/connections/{connection_id}/import", response_model=MigrationOut)
def import_conversations(
    connection_id: str,
    body: ImportIn,
    manager: ConnectionManager = Depends(get_manager),
):
    """Move every conversation of an archived connection onto this one."""
    try:
        target = manager.store.require(connection_id)
        record = manager.import_conversations(
            target.company_id, body.source_connection_id, connection_id, body.migrated_by
        )
    except ConnectionLifecycleError as e:
        raise _http_error(e)
    return MigrationOut.model_validate(record)


@router.post("/connections/{connection_id}/contacts/migrate", response_model=list[MigrationOut])
def migrate_contacts(
    connection_id: str,
    body: ContactsMigrateIn,
    manager: ConnectionManager = Depends(get_manager),
):
    """Move the conversations of selected contacts onto this connection; one record per source."""
    try:
        target = manager.store.require(connection_id)
        records = manager.migrate_contacts(target.company_id, body.contact_ids, connection_id, body.migrated_by)
    except ConnectionLifecycleError as e:
        raise _http_error(e)
    return [MigrationOut.model_validate(r) for r in records]


@router.post("/connections/{connection_id}/departments/default", response_model=DepartmentOut)
def ensure_default_department(connection_id: str, manager: ConnectionManager = Depends(get_manager)):
    """Create the default department if pairing could not; returns the existing one otherwise."""
    try:
        return DepartmentOut.model_validate(manager.ensure_default_department(connection_id))
    except ConnectionLifecycleError as e:
        raise _http_error(e)


@router.post("/departments/{department_id}/default", response_model=DepartmentOut)
def set_default_department(department_id: str, manager: ConnectionManager = Depends(get_manager)):
    try:
        return DepartmentOut.model_validate(manager.set_default_department(department_id))
    except ConnectionLifecycleError as e:
        raise _http_error(e)
