"""Calendar connection API endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from labcal.auth.session import User, get_current_user
from labcal.models import CalendarConnection, ConnectionStatus, MirroredEvent
from labcal.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/connections", tags=["connections"])


class ConnectionResponse(BaseModel):
    """Connection status as shown to its owner."""
    id: str
    provider: str
    account_email: Optional[str] = None
    calendar_ids: list[str]
    status: str
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    needs_reconnect: bool = False
    degraded: bool = False
    created_at: datetime


class RemoteCalendarResponse(BaseModel):
    id: str
    summary: str
    primary: bool = False
    access_role: Optional[str] = None
    linked: bool = False


class LinkedCalendarsRequest(BaseModel):
    calendar_ids: list[str]


class SyncLogEntry(BaseModel):
    status: str
    created_at: str
    imported: int = 0
    updated: int = 0
    deleted: int = 0
    full_resyncs: int = 0
    errors: list[str] = []
    duration_ms: int = 0


def serialize_connection(connection: CalendarConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        provider=connection.provider,
        account_email=connection.account_email,
        calendar_ids=connection.calendar_ids,
        status=connection.status.value,
        last_synced_at=connection.last_synced_at,
        last_error=connection.last_error,
        consecutive_failures=connection.consecutive_failures,
        needs_reconnect=connection.needs_reconnect,
        degraded=connection.is_degraded,
        created_at=connection.created_at,
    )


async def _get_owned_connection(services: Services, connection_id: str, user: User) -> CalendarConnection:
    connection = await services.connections.get(connection_id)
    if not connection or connection.user_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )
    return connection


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """List the current user's calendar connections, revoked ones included."""
    connections = await services.connections.list_for_user(user.id)
    return [serialize_connection(c) for c in connections]


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    connection = await _get_owned_connection(services, connection_id, user)
    return serialize_connection(connection)


@router.get("/{connection_id}/events", response_model=list[MirroredEvent])
async def list_mirrored_events(
    connection_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Read-only mirrored events; edits happen at the provider via ``external_url``."""
    await _get_owned_connection(services, connection_id, user)
    return await services.mirror.list_events(connection_id, start=start, end=end)


@router.get("/{connection_id}/calendars", response_model=list[RemoteCalendarResponse])
async def list_remote_calendars(
    connection_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Calendars on the linked account, flagged with whether they are mirrored."""
    connection = await _get_owned_connection(services, connection_id, user)
    calendars = await services.sync_engine.list_remote_calendars(connection_id)

    linked = set(connection.calendar_ids)
    # Google also answers to the alias "primary"
    if "primary" in linked:
        linked.update(c["id"] for c in calendars if c["primary"])

    return [RemoteCalendarResponse(**c, linked=c["id"] in linked) for c in calendars]


@router.put("/{connection_id}/calendars", response_model=ConnectionResponse)
async def set_linked_calendars(
    connection_id: str,
    request: LinkedCalendarsRequest,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    connection = await _get_owned_connection(services, connection_id, user)
    if connection.status == ConnectionStatus.REVOKED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connection has been unlinked"
        )

    try:
        updated = await services.sync_engine.set_linked_calendars(connection_id, request.calendar_ids)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return serialize_connection(updated)


@router.post("/{connection_id}/sync", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    connection_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Start a sync in the background; progress shows up in the connection status."""
    connection = await _get_owned_connection(services, connection_id, user)
    if connection.status != ConnectionStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Connection is {connection.status.value}, not active"
        )

    services.sync_engine.trigger_manual_sync(connection_id)
    logger.info(f"Manual sync requested by user {user.id} for {connection_id}")
    return {"status": "sync_started", "connection_id": connection_id}


@router.get("/{connection_id}/sync-log", response_model=list[SyncLogEntry])
async def get_sync_log(
    connection_id: str,
    limit: int = 20,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    await _get_owned_connection(services, connection_id, user)
    entries = await services.sync_engine.get_sync_log(connection_id, limit=min(max(limit, 1), 100))
    return [SyncLogEntry(**entry) for entry in entries]


@router.delete("/{connection_id}")
async def unlink_connection(
    connection_id: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Unlink the calendar. Calling it again on an unlinked connection is harmless."""
    await _get_owned_connection(services, connection_id, user)
    await services.oauth.unlink(connection_id, actor=user.actor.id)
    return {"status": "unlinked", "connection_id": connection_id}
