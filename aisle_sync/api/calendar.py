"""Calendar connection, sync control and event API endpoints."""

import logging
from datetime import datetime
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from aisle_sync.auth.session import SessionData, get_current_session
from aisle_sync.sync import store
from aisle_sync.sync.engine import disconnect_calendar, sync_calendar
from aisle_sync.sync.google_calendar import get_share_link
from aisle_sync.sync.models import CalendarEvent, EventCategory, ProjectionResult, SyncResult
from aisle_sync.sync.projector import project_tasks_to_events

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendar", tags=["calendar"])


class CalendarStatusResponse(BaseModel):
    """Connection status for the current tenant."""
    connected: bool
    email: Optional[str] = None
    calendar_name: Optional[str] = None
    last_sync_at: Optional[str] = None
    sync_enabled: bool = False
    needs_reauth: bool = False
    last_error: Optional[str] = None
    share_link: Optional[str] = None


class SettingsUpdate(BaseModel):
    """Request to change connection settings."""
    sync_enabled: bool


class SyncLogEntry(BaseModel):
    """Sync log entry."""
    id: int
    action: str
    status: str
    pushed: int
    pulled: int
    deleted: int
    errors: list[str]
    created_at: str


class SyncLogResponse(BaseModel):
    entries: list[SyncLogEntry]


class EventCreate(BaseModel):
    """Request to create an event."""
    title: str = Field(min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    all_day: bool = False
    category: EventCategory = EventCategory.OTHER
    color: Optional[str] = None
    vendor_id: Optional[str] = None
    task_id: Optional[str] = None


class EventUpdate(BaseModel):
    """Request to update an event. Only fields present in the body change."""
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: Optional[bool] = None
    category: Optional[EventCategory] = None
    color: Optional[str] = None
    vendor_id: Optional[str] = None


class EventResponse(BaseModel):
    event: CalendarEvent


class EventListResponse(BaseModel):
    events: list[CalendarEvent]


async def _require_connection(tenant_id: str) -> dict:
    connection = await store.get_connection(tenant_id)
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No Google Calendar connection found"
        )
    return connection


@router.get("/status", response_model=CalendarStatusResponse)
async def get_calendar_status(session: SessionData = Depends(get_current_session)):
    """Get Google Calendar connection status."""
    connection = await store.get_connection(session.tenant_id)
    if not connection:
        return CalendarStatusResponse(connected=False)

    return CalendarStatusResponse(
        connected=True,
        email=connection["account_email"],
        calendar_name=connection["calendar_name"],
        last_sync_at=connection["last_sync_at"],
        sync_enabled=bool(connection["sync_enabled"]),
        needs_reauth=bool(connection["needs_reauth"]),
        last_error=connection["last_error"],
        share_link=get_share_link(connection["calendar_id"]),
    )


@router.post("/sync", response_model=SyncResult)
async def trigger_sync(session: SessionData = Depends(get_current_session)):
    """Run a sync for the current tenant and return its summary."""
    await _require_connection(session.tenant_id)
    return await sync_calendar(session.tenant_id)


@router.post("/sync-internal", response_model=ProjectionResult)
async def sync_internal(session: SessionData = Depends(get_current_session)):
    """Project due-dated tasks into calendar events."""
    return await project_tasks_to_events(session.tenant_id)


@router.patch("/settings", response_model=CalendarStatusResponse)
async def update_settings(
    update: SettingsUpdate,
    session: SessionData = Depends(get_current_session),
):
    """Enable or disable sync for the current tenant."""
    await _require_connection(session.tenant_id)
    await store.update_connection(session.tenant_id, sync_enabled=update.sync_enabled)
    logger.info(f"Sync {'enabled' if update.sync_enabled else 'disabled'} for tenant {session.tenant_id}")
    return await get_calendar_status(session)


@router.post("/disconnect")
async def disconnect(
    delete_calendar: bool = True,
    session: SessionData = Depends(get_current_session),
):
    """Disconnect Google Calendar; local events are kept."""
    await _require_connection(session.tenant_id)
    await disconnect_calendar(session.tenant_id, delete_remote_calendar=delete_calendar)
    return {"success": True}


@router.get("/log", response_model=SyncLogResponse)
async def get_log(
    limit: int = 20,
    session: SessionData = Depends(get_current_session),
):
    """Get recent sync runs, newest first."""
    limit = max(1, min(limit, 100))
    entries = await store.get_sync_log(session.tenant_id, limit=limit)
    return SyncLogResponse(entries=[SyncLogEntry(**entry) for entry in entries])


@router.get("/events", response_model=EventListResponse)
async def list_events(session: SessionData = Depends(get_current_session)):
    """List the current tenant's events."""
    return EventListResponse(events=await store.get_events_by_tenant(session.tenant_id))


@router.post("/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def create_event(
    event: EventCreate,
    session: SessionData = Depends(get_current_session),
):
    """Create a local event; it reaches Google Calendar on the next sync."""
    try:
        created = await store.create_event(
            tenant_id=session.tenant_id,
            created_by=session.user_id,
            **event.model_dump(),
        )
    except aiosqlite.IntegrityError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An event already exists for this task"
        )
    return EventResponse(event=created)


@router.get("/events/{event_id}", response_model=EventResponse)
async def get_event(event_id: str, session: SessionData = Depends(get_current_session)):
    event = await store.get_event_by_id(session.tenant_id, event_id)
    if not event or event.is_marked_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return EventResponse(event=event)


@router.put("/events/{event_id}", response_model=EventResponse)
async def update_event(
    event_id: str,
    update: EventUpdate,
    session: SessionData = Depends(get_current_session),
):
    """Update an event; a synced event becomes pending."""
    changes = update.model_dump(exclude_unset=True)
    if changes.get("title", "") is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Title cannot be empty")
    if "start_time" in changes and changes["start_time"] is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Start time is required")
    if "all_day" in changes and changes["all_day"] is None:
        del changes["all_day"]

    event = await store.edit_event(session.tenant_id, event_id, changes)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return EventResponse(event=event)


@router.delete("/events/{event_id}")
async def delete_event(event_id: str, session: SessionData = Depends(get_current_session)):
    """Delete an event; its Google copy is removed on the next sync."""
    deleted = await store.mark_event_deleted(session.tenant_id, event_id)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return {"success": True}
