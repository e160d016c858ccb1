"""Internal calendar event representation and sync result types."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """Where an internal event stands relative to its remote copy."""
    LOCAL = "local"
    PENDING = "pending"
    SYNCED = "synced"


class EventCategory(str, Enum):
    VENDOR = "vendor"
    DEADLINE = "deadline"
    APPOINTMENT = "appointment"
    MILESTONE = "milestone"
    PERSONAL = "personal"
    OTHER = "other"


class CalendarEvent(BaseModel):
    """A tenant-owned calendar event as stored in calendar_events."""
    id: str
    tenant_id: str
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    all_day: bool = False
    category: EventCategory = EventCategory.OTHER
    color: Optional[str] = None
    vendor_id: Optional[str] = None
    task_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.LOCAL
    foreign_event_id: Optional[str] = None
    foreign_calendar_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    revision: int = 0
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_marked_deleted(self) -> bool:
        return self.deleted_at is not None

    def content(self) -> tuple:
        """Fields that are mirrored on the provider calendar."""
        return (
            self.title,
            self.description or None,
            self.location or None,
            self.start_time,
            self.end_time,
            self.all_day,
        )


class CalendarResult(BaseModel):
    """Uniform outcome of a provider calendar call."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    needs_reauth: bool = False
    status_code: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None) -> "CalendarResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        error: str,
        needs_reauth: bool = False,
        status_code: Optional[int] = None,
    ) -> "CalendarResult":
        return cls(
            success=False,
            error=error,
            needs_reauth=needs_reauth,
            status_code=status_code,
        )

    @property
    def is_missing(self) -> bool:
        """True when the provider reported the resource as gone."""
        return not self.success and self.status_code in (404, 410)


class SyncResult(BaseModel):
    """Summary of one sync run for a tenant."""
    success: bool = True
    status: str = "success"
    needs_reauth: bool = False
    pushed: int = 0
    pulled: int = 0
    deleted: int = 0
    errors: list[str] = Field(default_factory=list)


class ProjectionResult(BaseModel):
    """Summary of projecting planner tasks into calendar events."""
    created: int = 0
    updated: int = 0
    errors: list[str] = Field(default_factory=list)
