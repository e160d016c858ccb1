"""
Google Calendar payload schema.

Every response that comes back from the Calendar API is parsed here, and every
request body is built here, so the rest of the sync code only ever sees
CalendarEvent and ProviderEvent instances.

Mapping rules are chosen so that pushing an event and pulling it back yields
the same content:

- all-day events use ``date`` and an exclusive end date; a missing local end
  maps to one day after the start and back.
- timed events use ``dateTime`` in UTC; a missing local end maps to one hour
  after the start and back.
- empty description/location are treated as absent on both sides.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aisle_sync.sync.models import CalendarEvent

logger = logging.getLogger(__name__)

DEFAULT_TIMED_DURATION = timedelta(hours=1)
DEFAULT_ALL_DAY_DURATION = timedelta(days=1)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def day_start(day: date) -> datetime:
    """Midnight UTC of a calendar day (how all-day events are stored)."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def normalize_event_times(
    start_time: datetime,
    end_time: Optional[datetime],
    all_day: bool,
) -> tuple[datetime, Optional[datetime]]:
    """
    Canonical storage form for event times.

    All-day events are pinned to midnight UTC of their first and last day, timed
    events are truncated to whole seconds, and an end that equals the default
    duration (or precedes the start) is stored as absent.
    """
    start = as_utc(start_time).replace(microsecond=0)
    end = as_utc(end_time).replace(microsecond=0) if end_time else None

    if all_day:
        start = day_start(start.date())
        if end is not None:
            end = day_start(end.date())
            if end <= start:
                end = None
    elif end is not None and (end <= start or end == start + DEFAULT_TIMED_DURATION):
        end = None

    return start, end


class ProviderEventTime(BaseModel):
    """Start or end of a provider event."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    day: Optional[date] = Field(default=None, alias="date")
    date_time: Optional[datetime] = Field(default=None, alias="dateTime")
    time_zone: Optional[str] = Field(default=None, alias="timeZone")

    def resolve(self) -> Optional[datetime]:
        if self.date_time is not None:
            return as_utc(self.date_time)
        if self.day is not None:
            return day_start(self.day)
        return None


class ProviderEvent(BaseModel):
    """An event on the provider calendar."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[ProviderEventTime] = None
    end: Optional[ProviderEventTime] = None
    etag: Optional[str] = None
    updated: Optional[datetime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def is_all_day(self) -> bool:
        return self.start is not None and self.start.day is not None

    def to_event_fields(self) -> dict:
        """
        Convert to internal event fields.

        Raises:
            ValueError: if the event has no usable start
        """
        start_time = self.start.resolve() if self.start else None
        if start_time is None:
            raise ValueError(f"Provider event {self.id} has no start time")

        all_day = self.is_all_day
        end_time = self.end.resolve() if self.end else None
        if all_day and end_time is not None:
            # Exclusive end date on the wire, inclusive last day locally
            end_time = end_time - DEFAULT_ALL_DAY_DURATION
        start_time, end_time = normalize_event_times(start_time, end_time, all_day)

        return {
            "title": self.summary or "Untitled Event",
            "description": self.description or None,
            "location": self.location or None,
            "start_time": start_time,
            "end_time": end_time,
            "all_day": all_day,
        }

    def content(self) -> tuple:
        """Same shape as CalendarEvent.content()."""
        fields = self.to_event_fields()
        return (
            fields["title"],
            fields["description"],
            fields["location"],
            fields["start_time"],
            fields["end_time"],
            fields["all_day"],
        )


class ProviderCalendar(BaseModel):
    """A calendar list entry or a newly created calendar."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    summary: Optional[str] = None
    description: Optional[str] = None
    primary: bool = False
    access_role: Optional[str] = Field(default=None, alias="accessRole")
    time_zone: Optional[str] = Field(default=None, alias="timeZone")


def parse_event(payload: Any) -> ProviderEvent:
    """Validate a single event payload."""
    return ProviderEvent.model_validate(payload)


def parse_events(items: Iterable[Any]) -> list[ProviderEvent]:
    """Validate a list of event payloads, skipping entries without an id."""
    events = []
    for item in items:
        try:
            events.append(parse_event(item))
        except ValidationError as e:
            logger.warning(f"Skipping malformed provider event: {e}")
    return events


def parse_calendar(payload: Any) -> ProviderCalendar:
    """Validate a single calendar payload."""
    return ProviderCalendar.model_validate(payload)


def build_event_body(event: CalendarEvent, time_zone: str = "UTC") -> dict:
    """Build the Calendar API request body for an internal event."""
    body: dict = {
        "summary": event.title,
        "description": event.description or "",
        "location": event.location or "",
    }

    start = as_utc(event.start_time)
    if event.all_day:
        last_day = as_utc(event.end_time).date() if event.end_time else start.date()
        if last_day < start.date():
            last_day = start.date()
        body["start"] = {"date": start.date().isoformat()}
        body["end"] = {"date": (last_day + DEFAULT_ALL_DAY_DURATION).isoformat()}
    else:
        end = as_utc(event.end_time) if event.end_time else start + DEFAULT_TIMED_DURATION
        if end <= start:
            end = start + DEFAULT_TIMED_DURATION
        body["start"] = {"dateTime": start.isoformat(), "timeZone": time_zone}
        body["end"] = {"dateTime": end.isoformat(), "timeZone": time_zone}

    return body
