"""
Internal event store, calendar connections, sync log and task lookups.

Every query is scoped by tenant. Timestamps are stored as ISO-8601 strings in
UTC so they sort and compare as text.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from aisle_sync.database import get_database
from aisle_sync.sync.models import CalendarEvent, EventCategory, SyncStatus
from aisle_sync.sync.schemas import normalize_event_times

logger = logging.getLogger(__name__)

# Fields mirrored on the provider calendar
CONTENT_FIELDS = ("title", "description", "location", "start_time", "end_time", "all_day")

# Fields a tenant may edit directly
EDITABLE_FIELDS = CONTENT_FIELDS + ("category", "color", "vendor_id")

CONNECTION_FIELDS = (
    "calendar_id",
    "calendar_name",
    "account_email",
    "sync_enabled",
    "needs_reauth",
    "last_sync_at",
    "last_error",
    "consecutive_failures",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _db_value(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (SyncStatus, EventCategory)):
        return value.value
    return value


def _row_to_event(row) -> CalendarEvent:
    return CalendarEvent.model_validate(dict(row))


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

async def get_events_by_tenant(
    tenant_id: str,
    include_deleted: bool = False,
) -> list[CalendarEvent]:
    """All events of a tenant ordered by start time."""
    db = await get_database()
    query = "SELECT * FROM calendar_events WHERE tenant_id = ?"
    if not include_deleted:
        query += " AND deleted_at IS NULL"
    query += " ORDER BY start_time, id"

    cursor = await db.execute(query, (tenant_id,))
    rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def get_events_by_status(tenant_id: str, status: SyncStatus) -> list[CalendarEvent]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_events
           WHERE tenant_id = ? AND sync_status = ?
           ORDER BY start_time, id""",
        (tenant_id, status.value)
    )
    rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]


async def get_event_by_id(tenant_id: str, event_id: str) -> Optional[CalendarEvent]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_events WHERE id = ? AND tenant_id = ?",
        (event_id, tenant_id)
    )
    row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def get_event_by_foreign_id(tenant_id: str, foreign_event_id: str) -> Optional[CalendarEvent]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_events WHERE tenant_id = ? AND foreign_event_id = ?",
        (tenant_id, foreign_event_id)
    )
    row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def get_event_by_task_id(tenant_id: str, task_id: str) -> Optional[CalendarEvent]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_events WHERE tenant_id = ? AND task_id = ?",
        (tenant_id, task_id)
    )
    row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def create_event(
    tenant_id: str,
    title: str,
    start_time: datetime,
    end_time: Optional[datetime] = None,
    all_day: bool = False,
    description: Optional[str] = None,
    location: Optional[str] = None,
    category: EventCategory = EventCategory.OTHER,
    color: Optional[str] = None,
    vendor_id: Optional[str] = None,
    task_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> CalendarEvent:
    """
    Create a local event.

    Raises:
        aiosqlite.IntegrityError: if the tenant already has an event for task_id
    """
    db = await get_database()
    now = _now()
    start_time, end_time = normalize_event_times(start_time, end_time, all_day)

    cursor = await db.execute(
        """INSERT INTO calendar_events
           (id, tenant_id, title, description, location, start_time, end_time,
            all_day, category, color, vendor_id, task_id, sync_status,
            revision, created_by, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
           RETURNING *""",
        (
            uuid.uuid4().hex, tenant_id, title, description or None, location or None,
            _iso(start_time), _iso(end_time), all_day, _db_value(category), color,
            vendor_id, task_id, SyncStatus.LOCAL.value,
            created_by, _iso(now), _iso(now),
        )
    )
    row = await cursor.fetchone()
    await db.commit()
    return _row_to_event(row)


async def insert_remote_event(
    tenant_id: str,
    calendar_id: str,
    foreign_event_id: str,
    fields: dict,
) -> Optional[CalendarEvent]:
    """
    Materialize a remote-only event as a synced local event.

    Returns None if the tenant already has an event with this foreign id.
    """
    db = await get_database()
    now = _now()
    start_time, end_time = normalize_event_times(
        fields["start_time"], fields.get("end_time"), fields.get("all_day", False)
    )

    cursor = await db.execute(
        """INSERT INTO calendar_events
           (id, tenant_id, title, description, location, start_time, end_time,
            all_day, category, color, sync_status, foreign_event_id,
            foreign_calendar_id, last_synced_at, revision, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
           ON CONFLICT(tenant_id, foreign_event_id) DO NOTHING
           RETURNING *""",
        (
            uuid.uuid4().hex, tenant_id, fields["title"], fields.get("description"),
            fields.get("location"), _iso(start_time), _iso(end_time),
            fields.get("all_day", False), _db_value(fields.get("category", EventCategory.OTHER)),
            fields.get("color"), SyncStatus.SYNCED.value, foreign_event_id,
            calendar_id, _iso(now), _iso(now), _iso(now),
        )
    )
    row = await cursor.fetchone()
    await db.commit()
    return _row_to_event(row) if row else None


async def update_event(
    tenant_id: str,
    event_id: str,
    updates: dict,
    mark_pending: bool = False,
) -> Optional[CalendarEvent]:
    """
    Apply field changes to an event.

    Content changes bump the revision. With ``mark_pending`` an event that has
    a remote copy is flagged for push. Returns the updated event, or None if
    it does not exist or is marked deleted.
    """
    existing = await get_event_by_id(tenant_id, event_id)
    if existing is None or existing.is_marked_deleted:
        return None

    changes = {key: value for key, value in updates.items() if key in EDITABLE_FIELDS}
    if not changes:
        return existing

    if {"start_time", "end_time", "all_day"} & changes.keys():
        all_day = changes.get("all_day", existing.all_day)
        start = changes.get("start_time", existing.start_time)
        end = changes["end_time"] if "end_time" in changes else existing.end_time
        changes["start_time"], changes["end_time"] = normalize_event_times(start, end, all_day)
    for key in ("description", "location"):
        if key in changes:
            changes[key] = changes[key] or None

    content_changed = any(key in CONTENT_FIELDS for key in changes)

    assignments = [f"{key} = ?" for key in changes]
    params = [_db_value(value) for value in changes.values()]
    assignments.append("updated_at = ?")
    params.append(_iso(_now()))

    if content_changed:
        assignments.append("revision = revision + 1")
        if mark_pending:
            assignments.append(
                "sync_status = CASE WHEN foreign_event_id IS NOT NULL "
                "THEN 'pending' ELSE sync_status END"
            )

    db = await get_database()
    await db.execute(
        f"UPDATE calendar_events SET {', '.join(assignments)} WHERE id = ? AND tenant_id = ?",
        (*params, event_id, tenant_id)
    )
    await db.commit()

    return await get_event_by_id(tenant_id, event_id)


async def edit_event(tenant_id: str, event_id: str, updates: dict) -> Optional[CalendarEvent]:
    """Apply a tenant edit; an event with a remote copy becomes pending."""
    return await update_event(tenant_id, event_id, updates, mark_pending=True)


async def apply_remote_content(
    tenant_id: str,
    event_id: str,
    fields: dict,
    expected_revision: int,
) -> bool:
    """
    Overwrite an event's content with its remote copy.

    Only applies while the event is still synced and unchanged since it was
    read; a local edit in the meantime wins.
    """
    start_time, end_time = normalize_event_times(
        fields["start_time"], fields.get("end_time"), fields.get("all_day", False)
    )
    now = _now()

    db = await get_database()
    cursor = await db.execute(
        """UPDATE calendar_events SET
           title = ?, description = ?, location = ?, start_time = ?, end_time = ?,
           all_day = ?, last_synced_at = ?, updated_at = ?
           WHERE id = ? AND tenant_id = ? AND revision = ?
             AND sync_status = 'synced' AND deleted_at IS NULL""",
        (
            fields["title"], fields.get("description"), fields.get("location"),
            _iso(start_time), _iso(end_time), fields.get("all_day", False),
            _iso(now), _iso(now), event_id, tenant_id, expected_revision,
        )
    )
    await db.commit()
    return cursor.rowcount > 0


async def assign_foreign_id(
    tenant_id: str,
    event_id: str,
    foreign_event_id: str,
    foreign_calendar_id: str,
    revision: int,
    expected_foreign_id: Optional[str] = None,
) -> bool:
    """
    Record the remote copy of an event after a create.

    Atomic claim: succeeds only if the event's foreign id still equals
    ``expected_foreign_id``. The event becomes synced unless it was edited
    since ``revision`` was read, in which case it stays pending.
    """
    db = await get_database()
    cursor = await db.execute(
        """UPDATE calendar_events SET
           foreign_event_id = ?,
           foreign_calendar_id = ?,
           sync_status = CASE WHEN revision = ? THEN 'synced' ELSE 'pending' END,
           last_synced_at = ?
           WHERE id = ? AND tenant_id = ? AND foreign_event_id IS ?
             AND deleted_at IS NULL""",
        (
            foreign_event_id, foreign_calendar_id, revision, _iso(_now()),
            event_id, tenant_id, expected_foreign_id,
        )
    )
    await db.commit()
    return cursor.rowcount > 0


async def mark_synced(tenant_id: str, event_id: str, revision: int) -> bool:
    """Mark an event synced after a successful update push, unless edited since."""
    db = await get_database()
    cursor = await db.execute(
        """UPDATE calendar_events SET
           sync_status = CASE WHEN revision = ? THEN 'synced' ELSE sync_status END,
           last_synced_at = ?
           WHERE id = ? AND tenant_id = ? AND deleted_at IS NULL""",
        (revision, _iso(_now()), event_id, tenant_id)
    )
    await db.commit()
    return cursor.rowcount > 0


async def mark_event_deleted(tenant_id: str, event_id: str) -> bool:
    """
    Delete an event on behalf of the tenant.

    Events without a remote copy are removed at once; the rest are marked so
    the next sync run deletes the remote copy first. Returns False if the
    event does not exist or is already marked.
    """
    existing = await get_event_by_id(tenant_id, event_id)
    if existing is None or existing.is_marked_deleted:
        return False

    if existing.foreign_event_id is None:
        return await delete_event(tenant_id, event_id)

    now = _now()
    db = await get_database()
    await db.execute(
        """UPDATE calendar_events SET deleted_at = ?, updated_at = ?, revision = revision + 1
           WHERE id = ? AND tenant_id = ?""",
        (_iso(now), _iso(now), event_id, tenant_id)
    )
    await db.commit()
    return True


async def delete_event(tenant_id: str, event_id: str) -> bool:
    """Remove an event row."""
    db = await get_database()
    cursor = await db.execute(
        "DELETE FROM calendar_events WHERE id = ? AND tenant_id = ?",
        (event_id, tenant_id)
    )
    await db.commit()
    return cursor.rowcount > 0


async def delete_event_if_synced(tenant_id: str, event_id: str, foreign_event_id: str) -> bool:
    """Remove an event only while it is still synced against the same remote copy."""
    db = await get_database()
    cursor = await db.execute(
        """DELETE FROM calendar_events
           WHERE id = ? AND tenant_id = ? AND foreign_event_id = ?
             AND sync_status = 'synced' AND deleted_at IS NULL""",
        (event_id, tenant_id, foreign_event_id)
    )
    await db.commit()
    return cursor.rowcount > 0


async def reset_events_to_local(tenant_id: str) -> int:
    """
    Detach all of a tenant's events from the provider.

    Events already marked deleted are removed. Returns how many events remain
    and were reset.
    """
    db = await get_database()
    await db.execute(
        "DELETE FROM calendar_events WHERE tenant_id = ? AND deleted_at IS NOT NULL",
        (tenant_id,)
    )
    cursor = await db.execute(
        """UPDATE calendar_events SET
           sync_status = 'local', foreign_event_id = NULL,
           foreign_calendar_id = NULL, last_synced_at = NULL
           WHERE tenant_id = ?""",
        (tenant_id,)
    )
    await db.commit()
    return cursor.rowcount


# ---------------------------------------------------------------------------
# Calendar connections
# ---------------------------------------------------------------------------

async def get_connection(tenant_id: str) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_connections WHERE tenant_id = ?",
        (tenant_id,)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def create_connection(
    tenant_id: str,
    calendar_id: str,
    calendar_name: str,
    provider: str = "google",
    account_email: Optional[str] = None,
    connected_by: Optional[str] = None,
) -> dict:
    """Create or replace the tenant's calendar connection."""
    db = await get_database()
    now = _iso(_now())
    await db.execute(
        """INSERT INTO calendar_connections
           (tenant_id, provider, calendar_id, calendar_name, account_email,
            sync_enabled, needs_reauth, consecutive_failures, connected_by, connected_at)
           VALUES (?, ?, ?, ?, ?, TRUE, FALSE, 0, ?, ?)
           ON CONFLICT(tenant_id) DO UPDATE SET
           provider = excluded.provider,
           calendar_id = excluded.calendar_id,
           calendar_name = excluded.calendar_name,
           account_email = excluded.account_email,
           sync_enabled = TRUE,
           needs_reauth = FALSE,
           last_error = NULL,
           consecutive_failures = 0,
           connected_by = excluded.connected_by,
           connected_at = excluded.connected_at""",
        (tenant_id, provider, calendar_id, calendar_name, account_email, connected_by, now)
    )
    await db.commit()
    return await get_connection(tenant_id)


async def update_connection(tenant_id: str, **fields) -> None:
    """Update connection fields (see CONNECTION_FIELDS)."""
    changes = {key: value for key, value in fields.items() if key in CONNECTION_FIELDS}
    if not changes:
        return

    assignments = ", ".join(f"{key} = ?" for key in changes)
    db = await get_database()
    await db.execute(
        f"UPDATE calendar_connections SET {assignments} WHERE tenant_id = ?",
        (*[_db_value(value) for value in changes.values()], tenant_id)
    )
    await db.commit()


async def record_connection_failure(tenant_id: str, error: str, needs_reauth: bool) -> None:
    """Count a failed run against the connection."""
    db = await get_database()
    await db.execute(
        """UPDATE calendar_connections SET
           last_error = ?,
           needs_reauth = CASE WHEN ? THEN TRUE ELSE needs_reauth END,
           consecutive_failures = consecutive_failures + 1
           WHERE tenant_id = ?""",
        (error, needs_reauth, tenant_id)
    )
    await db.commit()


async def delete_connection(tenant_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute(
        "DELETE FROM calendar_connections WHERE tenant_id = ?",
        (tenant_id,)
    )
    await db.commit()
    return cursor.rowcount > 0


async def list_sync_enabled_tenants() -> list[str]:
    """Tenants whose connection is enabled and not waiting for reauthorization."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT tenant_id FROM calendar_connections
           WHERE sync_enabled = TRUE AND needs_reauth = FALSE
           ORDER BY tenant_id"""
    )
    rows = await cursor.fetchall()
    return [row["tenant_id"] for row in rows]


# ---------------------------------------------------------------------------
# Sync log
# ---------------------------------------------------------------------------

async def create_sync_log(
    tenant_id: str,
    action: str,
    status: str,
    pushed: int = 0,
    pulled: int = 0,
    deleted: int = 0,
    errors: Optional[list[str]] = None,
) -> int:
    """Append a sync log record."""
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO calendar_sync_log
           (tenant_id, action, status, pushed, pulled, deleted, errors, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           RETURNING id""",
        (
            tenant_id, action, status, pushed, pulled, deleted,
            json.dumps(errors) if errors else None, _iso(_now()),
        )
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def get_sync_log(tenant_id: str, limit: int = 20) -> list[dict]:
    """Most recent sync log records for a tenant, newest first."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_sync_log
           WHERE tenant_id = ?
           ORDER BY created_at DESC, id DESC
           LIMIT ?""",
        (tenant_id, limit)
    )
    rows = await cursor.fetchall()

    entries = []
    for row in rows:
        entry = dict(row)
        entry["errors"] = json.loads(entry["errors"]) if entry["errors"] else []
        entries.append(entry)
    return entries


# ---------------------------------------------------------------------------
# Planner tasks
# ---------------------------------------------------------------------------

async def get_due_dated_tasks(tenant_id: str) -> list[dict]:
    """Tasks of a tenant that carry a due date."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM planner_tasks
           WHERE tenant_id = ? AND due_date IS NOT NULL AND due_date != ''
           ORDER BY due_date, id""",
        (tenant_id,)
    )
    rows = await cursor.fetchall()
    return [dict(row) for row in rows]
