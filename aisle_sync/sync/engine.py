"""
Core sync engine.

One run reconciles a tenant's internal events with its dedicated provider
calendar in three sequential phases:

1. push: local and pending events are created or patched remotely.
2. pull: remote events are materialized or copied over synced local events.
   Pending events are left alone, so local edits win.
3. deletions: tenant deletions are sent to the provider, and synced events
   that disappeared remotely are removed locally.

A single event's failure is recorded and the run continues. A credential
failure, or any call that reports reauthorization is needed, aborts the run.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from aisle_sync.auth.tokens import disconnect_provider, get_valid_tokens
from aisle_sync.config import get_settings
from aisle_sync.sync import store
from aisle_sync.sync.google_calendar import GoogleCalendarClient
from aisle_sync.sync.models import CalendarEvent, CalendarResult, SyncResult, SyncStatus
from aisle_sync.sync.schemas import as_utc, build_event_body

logger = logging.getLogger(__name__)

# Per-tenant locks to prevent overlapping runs (e.g. manual trigger + periodic job).
_tenant_locks: dict[str, asyncio.Lock] = {}
_tenant_locks_guard = asyncio.Lock()


async def _get_tenant_lock(tenant_id: str) -> asyncio.Lock:
    """Get or create an asyncio lock for a tenant."""
    async with _tenant_locks_guard:
        if tenant_id not in _tenant_locks:
            _tenant_locks[tenant_id] = asyncio.Lock()
        return _tenant_locks[tenant_id]


class SyncAborted(Exception):
    """Stops a run; everything committed before it stays committed."""

    def __init__(self, message: str, needs_reauth: bool = False):
        super().__init__(message)
        self.needs_reauth = needs_reauth


def _raise_if_reauth(result: CalendarResult) -> None:
    if result.needs_reauth:
        raise SyncAborted(result.error or "Reauthorization required", needs_reauth=True)


async def sync_calendar(tenant_id: str) -> SyncResult:
    """Run one sync for a tenant and return its summary."""
    connection = await store.get_connection(tenant_id)
    if not connection:
        return SyncResult(
            success=False,
            status="precondition_failed",
            errors=["No calendar connected"],
        )
    if not connection["sync_enabled"]:
        return SyncResult(
            success=False,
            status="precondition_failed",
            errors=["Calendar sync is disabled"],
        )

    lock = await _get_tenant_lock(tenant_id)
    if lock.locked():
        logger.info(f"Sync already in progress for tenant {tenant_id}, skipping")
        return SyncResult(
            success=False,
            status="skipped",
            errors=["Sync already in progress"],
        )

    async with lock:
        return await _sync_tenant(tenant_id, connection)


async def _sync_tenant(tenant_id: str, connection: dict) -> SyncResult:
    """Internal: perform a sync run (must be called under the tenant lock)."""
    settings = get_settings()
    result = SyncResult()

    try:
        await asyncio.wait_for(
            _run_phases(tenant_id, connection, result),
            timeout=settings.sync_timeout_seconds,
        )
    except SyncAborted as e:
        logger.warning(f"Sync aborted for tenant {tenant_id}: {e}")
        return await _record_failure(tenant_id, result, str(e), e.needs_reauth)
    except asyncio.TimeoutError:
        logger.error(f"Sync timed out for tenant {tenant_id}")
        return await _record_failure(
            tenant_id, result,
            f"Sync timed out after {settings.sync_timeout_seconds:g}s",
            needs_reauth=False,
        )
    except Exception as e:
        logger.exception(f"Error syncing calendar for tenant {tenant_id}: {e}")
        return await _record_failure(tenant_id, result, f"Unexpected error: {e}", needs_reauth=False)

    result.status = "partial" if result.errors else "success"

    await store.create_sync_log(
        tenant_id,
        action="sync",
        status=result.status,
        pushed=result.pushed,
        pulled=result.pulled,
        deleted=result.deleted,
        errors=result.errors,
    )
    await store.update_connection(
        tenant_id,
        last_sync_at=datetime.now(timezone.utc),
        needs_reauth=False,
        consecutive_failures=0,
        last_error=result.errors[0] if result.errors else None,
    )

    logger.info(
        f"Synced tenant {tenant_id}: {result.pushed} pushed, {result.pulled} pulled, "
        f"{result.deleted} deleted, {len(result.errors)} errors"
    )
    return result


async def _record_failure(
    tenant_id: str,
    result: SyncResult,
    error: str,
    needs_reauth: bool,
) -> SyncResult:
    result.success = False
    result.status = "failure"
    result.needs_reauth = needs_reauth
    result.errors.append(error)

    await store.create_sync_log(
        tenant_id,
        action="sync",
        status="failure",
        pushed=result.pushed,
        pulled=result.pulled,
        deleted=result.deleted,
        errors=result.errors,
    )
    await store.record_connection_failure(tenant_id, error, needs_reauth)
    return result


async def _run_phases(tenant_id: str, connection: dict, result: SyncResult) -> None:
    settings = get_settings()
    provider = connection["provider"]
    calendar_id = connection["calendar_id"]

    # Fail fast before touching anything if credentials are unusable
    tokens = await get_valid_tokens(tenant_id, provider)
    if not tokens.success:
        raise SyncAborted(tokens.error or "Could not obtain credentials", tokens.needs_reauth)

    client = GoogleCalendarClient(tenant_id, provider)
    events = await store.get_events_by_tenant(tenant_id, include_deleted=True)
    previously_synced = [
        event for event in events
        if event.sync_status == SyncStatus.SYNCED
        and event.foreign_event_id
        and not event.is_marked_deleted
    ]

    await _push_phase(tenant_id, client, calendar_id, events, result)

    now = datetime.now(timezone.utc)
    time_min = now - timedelta(days=settings.sync_window_past_days)
    time_max = now + timedelta(days=settings.sync_window_future_days)
    seen = await _pull_phase(tenant_id, client, calendar_id, time_min, time_max, result)

    await _delete_phase(tenant_id, client, calendar_id, events, result)

    if seen is not None:
        await _reconcile_remote_deletions(
            tenant_id, client, calendar_id, previously_synced, seen, time_min, time_max, result
        )


async def _push_phase(
    tenant_id: str,
    client: GoogleCalendarClient,
    calendar_id: str,
    events: list[CalendarEvent],
    result: SyncResult,
) -> None:
    time_zone = get_settings().calendar_time_zone

    for event in events:
        if event.is_marked_deleted or event.sync_status == SyncStatus.SYNCED:
            continue

        body = build_event_body(event, time_zone)

        if event.foreign_event_id is None:
            if await _push_new(tenant_id, client, calendar_id, event, body, result):
                result.pushed += 1
            continue

        update = await client.update_event(calendar_id, event.foreign_event_id, body)
        _raise_if_reauth(update)

        if update.is_missing:
            # Remote copy is gone but the local edit wins: create it again
            logger.info(
                f"Remote event {event.foreign_event_id} for {event.id} is gone, re-creating"
            )
            if await _push_new(
                tenant_id, client, calendar_id, event, body, result,
                expected_foreign_id=event.foreign_event_id,
            ):
                result.pushed += 1
            continue

        if not update.success:
            result.errors.append(f"{event.id}: {update.error}")
            continue

        await store.mark_synced(tenant_id, event.id, event.revision)
        result.pushed += 1


async def _push_new(
    tenant_id: str,
    client: GoogleCalendarClient,
    calendar_id: str,
    event: CalendarEvent,
    body: dict,
    result: SyncResult,
    expected_foreign_id: Optional[str] = None,
) -> bool:
    """Create the remote copy of an event and claim it. Returns True if claimed."""
    created = await client.create_event(calendar_id, body)
    _raise_if_reauth(created)
    if not created.success:
        result.errors.append(f"{event.id}: {created.error}")
        return False

    foreign_event_id = created.data.id
    claimed = await store.assign_foreign_id(
        tenant_id,
        event.id,
        foreign_event_id,
        calendar_id,
        event.revision,
        expected_foreign_id=expected_foreign_id,
    )
    if claimed:
        return True

    # Another run pushed this event first, or it was deleted meanwhile
    logger.warning(
        f"Event {event.id} was claimed concurrently, removing duplicate {foreign_event_id}"
    )
    cleanup = await client.delete_event(calendar_id, foreign_event_id)
    if not cleanup.success:
        logger.warning(f"Could not remove duplicate remote event {foreign_event_id}: {cleanup.error}")
    return False


async def _pull_phase(
    tenant_id: str,
    client: GoogleCalendarClient,
    calendar_id: str,
    time_min: datetime,
    time_max: datetime,
    result: SyncResult,
) -> Optional[set[str]]:
    """
    Apply remote additions and edits.

    Returns the set of remote ids seen, or None if the listing is incomplete
    and must not be used to infer remote deletions.
    """
    max_results = get_settings().sync_max_results
    listing = await client.list_events(calendar_id, time_min, time_max, max_results=max_results)
    _raise_if_reauth(listing)
    if not listing.success:
        result.errors.append(f"{calendar_id}: {listing.error}")
        return None

    seen: set[str] = set()
    for remote in listing.data:
        if remote.is_cancelled:
            continue
        seen.add(remote.id)

        try:
            fields = remote.to_event_fields()
        except ValueError as e:
            result.errors.append(f"{remote.id}: {e}")
            continue

        local = await store.get_event_by_foreign_id(tenant_id, remote.id)

        if local is None:
            created = await store.insert_remote_event(tenant_id, calendar_id, remote.id, fields)
            if created:
                result.pulled += 1
            continue

        if local.sync_status != SyncStatus.SYNCED or local.is_marked_deleted:
            # Local changes not pushed yet win
            continue

        if local.content() != remote.content():
            if await store.apply_remote_content(tenant_id, local.id, fields, local.revision):
                result.pulled += 1

    if len(listing.data) >= max_results:
        logger.warning(
            f"Remote listing for tenant {tenant_id} hit {max_results} events, "
            "skipping remote deletion detection"
        )
        return None

    return seen


async def _delete_phase(
    tenant_id: str,
    client: GoogleCalendarClient,
    calendar_id: str,
    events: list[CalendarEvent],
    result: SyncResult,
) -> None:
    """Send tenant deletions to the provider, then drop the local rows."""
    for event in events:
        if not event.is_marked_deleted:
            continue

        if event.foreign_event_id:
            removed = await client.delete_event(
                event.foreign_calendar_id or calendar_id, event.foreign_event_id
            )
            _raise_if_reauth(removed)
            if not removed.success:
                result.errors.append(f"{event.id}: {removed.error}")
                continue

        if await store.delete_event(tenant_id, event.id):
            result.deleted += 1


async def _reconcile_remote_deletions(
    tenant_id: str,
    client: GoogleCalendarClient,
    calendar_id: str,
    previously_synced: list[CalendarEvent],
    seen: set[str],
    time_min: datetime,
    time_max: datetime,
    result: SyncResult,
) -> None:
    """
    Remove synced events whose remote copy no longer exists.

    Absence from the listing only makes an event a candidate. Each candidate
    is read back, and the row is deleted only when the provider reports it
    gone or cancelled. An event that was moved out of the window remotely is
    updated instead.
    """
    for event in previously_synced:
        if event.foreign_event_id in seen:
            continue
        if not time_min <= as_utc(event.start_time) <= time_max:
            # Outside the listing window, absence proves nothing
            continue

        remote = await client.get_event(
            event.foreign_calendar_id or calendar_id, event.foreign_event_id
        )
        _raise_if_reauth(remote)
        if remote.success and not remote.data.is_cancelled:
            try:
                fields = remote.data.to_event_fields()
            except ValueError as e:
                result.errors.append(f"{event.id}: {e}")
                continue
            if event.content() != remote.data.content():
                if await store.apply_remote_content(tenant_id, event.id, fields, event.revision):
                    logger.info(f"Event {event.id} was moved out of the sync window remotely")
                    result.pulled += 1
            continue
        if not remote.success and not remote.is_missing:
            result.errors.append(f"{event.id}: {remote.error}")
            continue

        if await store.delete_event_if_synced(tenant_id, event.id, event.foreign_event_id):
            logger.info(f"Event {event.id} was deleted remotely, removing it")
            result.deleted += 1


async def trigger_sync_for_all_tenants() -> dict[str, SyncResult]:
    """Sync every tenant with an enabled connection, one after another."""
    results = {}
    for tenant_id in await store.list_sync_enabled_tenants():
        try:
            results[tenant_id] = await sync_calendar(tenant_id)
        except Exception as e:
            logger.exception(f"Error syncing tenant {tenant_id}: {e}")
    return results


async def disconnect_calendar(tenant_id: str, delete_remote_calendar: bool = False) -> bool:
    """
    Remove a tenant's connection and stored credentials.

    Local events are kept and go back to ``local``. With
    ``delete_remote_calendar`` the dedicated calendar is removed from the
    provider first, best-effort. Returns False if the tenant had no connection.
    """
    connection = await store.get_connection(tenant_id)
    if not connection:
        return False

    lock = await _get_tenant_lock(tenant_id)
    async with lock:
        if delete_remote_calendar:
            client = GoogleCalendarClient(tenant_id, connection["provider"])
            removed = await client.delete_calendar(connection["calendar_id"])
            if not removed.success:
                logger.warning(
                    f"Could not delete calendar {connection['calendar_id']} "
                    f"for tenant {tenant_id}: {removed.error}"
                )

        reset = await store.reset_events_to_local(tenant_id)
        await store.delete_connection(tenant_id)
        await disconnect_provider(tenant_id, connection["provider"])

    logger.info(f"Disconnected calendar for tenant {tenant_id}, {reset} events kept locally")
    return True
