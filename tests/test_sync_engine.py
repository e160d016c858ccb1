"""Tests for the three-phase sync engine against an in-memory calendar."""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone

import pytest
import pytest_asyncio

from aisle_sync.auth.tokens import OAuthTokens, TokenResult
from aisle_sync.sync import store
from aisle_sync.sync.models import CalendarResult, EventCategory, SyncStatus
from aisle_sync.sync.schemas import ProviderEvent

TODAY = datetime.now(timezone.utc).date()
SOON = datetime.combine(TODAY + timedelta(days=30), time.min, tzinfo=timezone.utc)
LATER = datetime.combine(TODAY + timedelta(days=60), time(14, 0), tzinfo=timezone.utc)


class FakeGoogle:
    """Provider calendar state shared by every client created during a test."""

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_next: dict[str, list[CalendarResult]] = {}
        self.deleted_calendars: list[str] = []
        self.token_result = TokenResult.ok(OAuthTokens(access_token="access-1"))
        self.list_delay = 0.0
        # Ids left out of listings, as if outside the sync window
        self.unlisted: set[str] = set()
        self._counter = 0

    def new_id(self) -> str:
        self._counter += 1
        return f"gcal-{self._counter}"

    def add_remote(self, **body) -> str:
        event_id = body.pop("id", None) or self.new_id()
        self.events[event_id] = {"id": event_id, "status": "confirmed", **body}
        return event_id

    def take_failure(self, method: str):
        queue = self.fail_next.get(method)
        return queue.pop(0) if queue else None


class FakeCalendarClient:
    def __init__(self, google: FakeGoogle):
        self.google = google

    async def create_event(self, calendar_id, event_body):
        self.google.calls.append(("create", calendar_id, event_body["summary"]))
        failure = self.google.take_failure("create")
        if failure:
            return failure
        event_id = self.google.add_remote(**event_body)
        return CalendarResult.ok(ProviderEvent.model_validate(self.google.events[event_id]))

    async def update_event(self, calendar_id, event_id, event_body):
        self.google.calls.append(("update", calendar_id, event_id))
        failure = self.google.take_failure("update")
        if failure:
            return failure
        if event_id not in self.google.events:
            return CalendarResult.fail("Not Found", status_code=404)
        self.google.events[event_id].update(event_body)
        return CalendarResult.ok(ProviderEvent.model_validate(self.google.events[event_id]))

    async def get_event(self, calendar_id, event_id):
        self.google.calls.append(("get", calendar_id, event_id))
        failure = self.google.take_failure("get")
        if failure:
            return failure
        if event_id not in self.google.events:
            return CalendarResult.fail("Not Found", status_code=404)
        return CalendarResult.ok(ProviderEvent.model_validate(self.google.events[event_id]))

    async def delete_event(self, calendar_id, event_id):
        self.google.calls.append(("delete", calendar_id, event_id))
        failure = self.google.take_failure("delete")
        if failure:
            return failure
        self.google.events.pop(event_id, None)
        return CalendarResult.ok()

    async def list_events(self, calendar_id, time_min, time_max, max_results=None):
        self.google.calls.append(("list", calendar_id))
        if self.google.list_delay:
            await asyncio.sleep(self.google.list_delay)
        failure = self.google.take_failure("list")
        if failure:
            return failure
        return CalendarResult.ok(
            [
                ProviderEvent.model_validate(record)
                for event_id, record in self.google.events.items()
                if event_id not in self.google.unlisted
            ]
        )

    async def delete_calendar(self, calendar_id):
        self.google.calls.append(("delete_calendar", calendar_id))
        failure = self.google.take_failure("delete_calendar")
        if failure:
            return failure
        self.google.deleted_calendars.append(calendar_id)
        return CalendarResult.ok()


@pytest.fixture
def google(monkeypatch):
    fake = FakeGoogle()

    def make_client(tenant_id, provider="google"):
        return FakeCalendarClient(fake)

    async def fake_get_valid_tokens(tenant_id, provider="google", **_kwargs):
        return fake.token_result

    monkeypatch.setattr("aisle_sync.sync.engine.GoogleCalendarClient", make_client)
    monkeypatch.setattr("aisle_sync.sync.engine.get_valid_tokens", fake_get_valid_tokens)
    return fake


@pytest_asyncio.fixture
async def connected(test_db):
    return await store.create_connection(
        tenant_id="tenant-1",
        calendar_id="cal-1",
        calendar_name="Sam's Wedding",
        account_email="sam@example.com",
    )


async def _synced_event(google: FakeGoogle, title: str = "Cake tasting", start=SOON, all_day=True):
    """Create an event and run a sync so it has a remote copy."""
    from aisle_sync.sync.engine import sync_calendar

    event = await store.create_event(tenant_id="tenant-1", title=title, start_time=start, all_day=all_day)
    result = await sync_calendar("tenant-1")
    assert result.status == "success"
    return await store.get_event_by_id("tenant-1", event.id)


@pytest.mark.asyncio
async def test_new_local_event_is_pushed_and_second_run_is_a_no_op(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await store.create_event(
        tenant_id="tenant-1", title="Cake tasting", start_time=SOON, all_day=True
    )

    first = await sync_calendar("tenant-1")

    assert first.success is True
    assert first.status == "success"
    assert (first.pushed, first.pulled, first.deleted) == (1, 0, 0)
    stored = await store.get_event_by_id("tenant-1", event.id)
    assert stored.sync_status == SyncStatus.SYNCED
    assert stored.foreign_event_id in google.events
    remote = google.events[stored.foreign_event_id]
    assert remote["summary"] == "Cake tasting"
    assert remote["start"] == {"date": SOON.date().isoformat()}

    second = await sync_calendar("tenant-1")

    assert second.status == "success"
    assert (second.pushed, second.pulled, second.deleted) == (0, 0, 0)
    assert len(google.events) == 1
    assert [entry["status"] for entry in await store.get_sync_log("tenant-1")] == ["success", "success"]

    connection = await store.get_connection("tenant-1")
    assert connection["last_sync_at"] is not None
    assert connection["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_timed_event_without_end_is_stable(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    await _synced_event(google, title="Venue walkthrough", start=LATER, all_day=False)

    again = await sync_calendar("tenant-1")

    assert (again.pushed, again.pulled, again.deleted) == (0, 0, 0)


@pytest.mark.asyncio
async def test_remote_deletion_removes_synced_event(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    del google.events[event.foreign_event_id]

    result = await sync_calendar("tenant-1")

    assert result.status == "success"
    assert result.deleted == 1
    assert await store.get_event_by_id("tenant-1", event.id) is None


@pytest.mark.asyncio
async def test_remote_absence_outside_window_proves_nothing(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    long_ago = SOON - timedelta(days=1000)
    event = await _synced_event(google, title="Engagement party", start=long_ago)
    google.events.clear()

    result = await sync_calendar("tenant-1")

    assert result.deleted == 0
    assert await store.get_event_by_id("tenant-1", event.id) is not None


@pytest.mark.asyncio
async def test_rejected_credentials_abort_run_and_flag_connection(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    await store.create_event(tenant_id="tenant-1", title="Cake tasting", start_time=SOON, all_day=True)
    google.token_result = TokenResult.fail("Token refresh rejected (400)", needs_reauth=True)

    result = await sync_calendar("tenant-1")

    assert result.success is False
    assert result.status == "failure"
    assert result.needs_reauth is True
    assert (result.pushed, result.pulled, result.deleted) == (0, 0, 0)
    assert google.calls == []

    log = await store.get_sync_log("tenant-1")
    assert log[0]["status"] == "failure"
    assert log[0]["errors"] == ["Token refresh rejected (400)"]

    connection = await store.get_connection("tenant-1")
    assert connection["needs_reauth"]
    assert connection["consecutive_failures"] == 1
    assert connection["last_error"] == "Token refresh rejected (400)"
    assert await store.list_sync_enabled_tenants() == []


@pytest.mark.asyncio
async def test_reauth_reported_mid_run_aborts(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    await store.edit_event("tenant-1", event.id, {"title": "Cake tasting (moved)"})
    google.fail_next["update"] = [CalendarResult.fail("Unauthorized", needs_reauth=True, status_code=401)]

    result = await sync_calendar("tenant-1")

    assert result.status == "failure"
    assert result.needs_reauth is True
    # Nothing after the rejected call
    assert google.calls[-1] == ("update", "cal-1", event.foreign_event_id)
    assert (await store.get_event_by_id("tenant-1", event.id)).sync_status == SyncStatus.PENDING


@pytest.mark.asyncio
async def test_preconditions_fail_without_log_entry(google, test_db):
    from aisle_sync.sync.engine import sync_calendar

    missing = await sync_calendar("tenant-1")
    assert missing.success is False
    assert missing.status == "precondition_failed"
    assert missing.errors == ["No calendar connected"]

    await store.create_connection(tenant_id="tenant-1", calendar_id="cal-1", calendar_name="Wedding")
    await store.update_connection("tenant-1", sync_enabled=False)

    disabled = await sync_calendar("tenant-1")
    assert disabled.status == "precondition_failed"
    assert disabled.errors == ["Calendar sync is disabled"]

    assert await store.get_sync_log("tenant-1") == []
    assert google.calls == []


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(google, connected):
    from aisle_sync.sync.engine import _get_tenant_lock, sync_calendar

    lock = await _get_tenant_lock("tenant-1")
    async with lock:
        result = await sync_calendar("tenant-1")

    assert result.success is False
    assert result.status == "skipped"
    assert google.calls == []


@pytest.mark.asyncio
async def test_local_edit_wins_over_remote_edit(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    await store.edit_event("tenant-1", event.id, {"title": "Cake tasting (local)"})
    google.events[event.foreign_event_id]["summary"] = "Cake tasting (remote)"

    result = await sync_calendar("tenant-1")

    assert result.pushed == 1
    assert result.pulled == 0
    stored = await store.get_event_by_id("tenant-1", event.id)
    assert stored.title == "Cake tasting (local)"
    assert stored.sync_status == SyncStatus.SYNCED
    assert google.events[event.foreign_event_id]["summary"] == "Cake tasting (local)"


@pytest.mark.asyncio
async def test_remote_additions_and_edits_are_pulled(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    foreign_id = google.add_remote(
        summary="Florist call",
        location="Phone",
        start={"dateTime": LATER.isoformat()},
        end={"dateTime": (LATER + timedelta(minutes=30)).isoformat()},
    )
    google.add_remote(id="gcal-cancelled", status="cancelled")

    added = await sync_calendar("tenant-1")

    assert added.pulled == 1
    local = await store.get_event_by_foreign_id("tenant-1", foreign_id)
    assert local.title == "Florist call"
    assert local.location == "Phone"
    assert local.end_time == LATER + timedelta(minutes=30)
    assert local.sync_status == SyncStatus.SYNCED
    assert await store.get_event_by_foreign_id("tenant-1", "gcal-cancelled") is None

    google.events[foreign_id]["summary"] = "Florist meeting"

    edited = await sync_calendar("tenant-1")

    assert edited.pulled == 1
    assert (await store.get_event_by_id("tenant-1", local.id)).title == "Florist meeting"


@pytest.mark.asyncio
async def test_tenant_deletion_is_sent_to_provider(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    await store.mark_event_deleted("tenant-1", event.id)

    result = await sync_calendar("tenant-1")

    assert result.deleted == 1
    assert result.pushed == 0
    assert event.foreign_event_id not in google.events
    assert ("delete", "cal-1", event.foreign_event_id) in google.calls
    assert await store.get_event_by_id("tenant-1", event.id) is None


@pytest.mark.asyncio
async def test_failed_remote_delete_keeps_mark_for_retry(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    await store.mark_event_deleted("tenant-1", event.id)
    google.fail_next["delete"] = [CalendarResult.fail("Backend Error", status_code=503)]

    failed = await sync_calendar("tenant-1")

    assert failed.status == "partial"
    assert failed.deleted == 0
    assert (await store.get_event_by_id("tenant-1", event.id)).is_marked_deleted

    retried = await sync_calendar("tenant-1")

    assert retried.deleted == 1
    assert await store.get_event_by_id("tenant-1", event.id) is None


@pytest.mark.asyncio
async def test_pending_event_missing_remotely_is_recreated(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    del google.events[event.foreign_event_id]
    await store.edit_event("tenant-1", event.id, {"location": "Bakery"})

    result = await sync_calendar("tenant-1")

    assert result.status == "success"
    assert result.pushed == 1
    assert result.deleted == 0
    stored = await store.get_event_by_id("tenant-1", event.id)
    assert stored.foreign_event_id != event.foreign_event_id
    assert stored.sync_status == SyncStatus.SYNCED
    assert google.events[stored.foreign_event_id]["location"] == "Bakery"


@pytest.mark.asyncio
async def test_listing_failure_skips_deletion_inference(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    del google.events[event.foreign_event_id]
    google.fail_next["list"] = [CalendarResult.fail("Backend Error", status_code=503)]

    result = await sync_calendar("tenant-1")

    assert result.success is True
    assert result.status == "partial"
    assert result.errors == ["cal-1: Backend Error"]
    assert await store.get_event_by_id("tenant-1", event.id) is not None


@pytest.mark.asyncio
async def test_single_event_failure_makes_run_partial(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    broken = await store.create_event(tenant_id="tenant-1", title="Broken", start_time=SOON, all_day=True)
    fine = await store.create_event(tenant_id="tenant-1", title="Fine", start_time=LATER)
    google.fail_next["create"] = [CalendarResult.fail("Bad Request", status_code=400)]

    result = await sync_calendar("tenant-1")

    assert result.success is True
    assert result.status == "partial"
    assert result.pushed == 1
    assert result.errors == [f"{broken.id}: Bad Request"]
    assert (await store.get_event_by_id("tenant-1", broken.id)).sync_status == SyncStatus.LOCAL
    assert (await store.get_event_by_id("tenant-1", fine.id)).sync_status == SyncStatus.SYNCED

    connection = await store.get_connection("tenant-1")
    assert connection["last_error"] == f"{broken.id}: Bad Request"
    assert connection["consecutive_failures"] == 0

    retried = await sync_calendar("tenant-1")
    assert retried.status == "success"
    assert retried.pushed == 1


@pytest.mark.asyncio
async def test_run_timeout_is_recorded(google, connected, monkeypatch):
    from aisle_sync.config import get_settings
    from aisle_sync.sync.engine import sync_calendar

    monkeypatch.setattr(get_settings(), "sync_timeout_seconds", 0.05)
    google.list_delay = 1.0

    result = await sync_calendar("tenant-1")

    assert result.status == "failure"
    assert result.needs_reauth is False
    assert result.errors == ["Sync timed out after 0.05s"]
    connection = await store.get_connection("tenant-1")
    assert not connection["needs_reauth"]
    assert connection["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_trigger_sync_for_all_tenants_skips_disabled(google, connected):
    from aisle_sync.sync.engine import trigger_sync_for_all_tenants

    await store.create_connection(tenant_id="tenant-2", calendar_id="cal-2", calendar_name="Other")
    await store.update_connection("tenant-2", sync_enabled=False)

    results = await trigger_sync_for_all_tenants()

    assert list(results) == ["tenant-1"]
    assert results["tenant-1"].status == "success"


@pytest.mark.asyncio
async def test_disconnect_keeps_events_locally(google, connected):
    from aisle_sync.auth.tokens import get_oauth_account, store_oauth_tokens
    from aisle_sync.sync.engine import disconnect_calendar

    await store_oauth_tokens("tenant-1", "google", "access", "refresh", expires_in=3600)
    event = await _synced_event(google)

    assert await disconnect_calendar("tenant-1", delete_remote_calendar=True) is True

    assert google.deleted_calendars == ["cal-1"]
    stored = await store.get_event_by_id("tenant-1", event.id)
    assert stored.sync_status == SyncStatus.LOCAL
    assert stored.foreign_event_id is None
    assert await store.get_connection("tenant-1") is None
    assert await get_oauth_account("tenant-1", "google") is None
    assert await disconnect_calendar("tenant-1") is False


@pytest.mark.asyncio
async def test_disconnect_survives_remote_calendar_failure(google, connected):
    from aisle_sync.sync.engine import disconnect_calendar

    google.fail_next["delete_calendar"] = [CalendarResult.fail("Forbidden", status_code=403)]

    assert await disconnect_calendar("tenant-1", delete_remote_calendar=True) is True
    assert await store.get_connection("tenant-1") is None


@pytest.mark.asyncio
async def test_event_moved_out_of_window_remotely_is_kept(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    await store.create_event(
        tenant_id="tenant-1",
        title="Send invitations",
        start_time=SOON,
        all_day=True,
        category=EventCategory.DEADLINE,
        task_id="task-7",
    )
    await sync_calendar("tenant-1")
    event = await store.get_event_by_task_id("tenant-1", "task-7")

    far_day = TODAY + timedelta(days=900)
    google.events[event.foreign_event_id]["start"] = {"date": far_day.isoformat()}
    google.events[event.foreign_event_id]["end"] = {"date": (far_day + timedelta(days=1)).isoformat()}
    google.unlisted.add(event.foreign_event_id)

    result = await sync_calendar("tenant-1")

    assert result.status == "success"
    assert result.deleted == 0
    assert result.pulled == 1
    assert ("get", "cal-1", event.foreign_event_id) in google.calls
    stored = await store.get_event_by_id("tenant-1", event.id)
    assert stored.start_time == datetime.combine(far_day, time.min, tzinfo=timezone.utc)
    assert stored.category == EventCategory.DEADLINE
    assert stored.task_id == "task-7"
    assert stored.sync_status == SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_cancelled_remote_event_is_removed(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    google.events[event.foreign_event_id]["status"] = "cancelled"
    google.unlisted.add(event.foreign_event_id)

    result = await sync_calendar("tenant-1")

    assert result.deleted == 1
    assert await store.get_event_by_id("tenant-1", event.id) is None


@pytest.mark.asyncio
async def test_unconfirmed_remote_absence_keeps_event(google, connected):
    from aisle_sync.sync.engine import sync_calendar

    event = await _synced_event(google)
    google.unlisted.add(event.foreign_event_id)
    google.fail_next["get"] = [CalendarResult.fail("Calendar API error during get_event: 503", status_code=503)]

    result = await sync_calendar("tenant-1")

    assert result.status == "partial"
    assert result.deleted == 0
    assert await store.get_event_by_id("tenant-1", event.id) is not None
