"""Project due-dated planner tasks into calendar events."""

import logging
from datetime import date, datetime

import aiosqlite

from aisle_sync.sync import store
from aisle_sync.sync.models import EventCategory, ProjectionResult
from aisle_sync.sync.schemas import as_utc, day_start

logger = logging.getLogger(__name__)

DEADLINE_COLOR = "#EF4444"


def parse_due_date(value: str) -> date:
    """
    Parse a task due date to a calendar day.

    Accepts ``YYYY-MM-DD`` or a full ISO timestamp (taken in UTC).

    Raises:
        ValueError: if the value is not a date
    """
    value = value.strip()
    if len(value) == 10:
        return date.fromisoformat(value)
    return as_utc(datetime.fromisoformat(value)).date()


async def project_tasks_to_events(tenant_id: str) -> ProjectionResult:
    """
    Create or refresh one all-day deadline event per due-dated task.

    Events are matched to tasks by task id. Running it twice without task
    changes does nothing the second time.
    """
    result = ProjectionResult()
    tasks = await store.get_due_dated_tasks(tenant_id)

    for task in tasks:
        task_id = task["id"]
        try:
            due_day = parse_due_date(task["due_date"])
        except ValueError:
            result.errors.append(f"{task_id}: invalid due date {task['due_date']!r}")
            continue

        title = task["title"]
        description = task.get("description") or None

        try:
            existing = await store.get_event_by_task_id(tenant_id, task_id)

            if existing is None:
                await store.create_event(
                    tenant_id=tenant_id,
                    title=title,
                    description=description,
                    start_time=day_start(due_day),
                    all_day=True,
                    category=EventCategory.DEADLINE,
                    color=DEADLINE_COLOR,
                    task_id=task_id,
                )
                result.created += 1
                continue

            if existing.is_marked_deleted:
                # Tenant removed the deadline from the calendar
                continue

            if (
                existing.title != title
                or as_utc(existing.start_time).date() != due_day
                or existing.description != description
            ):
                await store.edit_event(tenant_id, existing.id, {
                    "title": title,
                    "description": description,
                    "start_time": day_start(due_day),
                    "end_time": None,
                    "all_day": True,
                })
                result.updated += 1

        except aiosqlite.Error as e:
            logger.exception(f"Error projecting task {task_id} for tenant {tenant_id}")
            result.errors.append(f"{task_id}: {e}")

    if result.created or result.updated:
        logger.info(
            f"Projected tasks for tenant {tenant_id}: "
            f"{result.created} created, {result.updated} updated"
        )

    return result
