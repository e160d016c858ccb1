"""Retention cleanup job."""

import logging
from datetime import datetime, timedelta, timezone

from aisle_sync.config import get_settings
from aisle_sync.database import get_database

logger = logging.getLogger(__name__)


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup.

    - Sync log entries older than ``sync_log_retention_days``
    - Expired OAuth connect states
    - Stale job locks are handled by acquire_job_lock itself
    """
    settings = get_settings()
    db = await get_database()
    now = datetime.now(timezone.utc)

    summary = {
        "old_sync_logs": 0,
        "expired_oauth_states": 0,
    }

    log_cutoff = (now - timedelta(days=settings.sync_log_retention_days)).isoformat()
    cursor = await db.execute(
        "DELETE FROM calendar_sync_log WHERE created_at < ? RETURNING id",
        (log_cutoff,)
    )
    summary["old_sync_logs"] = len(await cursor.fetchall())

    cursor = await db.execute(
        "DELETE FROM oauth_states WHERE expires_at < ? RETURNING state",
        (now.isoformat(),)
    )
    summary["expired_oauth_states"] = len(await cursor.fetchall())

    await db.commit()

    logger.info(f"Retention cleanup completed: {summary}")
    return summary
