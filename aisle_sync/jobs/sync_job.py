"""Periodic sync and token refresh jobs."""

import logging
from datetime import datetime, timedelta, timezone

import aiosqlite

from aisle_sync.auth.tokens import REFRESH_BUFFER, get_valid_tokens
from aisle_sync.config import get_settings
from aisle_sync.database import get_database
from aisle_sync.sync import store

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> None:
    """Run periodic sync for all tenants with an enabled connection."""
    # Acquire lock
    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return

    try:
        from aisle_sync.sync.engine import trigger_sync_for_all_tenants

        results = await trigger_sync_for_all_tenants()
        failed = [tenant_id for tenant_id, result in results.items() if not result.success]

        logger.info(
            f"Periodic sync completed for {len(results)} tenants"
            + (f", {len(failed)} failed" if failed else "")
        )

    finally:
        await release_job_lock("periodic_sync")


async def refresh_expiring_tokens() -> None:
    """Proactively refresh tokens that would expire before the next run of this job."""
    settings = get_settings()
    db = await get_database()

    window = timedelta(minutes=settings.token_refresh_minutes) + REFRESH_BUFFER
    threshold = (datetime.now(timezone.utc) + window).isoformat()

    cursor = await db.execute(
        """SELECT tenant_id, provider FROM oauth_accounts
           WHERE token_expiry IS NOT NULL AND token_expiry < ?
             AND refresh_token IS NOT NULL""",
        (threshold,)
    )
    expiring = await cursor.fetchall()

    if not expiring:
        return

    logger.info(f"Refreshing {len(expiring)} expiring tokens")

    for account in expiring:
        tenant_id = account["tenant_id"]
        result = await get_valid_tokens(tenant_id, account["provider"], min_validity=window)
        if result.success:
            logger.debug(f"Refreshed token for tenant {tenant_id}")
            continue

        logger.error(f"Failed to refresh token for tenant {tenant_id}: {result.error}")

        # Only a rejected refresh token needs the user; transient errors retry next run
        if result.needs_reauth:
            await store.update_connection(
                tenant_id,
                needs_reauth=True,
                last_error=result.error,
            )


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = datetime.now(timezone.utc)
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    # First, try to clean up stale locks
    await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    await db.commit()

    # Now try to acquire the lock
    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), "worker")
        )
        await db.commit()
        return True
    except aiosqlite.IntegrityError:
        # Lock already held by another process
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
