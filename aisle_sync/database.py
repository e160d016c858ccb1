"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from aisle_sync.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- OAuth credentials, one record per tenant and provider
CREATE TABLE IF NOT EXISTS oauth_accounts (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT,
    provider TEXT NOT NULL,
    provider_account_email TEXT,
    access_token TEXT NOT NULL,
    refresh_token TEXT,
    token_expiry TIMESTAMP,
    scope TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(tenant_id, provider)
);

-- The dedicated provider calendar for each tenant
CREATE TABLE IF NOT EXISTS calendar_connections (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT NOT NULL UNIQUE,
    provider TEXT NOT NULL DEFAULT 'google',
    calendar_id TEXT NOT NULL,
    calendar_name TEXT NOT NULL,
    account_email TEXT,
    sync_enabled BOOLEAN DEFAULT TRUE,
    needs_reauth BOOLEAN DEFAULT FALSE,
    last_sync_at TIMESTAMP,
    last_error TEXT,
    consecutive_failures INTEGER DEFAULT 0,
    connected_by TEXT,
    connected_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Tenant-owned calendar events
CREATE TABLE IF NOT EXISTS calendar_events (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    location TEXT,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP,
    all_day BOOLEAN DEFAULT FALSE,
    category TEXT NOT NULL DEFAULT 'other'
        CHECK (category IN ('vendor', 'deadline', 'appointment', 'milestone', 'personal', 'other')),
    color TEXT,
    vendor_id TEXT,
    task_id TEXT,
    sync_status TEXT NOT NULL DEFAULT 'local'
        CHECK (sync_status IN ('local', 'pending', 'synced')),
    foreign_event_id TEXT,
    foreign_calendar_id TEXT,
    last_synced_at TIMESTAMP,
    deleted_at TIMESTAMP,
    revision INTEGER NOT NULL DEFAULT 0,
    created_by TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    UNIQUE(tenant_id, foreign_event_id),
    UNIQUE(tenant_id, task_id)
);

CREATE INDEX IF NOT EXISTS idx_calendar_events_status
    ON calendar_events(tenant_id, sync_status);

-- Append-only audit of sync runs
CREATE TABLE IF NOT EXISTS calendar_sync_log (
    id INTEGER PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    pushed INTEGER DEFAULT 0,
    pulled INTEGER DEFAULT 0,
    deleted INTEGER DEFAULT 0,
    errors TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_tenant
    ON calendar_sync_log(tenant_id, created_at);

-- Task board output (written by the planner, read here)
CREATE TABLE IF NOT EXISTS planner_tasks (
    id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    due_date TEXT,
    status TEXT,
    PRIMARY KEY (tenant_id, id)
);

-- OAuth state storage for the connect flow
CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_oauth_states_expiry ON oauth_states(expires_at);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")

