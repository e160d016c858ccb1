"""Sync engine module."""

from aisle_sync.sync.engine import (
    sync_calendar,
    trigger_sync_for_all_tenants,
    disconnect_calendar,
)

__all__ = [
    "sync_calendar",
    "trigger_sync_for_all_tenants",
    "disconnect_calendar",
]
