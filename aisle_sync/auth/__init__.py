"""Authentication module."""

from aisle_sync.auth.session import (
    create_session_token,
    verify_session_token,
    get_current_session,
    get_current_session_optional,
)

__all__ = [
    "create_session_token",
    "verify_session_token",
    "get_current_session",
    "get_current_session_optional",
]
