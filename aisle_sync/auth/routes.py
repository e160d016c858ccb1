"""Google Calendar connect routes."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urljoin

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse

from aisle_sync.auth.google import (
    CALENDAR_SCOPES,
    build_auth_url,
    exchange_code_for_tokens,
    get_oauth_client_credentials,
    get_user_info,
)
from aisle_sync.auth.session import SessionData, get_current_session, get_current_session_optional
from aisle_sync.auth.tokens import store_oauth_tokens
from aisle_sync.config import get_settings
from aisle_sync.database import get_database
from aisle_sync.sync import store
from aisle_sync.sync.google_calendar import GoogleCalendarClient

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

PLANNER_URL = "/planner"
DEDICATED_CALENDAR_DESCRIPTION = "Wedding planning calendar created by Aisle"


async def store_oauth_state(
    state: str,
    tenant_id: str,
    user_id: Optional[str] = None,
    ttl_minutes: int = 10,
) -> None:
    """Store OAuth state in database with TTL."""
    db = await get_database()
    now = datetime.now(timezone.utc)
    await db.execute(
        """INSERT INTO oauth_states (state, tenant_id, user_id, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (
            state, tenant_id, user_id,
            now.isoformat(), (now + timedelta(minutes=ttl_minutes)).isoformat(),
        )
    )
    await db.commit()


async def get_oauth_state(state: str) -> Optional[dict]:
    """Retrieve and delete OAuth state from database."""
    db = await get_database()

    # Get state if not expired
    cursor = await db.execute(
        """SELECT tenant_id, user_id FROM oauth_states
           WHERE state = ? AND expires_at > ?""",
        (state, datetime.now(timezone.utc).isoformat())
    )
    row = await cursor.fetchone()

    if row:
        # Delete the state (one-time use)
        await db.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
        await db.commit()
        return {"tenant_id": row["tenant_id"], "user_id": row["user_id"]}
    return None


def get_redirect_uri(path: str) -> str:
    """Build absolute redirect URI."""
    settings = get_settings()
    return urljoin(settings.public_url, path)


def dedicated_calendar_name(display_name: Optional[str]) -> str:
    settings = get_settings()
    if display_name:
        return f"{display_name}{settings.dedicated_calendar_suffix}"
    return settings.dedicated_calendar_default_name


def _planner_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{PLANNER_URL}?{query}", status_code=status.HTTP_302_FOUND)


@router.get("/google/connect")
async def connect_google(session: SessionData = Depends(get_current_session)):
    """Initiate OAuth for connecting the tenant's Google Calendar."""
    try:
        client_id, _ = get_oauth_client_credentials()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OAuth credentials not configured"
        )

    # Generate state token
    state = secrets.token_urlsafe(32)
    await store_oauth_state(state, session.tenant_id, user_id=session.user_id)

    auth_url = build_auth_url(
        client_id=client_id,
        redirect_uri=get_redirect_uri("/auth/google/callback"),
        scopes=CALENDAR_SCOPES,
        state=state,
    )

    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """Handle OAuth callback: store credentials and create the dedicated calendar."""
    if error:
        logger.error(f"Google OAuth error: {error}")
        return _planner_redirect("error=google_auth_failed")

    if not code or not state:
        return _planner_redirect("error=missing_code")

    state_data = await get_oauth_state(state)
    if not state_data:
        return _planner_redirect("error=invalid_state")

    session = await get_current_session_optional(request)
    if not session or session.tenant_id != state_data["tenant_id"]:
        return _planner_redirect("error=session_mismatch")

    tenant_id = session.tenant_id
    existing = await store.get_connection(tenant_id)
    if existing and not existing["needs_reauth"]:
        return _planner_redirect("message=already_connected")

    try:
        tokens = await exchange_code_for_tokens(code, get_redirect_uri("/auth/google/callback"))

        # The connecting account's email is informational only
        account_email = None
        try:
            user_info = await get_user_info(tokens["access_token"])
            account_email = user_info.get("email")
        except (ValueError, httpx.HTTPError) as e:
            logger.warning(f"Could not fetch Google account email for tenant {tenant_id}: {e}")

        await store_oauth_tokens(
            tenant_id=tenant_id,
            provider="google",
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_in=tokens.get("expires_in"),
            scope=tokens.get("scope"),
            user_id=session.user_id,
            account_email=account_email,
        )

        if existing:
            # Reauthorized: keep the calendar and clear the failure state
            await store.update_connection(
                tenant_id,
                needs_reauth=False,
                consecutive_failures=0,
                last_error=None,
                account_email=account_email or existing["account_email"],
            )
            logger.info(f"Tenant {tenant_id} reauthorized Google Calendar")
            return _planner_redirect("message=google_reconnected")

        calendar_name = dedicated_calendar_name(session.display_name)
        client = GoogleCalendarClient(tenant_id)
        created = await client.create_dedicated_calendar(
            calendar_name,
            description=DEDICATED_CALENDAR_DESCRIPTION,
        )
        if not created.success:
            logger.error(f"Could not create dedicated calendar for tenant {tenant_id}: {created.error}")
            return _planner_redirect("error=connection_failed")

        await store.create_connection(
            tenant_id=tenant_id,
            calendar_id=created.data.id,
            calendar_name=calendar_name,
            provider="google",
            account_email=account_email,
            connected_by=session.user_id,
        )
        logger.info(f"Connected Google Calendar {created.data.id} for tenant {tenant_id}")

        return _planner_redirect("message=google_connected")

    except Exception as e:
        logger.exception(f"Google callback error: {e}")
        return _planner_redirect("error=connection_failed")
