"""Google OAuth helpers."""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from aisle_sync.config import get_settings

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

# Required scopes
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


def get_oauth_client_credentials() -> tuple[str, str]:
    """Get the configured Google OAuth client id and secret."""
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("Google OAuth client is not configured")
    return settings.google_client_id, settings.google_client_secret


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    state: str,
    scopes: Optional[list[str]] = None,
    login_hint: Optional[str] = None,
) -> str:
    """Build Google OAuth authorization URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes or CALENDAR_SCOPES),
        # Offline access plus forced consent so Google always issues a refresh token
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }

    if login_hint:
        params["login_hint"] = login_hint

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(code: str, redirect_uri: str) -> dict:
    """Exchange authorization code for tokens."""
    client_id, client_secret = get_oauth_client_credentials()

    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise ValueError(f"Token exchange failed: {response.status_code}")

        tokens = response.json()

    if not tokens.get("access_token") or not tokens.get("refresh_token"):
        raise ValueError("Google did not return both an access token and a refresh token")

    return tokens


async def get_user_info(access_token: str) -> dict:
    """Get user info from Google."""
    async with httpx.AsyncClient() as client:
        response = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if response.status_code != 200:
            logger.error(f"Failed to get user info: {response.text}")
            raise ValueError(f"Failed to get user info: {response.status_code}")

        return response.json()
