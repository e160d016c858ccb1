"""
OAuth token lifecycle.

The only place that reads stored OAuth credentials or talks to a provider's
token endpoint. Callers ask for valid tokens and get back a TokenResult; a
failure carries ``needs_reauth``:

- ``True``: stop calling the provider and prompt the user to reconnect.
- ``False``: the failure is transient and the whole operation can be retried.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from pydantic import BaseModel

from aisle_sync.auth.google import GOOGLE_TOKEN_URL
from aisle_sync.config import get_settings
from aisle_sync.database import get_database

logger = logging.getLogger(__name__)

# Tokens closer than this to their expiry are refreshed before use
REFRESH_BUFFER = timedelta(minutes=5)


class OAuthTokens(BaseModel):
    """Credentials usable for provider API calls."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None


class TokenResult(BaseModel):
    """Either valid tokens or a classified failure."""
    success: bool
    tokens: Optional[OAuthTokens] = None
    error: Optional[str] = None
    needs_reauth: bool = False

    @classmethod
    def ok(cls, tokens: OAuthTokens) -> "TokenResult":
        return cls(success=True, tokens=tokens)

    @classmethod
    def fail(cls, error: str, needs_reauth: bool) -> "TokenResult":
        return cls(success=False, error=error, needs_reauth=needs_reauth)


class TokenRefreshError(Exception):
    """Raised by request_token_refresh when the token endpoint rejects a refresh."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        # 400/401 from the token endpoint means the refresh token itself is bad
        return self.status_code in (400, 401)


def _token_endpoint(provider: str) -> Optional[tuple[str, str, str]]:
    """Token endpoint URL and client credentials for a provider."""
    settings = get_settings()
    if provider == "google":
        return GOOGLE_TOKEN_URL, settings.google_client_id, settings.google_client_secret
    return None


def _parse_expiry(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        expiry = value
    else:
        expiry = datetime.fromisoformat(str(value))
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


def is_token_expired(
    expires_at: Optional[datetime],
    buffer: timedelta = REFRESH_BUFFER,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check whether a token must be refreshed before use.

    An unknown expiry is treated as valid; the provider's 401 is the signal then.
    """
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return expires_at - now < buffer


async def get_oauth_account(tenant_id: str, provider: str) -> Optional[dict]:
    """Get the stored credential record for a tenant and provider."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM oauth_accounts
           WHERE tenant_id = ? AND provider = ?""",
        (tenant_id, provider)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def store_oauth_tokens(
    tenant_id: str,
    provider: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_in: Optional[int] = None,
    scope: Optional[str] = None,
    user_id: Optional[str] = None,
    account_email: Optional[str] = None,
) -> int:
    """Store OAuth tokens from an initial grant, replacing any previous record."""
    db = await get_database()
    now = datetime.now(timezone.utc)

    expiry = None
    if expires_in:
        expiry = (now + timedelta(seconds=int(expires_in))).isoformat()

    cursor = await db.execute(
        """INSERT INTO oauth_accounts
           (tenant_id, user_id, provider, provider_account_email,
            access_token, refresh_token, token_expiry, scope, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(tenant_id, provider) DO UPDATE SET
           user_id = COALESCE(excluded.user_id, oauth_accounts.user_id),
           provider_account_email = COALESCE(excluded.provider_account_email,
                                             oauth_accounts.provider_account_email),
           access_token = excluded.access_token,
           refresh_token = excluded.refresh_token,
           token_expiry = excluded.token_expiry,
           scope = excluded.scope,
           updated_at = excluded.updated_at
           RETURNING id""",
        (
            tenant_id, user_id, provider, account_email,
            access_token, refresh_token, expiry, scope,
            now.isoformat(), now.isoformat(),
        )
    )
    row = await cursor.fetchone()
    await db.commit()

    return row["id"]


async def _save_refreshed_tokens(account_id: int, tokens: OAuthTokens) -> None:
    """Persist refreshed credentials as a full replacement of the token fields."""
    db = await get_database()
    await db.execute(
        """UPDATE oauth_accounts SET
           access_token = ?, refresh_token = ?, token_expiry = ?, scope = ?, updated_at = ?
           WHERE id = ?""",
        (
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at.isoformat() if tokens.expires_at else None,
            tokens.scope,
            datetime.now(timezone.utc).isoformat(),
            account_id,
        )
    )
    await db.commit()


async def request_token_refresh(provider: str, refresh_token: str) -> dict:
    """
    Call the provider's token endpoint with a refresh token.

    Raises:
        TokenRefreshError: on a non-200 response or an unknown provider
        httpx.HTTPError: on transport failures
    """
    endpoint = _token_endpoint(provider)
    if endpoint is None:
        raise TokenRefreshError(f"Unknown provider: {provider}", status_code=400)
    token_url, client_id, client_secret = endpoint

    async with httpx.AsyncClient() as client:
        response = await client.post(
            token_url,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )

        if response.status_code != 200:
            logger.error(f"Token refresh failed for {provider}: {response.text}")
            raise TokenRefreshError(
                f"Token refresh failed: {response.status_code}",
                status_code=response.status_code,
            )

        return response.json()


async def refresh_oauth_tokens(account: dict, provider: str) -> TokenResult:
    """Refresh a stored credential record, retrying transient failures."""
    refresh_token = account["refresh_token"]
    max_retries = max(1, get_settings().token_refresh_max_retries)

    for attempt in range(max_retries):
        try:
            data = await request_token_refresh(provider, refresh_token)
            break
        except TokenRefreshError as e:
            if e.is_permanent:
                logger.error(f"Refresh token rejected for tenant {account['tenant_id']}: {e}")
                return TokenResult.fail(
                    f"{provider} refresh token is invalid. Please reconnect your account.",
                    needs_reauth=True,
                )
            last_error = e
        except (httpx.HTTPError, ValueError) as e:
            last_error = e

        if attempt < max_retries - 1:
            wait_time = 2 ** attempt  # Exponential backoff: 1s, 2s, 4s
            logger.warning(
                f"Token refresh attempt {attempt + 1} failed for tenant "
                f"{account['tenant_id']}, retrying in {wait_time}s: {last_error}"
            )
            await asyncio.sleep(wait_time)
            continue

        logger.error(f"Failed to refresh {provider} token after {max_retries} attempts: {last_error}")
        return TokenResult.fail(f"Failed to refresh {provider} token", needs_reauth=False)

    if not data.get("access_token"):
        return TokenResult.fail(f"{provider} token endpoint returned no access token", needs_reauth=False)

    expires_at = None
    if data.get("expires_in"):
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data["expires_in"]))

    tokens = OAuthTokens(
        access_token=data["access_token"],
        # Some providers rotate the refresh token, most keep the old one valid
        refresh_token=data.get("refresh_token") or refresh_token,
        expires_at=expires_at,
        scope=data.get("scope") or account.get("scope"),
    )
    await _save_refreshed_tokens(account["id"], tokens)
    logger.info(f"Refreshed {provider} token for tenant {account['tenant_id']}")

    return TokenResult.ok(tokens)


async def get_valid_tokens(
    tenant_id: str,
    provider: str = "google",
    min_validity: timedelta = REFRESH_BUFFER,
) -> TokenResult:
    """
    Get tokens that stay valid for at least ``min_validity``, refreshing if needed.

    Never raises; every failure is returned as a TokenResult.
    """
    try:
        account = await get_oauth_account(tenant_id, provider)
        if not account:
            return TokenResult.fail(f"No {provider} account connected", needs_reauth=True)

        expires_at = _parse_expiry(account.get("token_expiry"))
        if not is_token_expired(expires_at, buffer=min_validity):
            return TokenResult.ok(OAuthTokens(
                access_token=account["access_token"],
                refresh_token=account["refresh_token"],
                expires_at=expires_at,
                scope=account["scope"],
            ))

        if not account["refresh_token"]:
            return TokenResult.fail(
                f"{provider} token expired and no refresh token available",
                needs_reauth=True,
            )

        logger.info(f"Refreshing {provider} token for tenant {tenant_id}")
        return await refresh_oauth_tokens(account, provider)

    except Exception as e:
        logger.exception(f"Unexpected error getting {provider} tokens for tenant {tenant_id}: {e}")
        return TokenResult.fail(f"Failed to load {provider} credentials", needs_reauth=False)


async def disconnect_provider(tenant_id: str, provider: str) -> bool:
    """Delete the stored credential record. Returns True if one existed."""
    db = await get_database()
    cursor = await db.execute(
        "DELETE FROM oauth_accounts WHERE tenant_id = ? AND provider = ?",
        (tenant_id, provider)
    )
    await db.commit()
    return cursor.rowcount > 0


def has_scope(token_scope: Optional[str], required_scope: str) -> bool:
    """Check if a space-separated scope string grants a specific scope."""
    if not token_scope:
        return False
    return required_scope in token_scope.split()
