"""Session management using JWT tokens."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from aisle_sync.config import get_session_secret, get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Session data stored in JWT."""
    tenant_id: str
    user_id: str
    display_name: Optional[str] = None
    exp: datetime


def create_session_token(
    tenant_id: str,
    user_id: str,
    display_name: Optional[str] = None,
) -> str:
    """Create a JWT session token."""
    settings = get_settings()
    secret = get_session_secret()

    expire = datetime.now(timezone.utc) + timedelta(days=settings.session_expire_days)
    data = {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "display_name": display_name,
        "exp": expire,
    }

    return jwt.encode(data, secret, algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Verify and decode a session token."""
    try:
        secret = get_session_secret()
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
        return SessionData(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


def _token_from_request(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token

    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


async def get_current_session_optional(request: Request) -> Optional[SessionData]:
    """Get current session, returns None if not authenticated."""
    token = _token_from_request(request)
    if not token:
        return None
    return verify_session_token(token)


async def get_current_session(request: Request) -> SessionData:
    """Get current session, raises 401 if not authenticated."""
    session = await get_current_session_optional(request)
    if not session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session
