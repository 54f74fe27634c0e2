"""
Session token verification for the chat service.

The trips web app signs users in and hands the browser a session token
(a JWT signed with AUTH_SECRET_KEY). The chat service only verifies it:

- WebSocket: token from ?token=..., an Authorization: Bearer header,
  or the session cookie, checked before the connection is accepted
- HTTP: same sources, through the get_current_user dependency
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from fastapi import HTTPException, Request, WebSocket
from jose import JWTError, jwt

from tripchat.core.config import Settings, settings as default_settings
from tripchat.core.errors import AuthenticationRequired
from tripchat.core.logging import get_logger
from tripchat.models.models import Identity

logger = get_logger(__name__)


def extract_token(connection: Union[Request, WebSocket], cookie_name: str) -> Optional[str]:
    """Prefer query param, then `Authorization: Bearer x`, then the session cookie."""
    token = connection.query_params.get("token")
    if token:
        return token
    auth = connection.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return connection.cookies.get(cookie_name)


def verify_token(token: Optional[str], settings: Settings = default_settings) -> Identity:
    """Decode and check a session token. Raises AuthenticationRequired."""
    if not token:
        raise AuthenticationRequired("Not authenticated")
    if not settings.AUTH_SECRET_KEY:
        logger.error("AUTH_SECRET_KEY is not configured - rejecting all tokens")
        raise AuthenticationRequired("Authentication is not configured")

    try:
        claims: Dict[str, Any] = jwt.decode(
            token,
            settings.AUTH_SECRET_KEY,
            algorithms=[settings.AUTH_ALGORITHM],
        )
    except JWTError as e:
        logger.warning(f"Rejected session token: {e}")
        raise AuthenticationRequired("Invalid or expired session token")

    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationRequired("Session token has no subject")

    display_name = claims.get("name") or claims.get("email") or str(user_id)
    return Identity(user_id=str(user_id), display_name=display_name)


def issue_token(
    user_id: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    settings: Settings = default_settings,
    expires_in: Optional[int] = None,
) -> str:
    """Mint a session token. Used by local tooling and tests."""
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in if expires_in is not None else settings.AUTH_TOKEN_TTL),
    }
    if name:
        claims["name"] = name
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


async def get_current_user(request: Request) -> Identity:
    """
    Get current authenticated user from the session token.
    Use as dependency for protected endpoints.
    """
    settings = getattr(request.app.state, "settings", default_settings)
    try:
        return verify_token(extract_token(request, settings.COOKIE_NAME), settings)
    except AuthenticationRequired as e:
        raise HTTPException(401, e.message)
