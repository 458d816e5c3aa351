"""
Session Validation

Validates user sessions by querying the NextAuth ``sessions`` and ``users``
tables directly. Sessions are created by the Next.js frontend and validated
here for privacy API access.

Session tokens arrive via:
1. Header: 'Authorization: Bearer <session_token>' (API clients)
2. Cookie: 'next-auth.session-token' ('__Secure-' prefixed over HTTPS)
"""

import hashlib
import json
from dataclasses import dataclass, asdict
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from config.database import get_session, db_manager


logger = structlog.get_logger()


# Accepts a Bearer token but doesn't require it (we also check cookies)
security = HTTPBearer(auto_error=False)


SESSION_COOKIE_NAME = "next-auth.session-token"
SESSION_COOKIE_NAME_SECURE = "__Secure-next-auth.session-token"


@dataclass
class SessionData:
    """Authenticated user session data."""
    user_id: str
    email: str
    name: str = ""
    email_verified: bool = False


_SESSION_CACHE_TTL = 10  # seconds; short to limit access after logout


def _cache_key(session_token: str) -> str:
    return f"session:{hashlib.sha256(session_token.encode()).hexdigest()[:32]}"


async def _get_session_from_token(
    session_token: str,
    db: AsyncSession,
    redis=None,
) -> Optional[SessionData]:
    """
    Look up the user owning an unexpired session token.

    Redis, when available, caches hits for a few seconds so authenticated
    requests don't hit the database every time.
    """
    cache_key = _cache_key(session_token)

    if redis is not None:
        try:
            cached = await redis.get(cache_key)
            if cached:
                return SessionData(**json.loads(cached))
        except Exception as e:
            logger.warning("session_cache_read_failed", error=str(e))

    query = text("""
        SELECT
            u.id AS user_id,
            u.email,
            u.name,
            u."emailVerified" IS NOT NULL AS email_verified
        FROM sessions s
        JOIN users u ON s."userId" = u.id
        WHERE s."sessionToken" = :token
          AND s.expires > NOW()
    """)

    result = await db.execute(query, {"token": session_token})
    row = result.fetchone()

    if row is None:
        return None

    session_data = SessionData(
        user_id=str(row.user_id),
        email=row.email or "",
        name=row.name or "",
        email_verified=bool(row.email_verified),
    )

    if redis is not None:
        try:
            await redis.setex(cache_key, _SESSION_CACHE_TTL, json.dumps(asdict(session_data)))
        except Exception as e:
            logger.warning("session_cache_write_failed", error=str(e))

    return session_data


def extract_session_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
) -> Optional[str]:
    """Bearer header first, then either session cookie"""
    if credentials and credentials.credentials:
        return credentials.credentials
    return (
        request.cookies.get(SESSION_COOKIE_NAME)
        or request.cookies.get(SESSION_COOKIE_NAME_SECURE)
    )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_session),
) -> SessionData:
    """
    FastAPI dependency: extracts and validates the caller's session.

    Returns:
        SessionData with user information

    Raises:
        HTTPException 401: If no valid session is found
        HTTPException 503: If the session store is unavailable
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )

    session_token = extract_session_token(request, credentials)

    if not session_token:
        logger.warning("missing_session_token")
        raise credentials_exception

    if db is None:
        logger.error("database_not_available_for_session_validation")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    redis = await db_manager.get_redis_client()

    session_data = await _get_session_from_token(session_token, db, redis)

    if session_data is None:
        logger.warning("invalid_or_expired_session")
        raise credentials_exception

    return session_data
