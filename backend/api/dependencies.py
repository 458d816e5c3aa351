"""
API Dependencies

FastAPI dependency injection for database, services, and authentication.
"""

import hmac
from typing import AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from config.settings import settings
from config.database import db_manager
from compliance.gdpr import DeletionSweepService, GDPRComplianceService
from models.gdpr import RequestContext
from auth.session_auth import SessionData, get_current_user

# API Key header for service-to-service auth
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# =============================================================================
# Database Dependencies
# =============================================================================


async def get_db_session() -> AsyncGenerator:
    """
    Get async database session.

    Yields:
        AsyncSession for database operations (None if DB not available)
    """
    async with db_manager.get_session() as session:
        yield session


def _require_session(session):
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not available",
        )
    return session


# =============================================================================
# Authentication Dependencies
# =============================================================================


async def verify_api_key(
    api_key: Optional[str] = Depends(api_key_header)
) -> bool:
    """
    Verify API key for service-to-service authentication.

    Args:
        api_key: API key from X-API-Key header

    Returns:
        True if valid

    Raises:
        HTTPException: If API key is missing or invalid
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required"
        )

    if not settings.internal_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API key authentication not configured"
        )

    # Constant-time comparison
    if not hmac.compare_digest(api_key, settings.internal_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    return True


def client_ip(request: Request) -> str:
    """First hop of X-Forwarded-For, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


async def get_request_context(
    request: Request,
    current_user: SessionData = Depends(get_current_user),
) -> RequestContext:
    """Caller identity plus provenance for the audit trail"""
    return RequestContext(
        user_id=current_user.user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent", "unknown"),
    )


# =============================================================================
# Service Dependencies
# =============================================================================


async def get_gdpr_service(session=Depends(get_db_session)) -> GDPRComplianceService:
    """Get GDPR compliance service instance"""
    return GDPRComplianceService.from_session(_require_session(session))


async def get_sweep_service(session=Depends(get_db_session)) -> DeletionSweepService:
    """Get deletion sweep service instance"""
    return DeletionSweepService.from_session(_require_session(session))
