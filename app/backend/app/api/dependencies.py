"""
API dependencies for FastAPI endpoints.
Provides reusable dependency functions for validation, admin access, and data access.
"""

import secrets
from typing import Optional, AsyncGenerator
from fastapi import HTTPException, Header, Query, Path, status
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from app.core.database import get_async_session
from app.core.config import settings
from app.core.exceptions import (
    RaceRewardsException, NotFoundError, ValidationError, AuthorizationError, ConfigurationError
)
from app.models.race import RaceStatus
from app.utils.validation import validate_wallet_address
from app.api.schemas.common import PaginationParams


logger = structlog.get_logger(__name__)


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_async_session() as session:
        yield session


async def validate_wallet_param(
    wallet: str = Path(..., description="Solana wallet address")
) -> str:
    """Validate wallet address path parameter."""
    if not validate_wallet_address(wallet):
        logger.warning("Invalid wallet address provided", wallet=wallet)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "INVALID_WALLET_ADDRESS",
                "message": "Invalid Solana wallet address format"
            }
        )
    return wallet


async def get_pagination_params(
    limit: int = Query(50, ge=1, le=1000, description="Number of items per page"),
    offset: int = Query(0, ge=0, description="Number of items to skip")
) -> PaginationParams:
    """Get pagination parameters."""
    return PaginationParams(limit=limit, offset=offset)


async def get_race_status_filter(
    race_status: Optional[RaceStatus] = Query(
        None,
        alias="status",
        description="Filter by race status (active, completed)"
    )
) -> Optional[RaceStatus]:
    """Get race status filter parameter."""
    return race_status


async def validate_admin_access(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")
) -> str:
    """Require the configured admin API key."""
    if not settings.admin_api_key:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "ADMIN_ACCESS_DISABLED",
                "message": "Admin access is not configured"
            }
        )

    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.admin_api_key):
        logger.warning("Unauthorized admin access attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "ADMIN_ACCESS_DENIED",
                "message": "Admin access required"
            }
        )

    return "admin"


def to_http_exception(error: RaceRewardsException) -> HTTPException:
    """Map a domain exception to an HTTP error response."""
    if isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, AuthorizationError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, ConfigurationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    return HTTPException(
        status_code=status_code,
        detail={
            "error": error.code,
            "message": error.message,
            "details": error.details
        }
    )
