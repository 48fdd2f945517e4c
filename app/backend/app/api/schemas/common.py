"""
Response envelopes shared by the race and claim routes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.utils.timeutils import utc_now


class APIResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class SuccessResponse(APIResponse):
    data: Optional[Any] = None


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int
    has_next: bool
    has_previous: bool


class PaginationParams(BaseModel):
    """Offset pagination for list endpoints."""
    limit: int = Field(default=50, ge=1, le=1000, description="Number of items per page")
    offset: int = Field(default=0, ge=0, description="Number of items to skip")

    def meta(self, total: int) -> PageMeta:
        return PageMeta(
            total=total,
            limit=self.limit,
            offset=self.offset,
            has_next=self.offset + self.limit < total,
            has_previous=self.offset > 0,
        )


class PaginatedResponse(SuccessResponse):
    data: List[Any]
    pagination: PageMeta


class HealthCheckResponse(BaseModel):
    status: str = "healthy"
    timestamp: datetime = Field(default_factory=utc_now)
    version: str
    services: Dict[str, str]


WalletField = Field(
    min_length=32,
    max_length=44,
    pattern=r"^[1-9A-HJ-NP-Za-km-z]+$",
    description="Base58 wallet address"
)


def create_success_response(data: Any = None, message: Optional[str] = None) -> SuccessResponse:
    return SuccessResponse(data=data, message=message)


def create_paginated_response(data: List[Any], total: int, pagination: PaginationParams) -> PaginatedResponse:
    return PaginatedResponse(data=data, pagination=pagination.meta(total))
