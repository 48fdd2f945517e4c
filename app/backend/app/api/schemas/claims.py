"""
Claim-related Pydantic schemas for API.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from app.models.claim import ClaimStatus
from .common import WalletField


class ClaimCreate(BaseModel):
    """Reward claim request."""
    model_config = ConfigDict(populate_by_name=True)

    race_id: str = Field(alias="raceId", min_length=1, max_length=36)
    wallet: str = WalletField


class ClaimConfirm(BaseModel):
    """Payout confirmation from the claiming wallet."""
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(alias="txHash", description="Payout transaction signature")
    wallet: str = WalletField


class ClaimResponse(BaseModel):
    """Claim request response model."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    race_id: str
    wallet_address: str
    amount: Decimal
    status: ClaimStatus
    attempts: int
    last_error: Optional[str] = None
    tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
