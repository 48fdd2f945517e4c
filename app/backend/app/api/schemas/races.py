"""
Race-related Pydantic schemas for API.
Defines data structures for race, participant and reward endpoints.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field

from app.models.race import RaceStatus, SnapshotStatus
from .common import WalletField


class RaceBase(BaseModel):
    """Base race model."""
    token_symbol: Optional[str] = Field(default=None, max_length=32)
    contract_address: Optional[str] = Field(default=None, max_length=44, description="Token mint address")
    token_decimals: int = Field(default=6, ge=0, le=18)
    prize_pool: Decimal = Field(default=Decimal("0"), ge=0)
    daily_reward_amount: Optional[Decimal] = Field(default=None, ge=0, description="Per-round budget override")
    total_rounds: int = Field(default=1, ge=1, le=365)


class RaceCreate(RaceBase):
    """Race creation request."""


class RaceResponse(RaceBase):
    """Race response model."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    status: RaceStatus
    current_round: int
    round_started_at: Optional[datetime] = None
    entry_snapshot_at: Optional[datetime] = None
    snapshot_status: Optional[SnapshotStatus] = None
    snapshot_error: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    total_participants: int = 0
    time_remaining_hours: Optional[Decimal] = None
    round_budget: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ParticipantResponse(BaseModel):
    """Race participant entry."""
    model_config = ConfigDict(from_attributes=True)

    wallet_address: str = WalletField
    round_number: int = Field(ge=1)
    rank: int = Field(ge=1)
    entry_balance: Decimal
    token_balance: Decimal
    is_eligible: bool
    reward_amount: Decimal
    claimed: bool


class RoundParticipantsResponse(BaseModel):
    """Participants of one race round, ordered by rank."""
    race_id: str
    round_number: int
    participants: List[ParticipantResponse]
    total: int = Field(ge=0)
    eligible: int = Field(ge=0)


class WalletRewardsResponse(BaseModel):
    """Per-round rewards of a wallet in a race."""
    race_id: str
    wallet: str = WalletField
    rounds: List[ParticipantResponse]
    total_rewards: Decimal
    unclaimed_total: Decimal
