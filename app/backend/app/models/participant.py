"""
Race participant model - one (race, round, wallet) ledger entry.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin
from .race import TOKEN_AMOUNT


class RaceParticipant(BaseModel, TimestampMixin):
    """Holder captured by a round's entry snapshot and scored at round end."""

    __tablename__ = "race_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    race_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("race_pools.id", ondelete="CASCADE"),
        comment="Race this entry belongs to"
    )

    wallet_address: Mapped[str] = mapped_column(
        String(44),
        comment="Holder wallet"
    )

    round_number: Mapped[int] = mapped_column(
        Integer,
        comment="Round this entry belongs to"
    )

    rank: Mapped[int] = mapped_column(
        Integer,
        comment="Rank in the entry snapshot, 1-indexed"
    )

    entry_balance: Mapped[Decimal] = mapped_column(
        TOKEN_AMOUNT,
        comment="Balance at entry snapshot"
    )

    token_balance: Mapped[Decimal] = mapped_column(
        TOKEN_AMOUNT,
        comment="Balance at the latest evaluation"
    )

    is_eligible: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        comment="Retained the required share of the entry balance"
    )

    reward_amount: Mapped[Decimal] = mapped_column(
        TOKEN_AMOUNT,
        default=Decimal("0"),
        comment="Reward computed at round end"
    )

    claimed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Reward included in a claim request"
    )

    claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the reward was claimed"
    )

    claim_request_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("race_claim_requests.id", ondelete="SET NULL"),
        comment="Claim request covering this reward"
    )

    race: Mapped["RacePool"] = relationship(
        "RacePool",
        back_populates="participants"
    )

    __table_args__ = (
        UniqueConstraint("race_id", "wallet_address", "round_number", name="uq_race_participant_round"),
        Index("idx_race_participant_round_rank", "race_id", "round_number", "rank"),
        Index("idx_race_participant_wallet", "wallet_address", "race_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<RaceParticipant(race={self.race_id}, round={self.round_number}, "
            f"wallet={self.wallet_address}, rank={self.rank})>"
        )

    @property
    def is_claimable(self) -> bool:
        """Check if the reward can be included in a new claim request."""
        return not self.claimed and (self.reward_amount or 0) > 0
