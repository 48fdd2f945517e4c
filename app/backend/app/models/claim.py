"""
Claim request model - a payout submission to the external payout executor.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, Text, DateTime, ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin
from .race import TOKEN_AMOUNT


class ClaimStatus(Enum):
    """Payout lifecycle of a claim request."""
    PENDING = "pending"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"


# Claims still holding their rewards
OPEN_CLAIM_STATUSES = (ClaimStatus.PENDING, ClaimStatus.SUBMITTING, ClaimStatus.SUBMITTED)


class ClaimRequest(BaseModel, TimestampMixin):
    """Aggregated unclaimed rewards of one wallet in one race."""

    __tablename__ = "race_claim_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    race_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("race_pools.id", ondelete="CASCADE"),
        comment="Race the rewards were earned in"
    )

    wallet_address: Mapped[str] = mapped_column(
        String(44),
        comment="Receiving wallet"
    )

    amount: Mapped[Decimal] = mapped_column(
        TOKEN_AMOUNT,
        comment="Total token amount to pay out"
    )

    status: Mapped[ClaimStatus] = mapped_column(
        SQLEnum(ClaimStatus),
        default=ClaimStatus.PENDING,
        comment="Payout status"
    )

    attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Submission attempts made"
    )

    last_error: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Last submission error"
    )

    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the last submission was attempted"
    )

    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(100),
        comment="Payout transaction signature"
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the payout was confirmed"
    )

    __table_args__ = (
        Index("idx_claim_status_attempt", "status", "last_attempt_at"),
        Index("idx_claim_wallet_race", "wallet_address", "race_id"),
    )

    def __repr__(self) -> str:
        return f"<ClaimRequest(id={self.id}, wallet={self.wallet_address}, amount={self.amount}, status={self.status.value})>"

    def mark_submitted(self, tx_hash: Optional[str], now: datetime) -> None:
        """Record an accepted submission."""
        self.status = ClaimStatus.SUBMITTED
        self.tx_hash = tx_hash or self.tx_hash
        self.attempts += 1
        self.last_attempt_at = now
        self.last_error = None

    def mark_attempt_failed(self, error: str, now: datetime, max_attempts: int) -> None:
        """Record a failed or interrupted submission, giving up after max_attempts."""
        self.attempts += 1
        self.last_attempt_at = now
        self.last_error = error
        self.status = ClaimStatus.FAILED if self.attempts >= max_attempts else ClaimStatus.PENDING

    def mark_completed(self, tx_hash: str, now: datetime) -> None:
        """Record an on-chain confirmed payout."""
        self.status = ClaimStatus.COMPLETED
        self.tx_hash = tx_hash
        self.completed_at = now
        self.last_error = None

    @property
    def can_confirm(self) -> bool:
        return self.status in OPEN_CLAIM_STATUSES
