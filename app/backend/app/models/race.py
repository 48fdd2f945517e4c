"""
Race pool model - one multi-round reward competition tied to a token.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Numeric, Text, DateTime, Index, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, TimestampMixin


TOKEN_AMOUNT = Numeric(38, 9)


class RaceStatus(Enum):
    """Lifecycle status of a race."""
    ACTIVE = "active"
    COMPLETED = "completed"


class SnapshotStatus(Enum):
    """Snapshot phase of the race's current round."""
    PENDING = "pending"
    ENTRY_IN_PROGRESS = "entry_in_progress"
    ENTRY_COMPLETE = "entry_complete"
    END_IN_PROGRESS = "end_in_progress"
    COMPLETED = "completed"
    ERROR = "error"


IN_PROGRESS_STATUSES = (SnapshotStatus.ENTRY_IN_PROGRESS, SnapshotStatus.END_IN_PROGRESS)

# Status a failed or stuck attempt returns to while retries remain
PRE_ATTEMPT_STATUS = {
    SnapshotStatus.ENTRY_IN_PROGRESS: SnapshotStatus.PENDING,
    SnapshotStatus.END_IN_PROGRESS: SnapshotStatus.ENTRY_COMPLETE,
}


class RacePool(BaseModel, TimestampMixin):
    """A race competition and its snapshot progress."""

    __tablename__ = "race_pools"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )

    # Asset reference
    token_symbol: Mapped[Optional[str]] = mapped_column(
        String(32),
        comment="Display symbol of the raced token"
    )

    contract_address: Mapped[Optional[str]] = mapped_column(
        String(44),
        comment="Token mint whose holder balances drive ranking"
    )

    token_decimals: Mapped[Optional[int]] = mapped_column(
        Integer,
        default=6,
        comment="Decimal places of the token mint"
    )

    # Lifecycle
    status: Mapped[RaceStatus] = mapped_column(
        SQLEnum(RaceStatus),
        default=RaceStatus.ACTIVE,
        comment="Lifecycle status"
    )

    # Round configuration
    prize_pool: Mapped[Decimal] = mapped_column(
        TOKEN_AMOUNT,
        default=Decimal("0"),
        comment="Total prize pool across all rounds"
    )

    daily_reward_amount: Mapped[Optional[Decimal]] = mapped_column(
        TOKEN_AMOUNT,
        comment="Explicit per-round reward budget"
    )

    total_rounds: Mapped[Optional[int]] = mapped_column(
        Integer,
        default=1,
        comment="Number of rounds in the race"
    )

    # Round progress
    current_round: Mapped[Optional[int]] = mapped_column(
        Integer,
        default=1,
        comment="Current round, 1-indexed"
    )

    round_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Anchor for the current round's phase deadlines"
    )

    entry_snapshot_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the current round's entry snapshot completed"
    )

    # Phase state
    snapshot_status: Mapped[Optional[SnapshotStatus]] = mapped_column(
        SQLEnum(SnapshotStatus),
        default=SnapshotStatus.PENDING,
        comment="Snapshot phase of the current round"
    )

    # Failure bookkeeping
    snapshot_error: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Last phase error message"
    )

    retry_count: Mapped[Optional[int]] = mapped_column(
        Integer,
        default=0,
        comment="Consecutive failed phase attempts"
    )

    last_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="When the last failed attempt was recorded"
    )

    # Display metadata
    total_participants: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Participants captured by the latest entry snapshot"
    )

    time_remaining_hours: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        comment="Estimated hours until the race completes"
    )

    participants: Mapped[List["RaceParticipant"]] = relationship(
        "RaceParticipant",
        back_populates="race",
        lazy="noload"
    )

    __table_args__ = (
        Index("idx_race_status_snapshot", "status", "snapshot_status"),
        Index("idx_race_snapshot_updated", "snapshot_status", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RacePool(id={self.id}, round={self.round_number}/{self.rounds_total}, "
            f"phase={self.phase.value})>"
        )

    @property
    def phase(self) -> SnapshotStatus:
        """Snapshot status with NULL read as pending."""
        return self.snapshot_status or SnapshotStatus.PENDING

    @property
    def round_number(self) -> int:
        return self.current_round or 1

    @property
    def rounds_total(self) -> int:
        return self.total_rounds or 1

    @property
    def attempts(self) -> int:
        return self.retry_count or 0

    @property
    def decimals(self) -> int:
        return self.token_decimals if self.token_decimals is not None else 6

    @property
    def round_budget(self) -> Decimal:
        """Per-round reward budget before any clamping."""
        if self.daily_reward_amount:
            return Decimal(self.daily_reward_amount)
        return Decimal(self.prize_pool or 0) / Decimal(self.rounds_total)

    @property
    def is_active(self) -> bool:
        return self.status == RaceStatus.ACTIVE

    def hours_since_round_start(self, now: datetime) -> float:
        """Elapsed hours since the current round started."""
        if self.round_started_at is None:
            return 0.0
        return (now - self.round_started_at).total_seconds() / 3600
