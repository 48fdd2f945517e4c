"""
Database models for the race rewards backend.

Contains SQLAlchemy models for race competitions, their per-round
participant ledger and payout claim requests.
"""

from .base import Base, BaseModel, TimestampMixin
from .race import RacePool, RaceStatus, SnapshotStatus, IN_PROGRESS_STATUSES, PRE_ATTEMPT_STATUS
from .claim import ClaimRequest, ClaimStatus
from .participant import RaceParticipant

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "RacePool",
    "RaceStatus",
    "SnapshotStatus",
    "IN_PROGRESS_STATUSES",
    "PRE_ATTEMPT_STATUS",
    "RaceParticipant",
    "ClaimRequest",
    "ClaimStatus",
]
