"""
Race snapshot-and-payout engine.
"""

from .reward_calculator import (
    RewardTierConfig,
    EligibleParticipant,
    RewardAllocation,
    RewardDistribution,
    ClampEvent,
    calculate_reward_distribution,
    is_eligible,
)
from .repository import RaceRepository
from .recovery import RetryRecoverySupervisor, RecoveredRace
from .snapshot_engine import SnapshotEngine, PhaseAction, PhaseOutcome
from .job import RaceRewardJob, TickReport, RaceTickResult, get_race_reward_job

__all__ = [
    "RewardTierConfig",
    "EligibleParticipant",
    "RewardAllocation",
    "RewardDistribution",
    "ClampEvent",
    "calculate_reward_distribution",
    "is_eligible",
    "RaceRepository",
    "RetryRecoverySupervisor",
    "RecoveredRace",
    "SnapshotEngine",
    "PhaseAction",
    "PhaseOutcome",
    "RaceRewardJob",
    "TickReport",
    "RaceTickResult",
    "get_race_reward_job",
]
