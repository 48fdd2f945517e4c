"""
Reward tier calculator.

Pure functions mapping a ranked, eligibility-filtered participant set and a
round budget to per-wallet rewards. Amounts are Decimal and rounded down to
``REWARD_QUANTUM`` so the payouts of a round never sum above its budget.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from app.core.config import settings


logger = structlog.get_logger(__name__)

REWARD_QUANTUM = Decimal("0.000000001")


@dataclass(frozen=True)
class RewardTierConfig:
    """Tier layout and caps used by the calculator."""
    tier_bounds: Tuple[int, ...] = (10, 50, 100)
    tier_shares: Tuple[Decimal, ...] = (Decimal("0.60"), Decimal("0.30"), Decimal("0.10"))
    retention_threshold: Decimal = Decimal("0.90")
    max_daily_pool: Decimal = Decimal("100000000")
    max_reward_per_participant: Decimal = Decimal("10000000")

    @classmethod
    def from_settings(cls) -> "RewardTierConfig":
        return cls(
            tier_bounds=tuple(settings.reward_tier_bounds),
            tier_shares=tuple(Decimal(str(share)) for share in settings.reward_tier_shares),
            retention_threshold=Decimal(str(settings.reward_retention_threshold)),
            max_daily_pool=Decimal(str(settings.reward_max_daily_pool)),
            max_reward_per_participant=Decimal(str(settings.reward_max_per_participant)),
        )

    def tier_for_rank(self, rank: int) -> Optional[int]:
        """Index of the tier containing ``rank``, or None past the last tier."""
        if rank < 1:
            return None
        for index, upper in enumerate(self.tier_bounds):
            if rank <= upper:
                return index
        return None


@dataclass(frozen=True)
class EligibleParticipant:
    wallet: str
    rank: int


@dataclass(frozen=True)
class RewardAllocation:
    wallet: str
    rank: int
    tier: Optional[int]
    reward: Decimal


@dataclass(frozen=True)
class ClampEvent:
    """A reportable cap that reduced a computed amount."""
    kind: str  # "daily_pool" or "participant"
    original: Decimal
    capped: Decimal
    wallet: Optional[str] = None


@dataclass
class RewardDistribution:
    budget: Decimal
    capped_budget: Decimal
    allocations: List[RewardAllocation] = field(default_factory=list)
    clamp_events: List[ClampEvent] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum((a.reward for a in self.allocations), Decimal("0"))

    def rewards_by_wallet(self) -> Dict[str, Decimal]:
        return {a.wallet: a.reward for a in self.allocations}


def is_eligible(entry_balance: Decimal, current_balance: Decimal, config: Optional[RewardTierConfig] = None) -> bool:
    """A participant stays eligible by keeping the retention share of its entry balance."""
    config = config or RewardTierConfig()
    entry_balance = Decimal(entry_balance or 0)
    current_balance = Decimal(current_balance or 0)
    return entry_balance > 0 and current_balance >= entry_balance * config.retention_threshold


def calculate_reward_distribution(
    eligible: Sequence[EligibleParticipant],
    budget: Decimal,
    config: Optional[RewardTierConfig] = None,
) -> RewardDistribution:
    """
    Split a round budget across eligible participants by rank tier.

    The budget is first capped at ``max_daily_pool``. Each tier's share is
    divided evenly among the eligible members actually in that tier; a tier
    with nobody eligible pays nothing and its share is not redistributed.
    Each reward is then capped at ``max_reward_per_participant``.
    """
    config = config or RewardTierConfig()
    budget = Decimal(budget)

    capped_budget = min(budget, config.max_daily_pool)
    distribution = RewardDistribution(budget=budget, capped_budget=capped_budget)

    if capped_budget != budget:
        distribution.clamp_events.append(ClampEvent("daily_pool", budget, capped_budget))
        logger.warning("Daily pool capped", original=str(budget), capped=str(capped_budget))

    tier_counts = [0] * len(config.tier_bounds)
    for participant in eligible:
        tier = config.tier_for_rank(participant.rank)
        if tier is not None:
            tier_counts[tier] += 1

    per_member = [
        (capped_budget * share / count).quantize(REWARD_QUANTUM, rounding=ROUND_DOWN) if count else Decimal("0")
        for share, count in zip(config.tier_shares, tier_counts)
    ]

    for participant in eligible:
        tier = config.tier_for_rank(participant.rank)
        reward = per_member[tier] if tier is not None else Decimal("0")

        if reward > config.max_reward_per_participant:
            distribution.clamp_events.append(
                ClampEvent("participant", reward, config.max_reward_per_participant, participant.wallet)
            )
            logger.warning(
                "Participant reward capped",
                wallet=participant.wallet,
                original=str(reward),
                capped=str(config.max_reward_per_participant)
            )
            reward = config.max_reward_per_participant

        distribution.allocations.append(
            RewardAllocation(wallet=participant.wallet, rank=participant.rank, tier=tier, reward=reward)
        )

    return distribution
