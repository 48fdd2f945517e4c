"""
Snapshot state machine for race rounds.

    pending -> entry_in_progress -> entry_complete -> end_in_progress
        -> pending (next round) | completed

Each phase first claims its in-progress marker with a compare-and-set, so
the marker is durable before any ledger call. Failures release the marker
through the recovery supervisor.

Marker, completion and failure timestamps are read from the clock when
they are written, so the age of a marker counts from its claim and not
from the start of the tick.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from app.core.config import settings
from app.core.exceptions import LedgerFetchError, LedgerFetchReason, SnapshotPhaseError
from app.models.race import RacePool, SnapshotStatus
from app.services.ledger.client import LedgerQueryClient
from app.utils.timeutils import Clock, utc_now
from .recovery import RetryRecoverySupervisor
from .repository import RaceRepository
from .reward_calculator import (
    EligibleParticipant,
    RewardTierConfig,
    calculate_reward_distribution,
    is_eligible,
)


logger = structlog.get_logger(__name__)


class PhaseAction(Enum):
    ENTRY_SNAPSHOT = "entry_snapshot"
    END_SNAPSHOT = "end_snapshot"


@dataclass
class PhaseOutcome:
    race_id: str
    action: PhaseAction
    success: bool
    error: Optional[str] = None
    claimed: bool = True
    details: Dict[str, Any] = field(default_factory=dict)


class SnapshotEngine:
    """Drives one phase transition for one race."""

    def __init__(
        self,
        repository: RaceRepository,
        ledger_client: LedgerQueryClient,
        supervisor: RetryRecoverySupervisor,
        tier_config: Optional[RewardTierConfig] = None,
        entry_delay: Optional[timedelta] = None,
        round_duration: Optional[timedelta] = None,
        holder_limit: Optional[int] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="snapshot_engine")
        self.clock = clock or utc_now
        self.repository = repository
        self.ledger_client = ledger_client
        self.supervisor = supervisor
        self.tier_config = tier_config or RewardTierConfig.from_settings()
        self.entry_delay = entry_delay or timedelta(hours=settings.race_entry_delay_hours)
        self.round_duration = round_duration or timedelta(hours=settings.race_round_hours)
        self.holder_limit = holder_limit or settings.race_holder_limit

    def due_action(self, race: RacePool, now: datetime) -> Optional[PhaseAction]:
        """The phase this tick should attempt for ``race``, if any."""
        if race.round_started_at is None:
            return None

        elapsed = now - race.round_started_at
        phase = race.phase

        if phase == SnapshotStatus.PENDING and elapsed >= self.entry_delay:
            return PhaseAction.ENTRY_SNAPSHOT
        if phase == SnapshotStatus.ENTRY_COMPLETE and elapsed >= self.round_duration:
            return PhaseAction.END_SNAPSHOT
        return None

    async def run(self, race: RacePool, action: PhaseAction, clock: Optional[Clock] = None) -> PhaseOutcome:
        if action == PhaseAction.ENTRY_SNAPSHOT:
            return await self.run_entry_phase(race, clock)
        return await self.run_end_phase(race, clock)

    async def run_entry_phase(self, race: RacePool, clock: Optional[Clock] = None) -> PhaseOutcome:
        """Capture the top holders of the race token as this round's participants."""
        clock = clock or self.clock
        log = self.logger.bind(race_id=race.id, round=race.round_number, phase="entry")

        if not await self.repository.claim_phase(
            race.id, SnapshotStatus.PENDING, SnapshotStatus.ENTRY_IN_PROGRESS, clock()
        ):
            log.info("Entry phase already claimed, skipping")
            return PhaseOutcome(
                race.id, PhaseAction.ENTRY_SNAPSHOT, False,
                error="Phase already claimed", claimed=False
            )

        log.info("Processing entry snapshot")
        try:
            asset = self._require_asset(race)
            holders = await self.ledger_client.fetch_top_holders(asset, self.holder_limit, race.decimals)
            if not holders:
                raise LedgerFetchError("No holders found for token", LedgerFetchReason.NO_DATA)

            recorded = await self.repository.complete_entry_snapshot(race, holders, clock())
        except Exception as e:
            message = f"Entry snapshot failed: {e}"
            await self.supervisor.record_phase_failure(race, SnapshotStatus.ENTRY_IN_PROGRESS, message, clock())
            return PhaseOutcome(race.id, PhaseAction.ENTRY_SNAPSHOT, False, error=str(e))

        log.info("Entry snapshot complete", participants=recorded)
        return PhaseOutcome(
            race.id, PhaseAction.ENTRY_SNAPSHOT, True,
            details={"participants": recorded}
        )

    async def run_end_phase(self, race: RacePool, clock: Optional[Clock] = None) -> PhaseOutcome:
        """
        Re-check balances, score eligible participants and advance the round.

        A participant missing from the current holder list holds 0 and is
        ineligible; a round whose holders have all left still finalizes,
        paying nothing.
        """
        clock = clock or self.clock
        log = self.logger.bind(race_id=race.id, round=race.round_number, phase="end")

        if not await self.repository.claim_phase(
            race.id, SnapshotStatus.ENTRY_COMPLETE, SnapshotStatus.END_IN_PROGRESS, clock()
        ):
            log.info("End phase already claimed, skipping")
            return PhaseOutcome(
                race.id, PhaseAction.END_SNAPSHOT, False,
                error="Phase already claimed", claimed=False
            )

        log.info("Processing end snapshot")
        try:
            asset = self._require_asset(race)

            participants = await self.repository.load_round_participants(race.id, race.round_number)
            if not participants:
                raise SnapshotPhaseError("No entry participants found - entry snapshot may have failed")

            current_holders = await self.ledger_client.fetch_top_holders(
                asset, self.holder_limit, race.decimals
            )
            current_balances = {h.wallet: h.balance for h in current_holders}

            evaluations = {}
            eligible = []
            for participant in participants:
                current_balance = current_balances.get(participant.wallet_address, Decimal("0"))
                entry_balance = participant.entry_balance or participant.token_balance or 0
                eligible_now = is_eligible(entry_balance, current_balance, self.tier_config)

                evaluations[participant.wallet_address] = {
                    "id": participant.id,
                    "token_balance": current_balance,
                    "is_eligible": eligible_now,
                    "reward_amount": Decimal("0"),
                }
                if eligible_now:
                    eligible.append(EligibleParticipant(participant.wallet_address, participant.rank))

            log.info("Eligibility evaluated", eligible=len(eligible), participants=len(participants))

            distribution = calculate_reward_distribution(eligible, race.round_budget, self.tier_config)
            for allocation in distribution.allocations:
                evaluations[allocation.wallet]["reward_amount"] = allocation.reward

            new_status = await self.repository.finalize_round(race, evaluations.values(), clock())
        except Exception as e:
            message = f"End snapshot failed: {e}"
            await self.supervisor.record_phase_failure(race, SnapshotStatus.END_IN_PROGRESS, message, clock())
            return PhaseOutcome(race.id, PhaseAction.END_SNAPSHOT, False, error=str(e))

        if new_status == SnapshotStatus.COMPLETED:
            log.info("Race completed", total_rounds=race.rounds_total)
        else:
            log.info("Race advanced", next_round=race.round_number + 1)

        return PhaseOutcome(
            race.id, PhaseAction.END_SNAPSHOT, True,
            details={
                "eligible": len(eligible),
                "participants": len(participants),
                "distributed": str(distribution.total),
                "clamped": len(distribution.clamp_events),
                "status": new_status.value,
            }
        )

    @staticmethod
    def _require_asset(race: RacePool) -> str:
        if not race.contract_address:
            raise SnapshotPhaseError("No token address found")
        return race.contract_address
