"""
Race reward distribution job - one scheduler tick.

1. Recover every stuck race.
2. List active candidate races.
3. For each race due for a phase, drive exactly one phase transition.

A failure inside one race never stops the others; only failures outside
the per-race loop fail the tick.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog

from app.services.ledger.client import LedgerQueryClient, get_ledger_client
from app.utils.timeutils import Clock, frozen_clock, utc_now
from .recovery import RecoveredRace, RetryRecoverySupervisor
from .repository import RaceRepository
from .snapshot_engine import SnapshotEngine


logger = structlog.get_logger(__name__)


@dataclass
class RaceTickResult:
    race_id: str
    action: str
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"raceId": self.race_id, "action": self.action, "success": self.success}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TickReport:
    started_at: datetime
    results: List[RaceTickResult] = field(default_factory=list)
    recovered: List[RecoveredRace] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    candidates: int = 0

    @property
    def processed(self) -> int:
        return len(self.results)

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "processed": self.processed,
            "results": [result.to_dict() for result in self.results],
        }


class RaceRewardJob:
    """Runs snapshot ticks over all active races."""

    def __init__(
        self,
        repository: Optional[RaceRepository] = None,
        ledger_client: Optional[LedgerQueryClient] = None,
        supervisor: Optional[RetryRecoverySupervisor] = None,
        engine: Optional[SnapshotEngine] = None,
        clock: Optional[Clock] = None,
    ):
        self.logger = logger.bind(service="race_reward_job")
        self.clock = clock or utc_now
        self.repository = repository or RaceRepository()
        self.supervisor = supervisor or RetryRecoverySupervisor(self.repository)
        self._ledger_client = ledger_client
        self._engine = engine

    async def _get_engine(self) -> SnapshotEngine:
        if self._engine is None:
            ledger_client = self._ledger_client or await get_ledger_client()
            self._engine = SnapshotEngine(self.repository, ledger_client, self.supervisor, clock=self.clock)
        return self._engine

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one tick. Raises only for failures outside the per-race loop.

        ``now`` pins every timestamp of the tick to one instant; without it
        each phase reads the clock when it claims, completes or fails.
        """
        clock = frozen_clock(now) if now is not None else self.clock
        now = clock()
        report = TickReport(started_at=now)
        engine = await self._get_engine()

        self.logger.info("Starting race reward distribution check")

        report.recovered = await self.supervisor.recover_stuck_races(now)

        races = await self.repository.list_candidate_races()
        report.candidates = len(races)
        self.logger.info("Found active races", count=len(races))

        for race in races:
            allowed, reason = self.supervisor.should_attempt(race, now)
            if not allowed:
                self.logger.info(
                    "Skipping race",
                    race_id=race.id,
                    reason=reason,
                    retry_count=race.attempts
                )
                report.skipped[race.id] = reason
                continue

            action = engine.due_action(race, now)
            self.logger.debug(
                "Race state",
                race_id=race.id,
                round=race.round_number,
                total_rounds=race.rounds_total,
                hours=round(race.hours_since_round_start(now), 2),
                status=race.phase.value
            )
            if action is None:
                continue

            try:
                outcome = await engine.run(race, action, clock)
            except Exception as e:
                self.logger.error(
                    "Unhandled race processing error",
                    race_id=race.id,
                    action=action.value,
                    error=str(e),
                    exc_info=True
                )
                report.results.append(RaceTickResult(race.id, action.value, False, str(e)))
                continue

            report.results.append(
                RaceTickResult(race.id, outcome.action.value, outcome.success, outcome.error)
            )

        self.logger.info(
            "Race reward distribution check finished",
            processed=report.processed,
            recovered=len(report.recovered),
            skipped=len(report.skipped),
            failed=sum(1 for r in report.results if not r.success)
        )
        return report


# Global instance
_race_reward_job: Optional[RaceRewardJob] = None


async def get_race_reward_job() -> RaceRewardJob:
    """Get or create global RaceRewardJob instance."""
    global _race_reward_job
    if _race_reward_job is None:
        _race_reward_job = RaceRewardJob()
    return _race_reward_job
