"""
Retry & recovery supervisor for race snapshot phases.

Bounded retries with a fixed delay, and after-the-fact recovery of phase
markers left behind by crashed or timed-out invocations.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import structlog

from app.core.config import settings
from app.models.race import RacePool, SnapshotStatus
from .repository import RaceRepository


logger = structlog.get_logger(__name__)


@dataclass
class RecoveredRace:
    race_id: str
    stuck_status: SnapshotStatus
    new_status: SnapshotStatus
    retry_count: int


class RetryRecoverySupervisor:
    """Decides when races may be retried and demotes failed or stuck attempts."""

    def __init__(
        self,
        repository: RaceRepository,
        max_retry_count: Optional[int] = None,
        retry_delay: Optional[timedelta] = None,
        stuck_threshold: Optional[timedelta] = None,
    ):
        self.logger = logger.bind(service="race_recovery_supervisor")
        self.repository = repository
        self.max_retry_count = max_retry_count or settings.race_max_retry_count
        self.retry_delay = retry_delay or timedelta(minutes=settings.race_retry_delay_minutes)
        self.stuck_threshold = stuck_threshold or timedelta(minutes=settings.race_stuck_threshold_minutes)

    async def recover_stuck_races(self, now: datetime) -> List[RecoveredRace]:
        """
        Demote every race whose in-progress marker is older than the stuck threshold.

        Must complete before any phase transition of the same tick.
        """
        cutoff = now - self.stuck_threshold
        stuck_races = await self.repository.list_stuck_races(cutoff)
        if not stuck_races:
            return []

        self.logger.warning("Recovering stuck races", count=len(stuck_races))

        recovered = []
        for stuck in stuck_races:
            stuck_status = stuck.snapshot_status
            race = await self.repository.recover_stuck_race(stuck.id, cutoff, now, self.max_retry_count)
            if race is None:
                # Finished or recovered by a concurrent invocation meanwhile
                continue

            recovered.append(RecoveredRace(
                race_id=race.id,
                stuck_status=stuck_status,
                new_status=race.snapshot_status,
                retry_count=race.retry_count,
            ))
            self.logger.warning(
                "Recovered stuck race",
                race_id=race.id,
                stuck_status=stuck_status.value,
                new_status=race.snapshot_status.value,
                retry_count=race.retry_count,
                max_retries=self.max_retry_count
            )

        return recovered

    def should_attempt(self, race: RacePool, now: datetime) -> Tuple[bool, Optional[str]]:
        """Check the retry ceiling and retry delay. Returns (allowed, skip_reason)."""
        if race.attempts >= self.max_retry_count:
            return False, "max_retries_exceeded"

        if race.attempts > 0 and race.last_retry_at is not None:
            if now < race.last_retry_at + self.retry_delay:
                return False, "retry_delay"

        return True, None

    async def record_phase_failure(
        self,
        race: RacePool,
        in_progress: SnapshotStatus,
        error: str,
        now: datetime
    ) -> Optional[RacePool]:
        """Count a failed phase attempt and release its marker."""
        updated = await self.repository.record_failure(
            race.id, in_progress, error, now, self.max_retry_count
        )

        if updated is None:
            self.logger.warning(
                "Failed race no longer holds its marker",
                race_id=race.id,
                phase=in_progress.value,
                error=error
            )
            return None

        log = self.logger.error if updated.snapshot_status == SnapshotStatus.ERROR else self.logger.warning
        log(
            "Race phase failed",
            race_id=race.id,
            phase=in_progress.value,
            attempt=updated.retry_count,
            max_retries=self.max_retry_count,
            new_status=updated.snapshot_status.value,
            error=error
        )
        return updated
