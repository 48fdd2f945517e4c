"""
Repository for race and participant persistence.

Every public method runs in its own transaction (one
``get_async_session()`` block), so a phase marker written by
``claim_phase`` is committed before the caller makes any ledger call.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import select, update, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_async_session
from app.core.exceptions import RaceNotFoundError, SnapshotPhaseError, ValidationError
from app.models.race import (
    RacePool, RaceStatus, SnapshotStatus, IN_PROGRESS_STATUSES, PRE_ATTEMPT_STATUS
)
from app.models.participant import RaceParticipant
from app.services.ledger.types import HolderBalance


logger = structlog.get_logger(__name__)


def _status_matches(expected: SnapshotStatus):
    """WHERE clause for a snapshot status, reading NULL as pending."""
    if expected == SnapshotStatus.PENDING:
        return or_(RacePool.snapshot_status == SnapshotStatus.PENDING, RacePool.snapshot_status.is_(None))
    return RacePool.snapshot_status == expected


def _dialect_insert(session: AsyncSession):
    """Pick the INSERT construct supporting ON CONFLICT for the bound dialect."""
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect {dialect}")
    return insert


class RaceRepository:
    """
    Persistence gateway for the snapshot engine and the read API.
    """

    def __init__(self):
        self.logger = logger.bind(service="race_repository")

    # Reads

    async def get_race(self, race_id: str) -> RacePool:
        async with get_async_session() as db:
            race = await db.get(RacePool, race_id)
            if race is None:
                raise RaceNotFoundError(race_id)
            return race

    async def list_candidate_races(self) -> List[RacePool]:
        """Active races in a phase a tick may advance."""
        async with get_async_session() as db:
            result = await db.execute(
                select(RacePool)
                .where(RacePool.status == RaceStatus.ACTIVE)
                .where(or_(
                    RacePool.snapshot_status.in_([SnapshotStatus.PENDING, SnapshotStatus.ENTRY_COMPLETE]),
                    RacePool.snapshot_status.is_(None)
                ))
                .order_by(RacePool.created_at, RacePool.id)
            )
            return list(result.scalars().all())

    async def list_stuck_races(self, cutoff: datetime) -> List[RacePool]:
        """Active races holding an in-progress marker last touched before ``cutoff``."""
        async with get_async_session() as db:
            result = await db.execute(
                select(RacePool)
                .where(RacePool.status == RaceStatus.ACTIVE)
                .where(RacePool.snapshot_status.in_(IN_PROGRESS_STATUSES))
                .where(RacePool.updated_at < cutoff)
                .order_by(RacePool.updated_at)
            )
            return list(result.scalars().all())

    async def list_races(
        self,
        status: Optional[RaceStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> tuple[List[RacePool], int]:
        async with get_async_session() as db:
            query = select(RacePool)
            count_query = select(func.count(RacePool.id))
            if status is not None:
                query = query.where(RacePool.status == status)
                count_query = count_query.where(RacePool.status == status)

            total = (await db.execute(count_query)).scalar() or 0
            result = await db.execute(
                query.order_by(RacePool.created_at.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all()), total

    async def load_round_participants(self, race_id: str, round_number: int) -> List[RaceParticipant]:
        async with get_async_session() as db:
            result = await db.execute(
                select(RaceParticipant)
                .where(RaceParticipant.race_id == race_id)
                .where(RaceParticipant.round_number == round_number)
                .order_by(RaceParticipant.rank)
            )
            return list(result.scalars().all())

    async def list_wallet_rewards(self, race_id: str, wallet: str) -> List[RaceParticipant]:
        async with get_async_session() as db:
            result = await db.execute(
                select(RaceParticipant)
                .where(RaceParticipant.race_id == race_id)
                .where(RaceParticipant.wallet_address == wallet)
                .order_by(RaceParticipant.round_number)
            )
            return list(result.scalars().all())

    # Phase transitions

    async def claim_phase(
        self,
        race_id: str,
        expected: SnapshotStatus,
        in_progress: SnapshotStatus,
        now: datetime
    ) -> bool:
        """
        Compare-and-set the phase marker.

        ``now`` becomes the marker's ``updated_at``, which stuck recovery
        ages against, so it must be read at claim time. Returns False when the race is no longer in ``expected`` (another
        invocation claimed it first).
        """
        async with get_async_session() as db:
            result = await db.execute(
                update(RacePool)
                .where(RacePool.id == race_id)
                .where(RacePool.status == RaceStatus.ACTIVE)
                .where(_status_matches(expected))
                .values(snapshot_status=in_progress, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1

        self.logger.debug(
            "Phase claim",
            race_id=race_id,
            expected=expected.value,
            in_progress=in_progress.value,
            claimed=claimed
        )
        return claimed

    async def complete_entry_snapshot(
        self,
        race: RacePool,
        holders: Sequence[HolderBalance],
        now: datetime
    ) -> int:
        """
        Upsert the round's participants and mark the entry snapshot complete.

        Both writes share one transaction; nothing is kept if the race no
        longer holds the entry marker.
        """
        round_number = race.round_number

        async with get_async_session() as db:
            rows = [
                {
                    "race_id": race.id,
                    "wallet_address": holder.wallet,
                    "round_number": round_number,
                    "rank": position,
                    "entry_balance": holder.balance,
                    "token_balance": holder.balance,
                    "is_eligible": True,
                    "reward_amount": Decimal("0"),
                    "claimed": False,
                    "created_at": now,
                    "updated_at": now,
                }
                for position, holder in enumerate(holders, start=1)
            ]

            insert = _dialect_insert(db)
            stmt = insert(RaceParticipant).values(rows)
            stmt = stmt.on_conflict_do_update(
                index_elements=["race_id", "wallet_address", "round_number"],
                set_={
                    "rank": stmt.excluded.rank,
                    "entry_balance": stmt.excluded.entry_balance,
                    "token_balance": stmt.excluded.token_balance,
                    "is_eligible": True,
                    "reward_amount": Decimal("0"),
                    "claimed": False,
                    "updated_at": now,
                }
            )
            await db.execute(stmt)

            result = await db.execute(
                update(RacePool)
                .where(RacePool.id == race.id)
                .where(RacePool.snapshot_status == SnapshotStatus.ENTRY_IN_PROGRESS)
                .values(
                    snapshot_status=SnapshotStatus.ENTRY_COMPLETE,
                    entry_snapshot_at=now,
                    snapshot_error=None,
                    total_participants=len(rows),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise SnapshotPhaseError(
                    "Entry marker lost before completion",
                    {"race_id": race.id}
                )

        return len(rows)

    async def finalize_round(
        self,
        race: RacePool,
        evaluations: Iterable[Dict],
        now: datetime
    ) -> SnapshotStatus:
        """
        Persist eligibility and rewards, then advance or complete the race.

        ``evaluations`` are dicts with ``id``, ``token_balance``,
        ``is_eligible`` and ``reward_amount``. Returns the resulting
        snapshot status.
        """
        current_round = race.round_number
        total_rounds = race.rounds_total

        if current_round >= total_rounds:
            values = dict(
                status=RaceStatus.COMPLETED,
                snapshot_status=SnapshotStatus.COMPLETED,
                snapshot_error=None,
                time_remaining_hours=Decimal("0"),
                updated_at=now,
            )
        else:
            values = dict(
                current_round=current_round + 1,
                round_started_at=now,
                entry_snapshot_at=None,
                snapshot_status=SnapshotStatus.PENDING,
                snapshot_error=None,
                retry_count=0,
                time_remaining_hours=Decimal((total_rounds - current_round) * 24),
                updated_at=now,
            )

        async with get_async_session() as db:
            rows = [dict(row, updated_at=now) for row in evaluations]
            if rows:
                await db.execute(update(RaceParticipant), rows)

            result = await db.execute(
                update(RacePool)
                .where(RacePool.id == race.id)
                .where(RacePool.snapshot_status == SnapshotStatus.END_IN_PROGRESS)
                .where(RacePool.current_round == current_round)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise SnapshotPhaseError(
                    "End marker lost before completion",
                    {"race_id": race.id, "round": current_round}
                )

        return values["snapshot_status"]

    async def record_failure(
        self,
        race_id: str,
        in_progress: SnapshotStatus,
        error: str,
        now: datetime,
        max_retries: int
    ) -> Optional[RacePool]:
        """
        Count a failed attempt and release the marker.

        The race goes back to its pre-attempt status, or to ``error`` once
        ``max_retries`` attempts have failed. Returns None if the race no
        longer holds ``in_progress`` (recovered elsewhere).
        """
        async with get_async_session() as db:
            result = await db.execute(
                select(RacePool)
                .where(RacePool.id == race_id)
                .where(RacePool.snapshot_status == in_progress)
                .with_for_update()
            )
            race = result.scalar_one_or_none()
            if race is None:
                return None

            race.retry_count = race.attempts + 1
            race.snapshot_status = (
                SnapshotStatus.ERROR if race.retry_count >= max_retries else PRE_ATTEMPT_STATUS[in_progress]
            )
            race.snapshot_error = error
            race.last_retry_at = now
            race.updated_at = now
            return race

    async def recover_stuck_race(
        self,
        race_id: str,
        cutoff: datetime,
        now: datetime,
        max_retries: int
    ) -> Optional[RacePool]:
        """Demote a stuck in-progress race if it is still stuck."""
        async with get_async_session() as db:
            result = await db.execute(
                select(RacePool)
                .where(RacePool.id == race_id)
                .where(RacePool.snapshot_status.in_(IN_PROGRESS_STATUSES))
                .where(RacePool.updated_at < cutoff)
                .with_for_update()
            )
            race = result.scalar_one_or_none()
            if race is None:
                return None

            stuck_status = race.snapshot_status
            race.retry_count = race.attempts + 1
            race.snapshot_status = (
                SnapshotStatus.ERROR if race.retry_count >= max_retries else PRE_ATTEMPT_STATUS[stuck_status]
            )
            race.snapshot_error = f"Recovered from stuck: {stuck_status.value}"
            race.last_retry_at = now
            race.updated_at = now
            return race

    # Operator actions

    async def create_race(self, race: RacePool) -> RacePool:
        async with get_async_session() as db:
            db.add(race)
            await db.flush()
            return race

    async def reset_race(self, race_id: str, now: datetime) -> RacePool:
        """Return an errored race to its retryable phase with a fresh retry budget."""
        async with get_async_session() as db:
            race = await db.get(RacePool, race_id, with_for_update=True)
            if race is None:
                raise RaceNotFoundError(race_id)

            if race.phase != SnapshotStatus.ERROR or not race.is_active:
                raise ValidationError(
                    f"Only active races in error can be reset (phase: {race.phase.value})",
                    {"race_id": race_id}
                )

            if race.entry_snapshot_at is not None:
                race.snapshot_status = SnapshotStatus.ENTRY_COMPLETE
            else:
                race.snapshot_status = SnapshotStatus.PENDING
            race.retry_count = 0
            race.last_retry_at = None
            race.snapshot_error = None
            race.updated_at = now
            return race
