"""
Reward claim service.

Wallets turn their unclaimed round rewards into one claim request per race;
the payout dispatcher hands pending requests to the payout executor and the
wallet confirms the resulting transaction.

A claim is moved to ``submitting`` with a committed compare-and-set before
the executor is called, so it is submitted by at most one dispatcher. A
claim left in ``submitting`` past the stuck threshold counts as a failed
attempt. Every submission carries the claim id, so the executor can recognise a
claim sent again after an interrupted attempt.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select, update

from app.core.config import settings
from app.core.database import get_async_session
from app.core.exceptions import (
    ClaimError, ClaimNotFoundError, ClaimOwnershipError, RaceNotFoundError, ValidationError
)
from app.models.claim import ClaimRequest, ClaimStatus, OPEN_CLAIM_STATUSES
from app.models.participant import RaceParticipant
from app.models.race import RacePool
from app.utils.timeutils import frozen_clock, utc_now
from app.utils.validation import validate_transaction_signature, validate_wallet_address
from .executor_client import PayoutExecutorClient, get_payout_executor_client


logger = structlog.get_logger(__name__)


class ClaimService:
    """Creates and confirms reward claim requests."""

    def __init__(self):
        self.logger = logger.bind(service="claim_service")

    async def create_claim(self, race_id: str, wallet: str, now: Optional[datetime] = None) -> ClaimRequest:
        """
        Bundle every unclaimed positive reward of ``wallet`` in ``race_id``.

        The covered participant rows are flagged ``claimed`` in the same
        transaction, so a second request for the same rewards is refused.
        """
        now = now or utc_now()
        if not validate_wallet_address(wallet):
            raise ValidationError(f"Invalid wallet address: {wallet}", {"wallet": wallet})

        async with get_async_session() as db:
            race = await db.get(RacePool, race_id)
            if race is None:
                raise RaceNotFoundError(race_id)

            result = await db.execute(
                select(RaceParticipant)
                .where(RaceParticipant.race_id == race_id)
                .where(RaceParticipant.wallet_address == wallet)
                .where(RaceParticipant.claimed.is_(False))
                .where(RaceParticipant.reward_amount > 0)
                .order_by(RaceParticipant.round_number)
                .with_for_update()
            )
            rewards = list(result.scalars().all())

            if not rewards:
                open_claim = await db.execute(
                    select(ClaimRequest.id)
                    .where(ClaimRequest.race_id == race_id)
                    .where(ClaimRequest.wallet_address == wallet)
                    .where(ClaimRequest.status.in_(OPEN_CLAIM_STATUSES))
                )
                if open_claim.first() is not None:
                    raise ClaimError(
                        "A claim for these rewards is already in progress",
                        {"race_id": race_id, "wallet": wallet}
                    )
                raise ClaimError("No unclaimed rewards", {"race_id": race_id, "wallet": wallet})

            amount = sum((Decimal(r.reward_amount) for r in rewards), Decimal("0"))
            claim = ClaimRequest(
                race_id=race_id,
                wallet_address=wallet,
                amount=amount,
                status=ClaimStatus.PENDING,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            db.add(claim)
            await db.flush()

            for reward in rewards:
                reward.claimed = True
                reward.claimed_at = now
                reward.claim_request_id = claim.id

            self.logger.info(
                "Claim request created",
                claim_id=claim.id,
                race_id=race_id,
                wallet=wallet,
                amount=str(amount),
                rounds=[r.round_number for r in rewards]
            )
            return claim

    async def get_claim(self, claim_id: int) -> ClaimRequest:
        async with get_async_session() as db:
            claim = await db.get(ClaimRequest, claim_id)
            if claim is None:
                raise ClaimNotFoundError(claim_id)
            return claim

    async def confirm_claim(
        self,
        claim_id: int,
        tx_hash: str,
        wallet: str,
        now: Optional[datetime] = None
    ) -> ClaimRequest:
        """Mark a claim completed once its payout transaction is known."""
        now = now or utc_now()
        if not validate_transaction_signature(tx_hash):
            raise ValidationError("Invalid transaction signature format", {"tx_hash": tx_hash})

        async with get_async_session() as db:
            claim = await db.get(ClaimRequest, claim_id, with_for_update=True)
            if claim is None:
                raise ClaimNotFoundError(claim_id)

            if claim.wallet_address != wallet:
                raise ClaimOwnershipError(wallet, claim_id)

            if not claim.can_confirm:
                raise ClaimError(
                    f"Claim request cannot be confirmed in status {claim.status.value}",
                    {"claim_id": claim_id, "status": claim.status.value}
                )

            claim.mark_completed(tx_hash, now)
            claim.updated_at = now

            self.logger.info("Claim confirmed", claim_id=claim_id, wallet=wallet, tx_hash=tx_hash)
            return claim


@dataclass
class DispatchReport:
    submitted: List[int] = field(default_factory=list)
    retrying: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    recovered: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.submitted) + len(self.retrying) + len(self.failed)

    def to_dict(self) -> Dict[str, int]:
        return {
            "attempted": self.attempted,
            "submitted": len(self.submitted),
            "retrying": len(self.retrying),
            "failed": len(self.failed),
            "recovered": len(self.recovered),
            "skipped": len(self.skipped),
        }


class PayoutDispatcher:
    """Submits pending claim requests to the payout executor with bounded attempts."""

    def __init__(
        self,
        executor_client: Optional[PayoutExecutorClient] = None,
        max_attempts: Optional[int] = None,
        batch_size: Optional[int] = None,
        stuck_threshold: Optional[timedelta] = None,
    ):
        self.logger = logger.bind(service="payout_dispatcher")
        self._executor_client = executor_client
        self.max_attempts = max_attempts or settings.payout_max_attempts
        self.batch_size = batch_size or settings.payout_batch_size
        self.stuck_threshold = stuck_threshold or timedelta(minutes=settings.payout_stuck_threshold_minutes)

    async def _get_executor(self) -> PayoutExecutorClient:
        if self._executor_client is None:
            self._executor_client = await get_payout_executor_client()
        return self._executor_client

    async def dispatch_pending(self, now: Optional[datetime] = None) -> DispatchReport:
        """
        Submit one batch of pending claims. Each claim is recorded independently.

        ``now`` pins every timestamp of the run; without it each claim reads
        the clock when it is marked and when its result is recorded.
        """
        clock = frozen_clock(now) if now is not None else utc_now
        report = DispatchReport()
        executor = await self._get_executor()

        report.recovered = await self.recover_stale_submissions(clock())

        async with get_async_session() as db:
            result = await db.execute(
                select(ClaimRequest, RacePool.contract_address)
                .join(RacePool, RacePool.id == ClaimRequest.race_id)
                .where(ClaimRequest.status == ClaimStatus.PENDING)
                .order_by(ClaimRequest.created_at, ClaimRequest.id)
                .limit(self.batch_size)
            )
            pending = [(claim, mint) for claim, mint in result.all()]

        if not pending:
            return report

        self.logger.info("Dispatching pending claims", count=len(pending))

        for claim, token_mint in pending:
            if not await self._mark_submitting(claim.id, clock()):
                self.logger.info("Claim taken by another dispatcher, skipping", claim_id=claim.id)
                report.skipped.append(claim.id)
                continue

            try:
                submission = await executor.submit_claim(
                    claim_id=claim.id,
                    race_id=claim.race_id,
                    wallet=claim.wallet_address,
                    amount=str(claim.amount),
                    token_mint=token_mint,
                )
                error = submission.error
            except Exception as e:
                submission = None
                error = str(e)

            status = await self._record_attempt(claim.id, submission, error, clock())
            if status == ClaimStatus.SUBMITTED:
                report.submitted.append(claim.id)
            elif status == ClaimStatus.FAILED:
                report.failed.append(claim.id)
            elif status == ClaimStatus.PENDING:
                report.retrying.append(claim.id)

        self.logger.info("Claim dispatch finished", **report.to_dict())
        return report

    async def recover_stale_submissions(self, now: datetime) -> List[int]:
        """Count submissions whose result was never recorded as failed attempts."""
        cutoff = now - self.stuck_threshold
        recovered = []

        async with get_async_session() as db:
            result = await db.execute(
                select(ClaimRequest)
                .where(ClaimRequest.status == ClaimStatus.SUBMITTING)
                .where(ClaimRequest.last_attempt_at < cutoff)
                .order_by(ClaimRequest.last_attempt_at)
                .with_for_update()
            )
            for claim in result.scalars().all():
                claim.mark_attempt_failed("Recovered from stuck: submitting", now, self.max_attempts)
                claim.updated_at = now
                if claim.status == ClaimStatus.FAILED:
                    await self._release_rewards(db, claim.id, now)
                recovered.append(claim.id)
                self.logger.warning(
                    "Recovered stuck claim submission",
                    claim_id=claim.id,
                    attempt=claim.attempts,
                    new_status=claim.status.value
                )

        return recovered

    async def _mark_submitting(self, claim_id: int, now: datetime) -> bool:
        """Compare-and-set pending -> submitting, committed before the executor call."""
        async with get_async_session() as db:
            result = await db.execute(
                update(ClaimRequest)
                .where(ClaimRequest.id == claim_id)
                .where(ClaimRequest.status == ClaimStatus.PENDING)
                .values(status=ClaimStatus.SUBMITTING, last_attempt_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def _record_attempt(self, claim_id: int, submission, error: Optional[str], now: datetime) -> Optional[ClaimStatus]:
        async with get_async_session() as db:
            claim = await db.get(ClaimRequest, claim_id, with_for_update=True)
            if claim is None or claim.status != ClaimStatus.SUBMITTING:
                # Recovered or confirmed while the executor call was running
                self.logger.warning("Claim no longer submitting, result dropped", claim_id=claim_id)
                return None

            if submission is not None and submission.accepted:
                claim.mark_submitted(submission.tx_hash, now)
            else:
                claim.mark_attempt_failed(error or "Unknown error", now, self.max_attempts)
                self.logger.warning(
                    "Claim submission failed",
                    claim_id=claim_id,
                    attempt=claim.attempts,
                    max_attempts=self.max_attempts,
                    error=error
                )

                if claim.status == ClaimStatus.FAILED:
                    await self._release_rewards(db, claim_id, now)
                    self.logger.error("Claim request failed permanently", claim_id=claim_id)

            claim.updated_at = now
            return claim.status

    @staticmethod
    async def _release_rewards(db, claim_id: int, now: datetime) -> None:
        """Unflag the rewards of a failed claim so the wallet can claim them again."""
        await db.execute(
            update(RaceParticipant)
            .where(RaceParticipant.claim_request_id == claim_id)
            .values(claimed=False, claimed_at=None, claim_request_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )


# Global instances
_claim_service: Optional[ClaimService] = None
_payout_dispatcher: Optional[PayoutDispatcher] = None


async def get_claim_service() -> ClaimService:
    """Get or create global ClaimService instance."""
    global _claim_service
    if _claim_service is None:
        _claim_service = ClaimService()
    return _claim_service


async def get_payout_dispatcher() -> PayoutDispatcher:
    """Get or create global PayoutDispatcher instance."""
    global _payout_dispatcher
    if _payout_dispatcher is None:
        _payout_dispatcher = PayoutDispatcher()
    return _payout_dispatcher
