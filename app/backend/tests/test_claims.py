"""
Test reward claims, payout dispatch and claim confirmation.
"""

from decimal import Decimal

import pytest
from solders.keypair import Keypair

from app.core.exceptions import (
    ClaimError, ClaimNotFoundError, ClaimOwnershipError, ConfigurationError,
    ExternalServiceError, RaceNotFoundError, ValidationError
)
from app.core.database import get_async_session
from app.models.claim import ClaimRequest, ClaimStatus
from app.services.payouts.claim_service import ClaimService, PayoutDispatcher
from app.services.payouts.executor_client import PayoutExecutorClient
from app.services.races.repository import RaceRepository

from conftest import T0, hours, minutes, new_wallet


def signature() -> str:
    return str(Keypair().sign_message(b"payout"))


class FakeExecutor:
    """Transport answering each submission from a script."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []

    async def __call__(self, path, body):
        self.bodies.append((path, body))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def dispatcher_with(*responses, max_attempts=3):
    transport = FakeExecutor(*responses)
    client = PayoutExecutorClient(base_url="http://executor.test", transport=transport)
    return PayoutDispatcher(executor_client=client, max_attempts=max_attempts), transport


@pytest.fixture
def claims():
    return ClaimService()


@pytest.fixture
async def rewarded(race_factory, participant_factory):
    """A race where one wallet earned rewards in two rounds."""
    race = await race_factory(total_rounds=2)
    wallet = new_wallet()
    await participant_factory(race.id, wallet, round_number=1, reward_amount="6")
    await participant_factory(race.id, wallet, round_number=2, reward_amount="2.5")
    return race, wallet


async def wallet_rewards(race_id, wallet):
    return await RaceRepository().list_wallet_rewards(race_id, wallet)


async def update_claim(claim_id, **values):
    async with get_async_session() as session:
        claim = await session.get(ClaimRequest, claim_id)
        for key, value in values.items():
            setattr(claim, key, value)


async def test_claim_bundles_all_unclaimed_rounds(claims, rewarded):
    race, wallet = rewarded

    claim = await claims.create_claim(race.id, wallet, now=T0)

    assert claim.amount == Decimal("8.5")
    assert claim.status == ClaimStatus.PENDING
    assert claim.attempts == 0

    rows = await wallet_rewards(race.id, wallet)
    assert all(r.claimed and r.claim_request_id == claim.id and r.claimed_at == T0 for r in rows)


async def test_second_claim_is_refused_while_first_is_open(claims, rewarded):
    race, wallet = rewarded
    await claims.create_claim(race.id, wallet)

    with pytest.raises(ClaimError, match="already in progress"):
        await claims.create_claim(race.id, wallet)


async def test_claim_without_rewards(claims, race_factory, participant_factory):
    race = await race_factory()
    wallet = new_wallet()
    await participant_factory(race.id, wallet, reward_amount="0")

    with pytest.raises(ClaimError, match="No unclaimed rewards"):
        await claims.create_claim(race.id, wallet)


async def test_claim_rejects_invalid_wallet_and_unknown_race(claims, race_factory):
    race = await race_factory()

    with pytest.raises(ValidationError):
        await claims.create_claim(race.id, "not-a-wallet")
    with pytest.raises(RaceNotFoundError):
        await claims.create_claim("missing", new_wallet())


async def test_dispatch_submits_pending_claims(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet)
    dispatcher, transport = dispatcher_with({"accepted": True, "txHash": "abc"})

    report = await dispatcher.dispatch_pending(now=T0 + hours(1))

    assert report.to_dict() == {
        "attempted": 1, "submitted": 1, "retrying": 0, "failed": 0, "recovered": 0, "skipped": 0
    }
    path, body = transport.bodies[0]
    assert path == "/claims"
    assert body["claimId"] == claim.id
    assert body["wallet"] == wallet
    assert body["tokenMint"] == race.contract_address
    assert Decimal(body["amount"]) == Decimal("8.5")

    stored = await claims.get_claim(claim.id)
    assert stored.status == ClaimStatus.SUBMITTED
    assert stored.tx_hash == "abc"
    assert stored.attempts == 1

    # Submitted claims are not sent again
    report = await dispatcher.dispatch_pending(now=T0 + hours(2))
    assert report.attempted == 0


async def test_rejected_claim_stays_pending_until_attempts_run_out(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet)
    dispatcher, _ = dispatcher_with(
        {"accepted": False, "error": "insufficient funds"},
        ExternalServiceError("executor down"),
        max_attempts=2,
    )

    report = await dispatcher.dispatch_pending(now=T0 + hours(1))
    assert report.retrying == [claim.id]
    stored = await claims.get_claim(claim.id)
    assert stored.status == ClaimStatus.PENDING
    assert stored.last_error == "insufficient funds"

    report = await dispatcher.dispatch_pending(now=T0 + hours(2))
    assert report.failed == [claim.id]
    stored = await claims.get_claim(claim.id)
    assert stored.status == ClaimStatus.FAILED
    assert stored.attempts == 2
    assert stored.last_error == "executor down"

    # Rewards of a failed claim can be claimed again
    rows = await wallet_rewards(race.id, wallet)
    assert not any(r.claimed for r in rows)
    retry = await claims.create_claim(race.id, wallet)
    assert retry.id != claim.id
    assert retry.amount == Decimal("8.5")


async def test_overlapping_dispatches_submit_each_claim_once(claims, rewarded, participant_factory):
    race, wallet = rewarded
    other_wallet = new_wallet()
    await participant_factory(race.id, other_wallet, reward_amount="4")
    first_claim = await claims.create_claim(race.id, wallet, now=T0)
    second_claim = await claims.create_claim(race.id, other_wallet, now=T0 + minutes(1))

    overlapping, overlapping_transport = dispatcher_with({"accepted": True, "txHash": "from-overlap"})
    overlapping_reports = []

    class OverlappingExecutor(FakeExecutor):
        async def __call__(self, path, body):
            if not overlapping_reports:
                overlapping_reports.append(await overlapping.dispatch_pending(now=T0 + hours(1)))
            return await super().__call__(path, body)

    transport = OverlappingExecutor({"accepted": True, "txHash": "from-first"})
    dispatcher = PayoutDispatcher(
        executor_client=PayoutExecutorClient(base_url="http://executor.test", transport=transport),
        max_attempts=3,
    )

    report = await dispatcher.dispatch_pending(now=T0 + hours(1))

    # The overlapping run only saw the claim not yet marked
    [overlap] = overlapping_reports
    assert overlap.submitted == [second_claim.id]
    assert report.submitted == [first_claim.id]
    assert report.skipped == [second_claim.id]

    assert [body["claimId"] for _, body in transport.bodies] == [first_claim.id]
    assert [body["claimId"] for _, body in overlapping_transport.bodies] == [second_claim.id]
    assert (await claims.get_claim(first_claim.id)).tx_hash == "from-first"
    stored = await claims.get_claim(second_claim.id)
    assert stored.tx_hash == "from-overlap"
    assert stored.attempts == 1


async def test_stuck_submission_is_retried_after_threshold(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet, now=T0)
    await update_claim(claim.id, status=ClaimStatus.SUBMITTING, last_attempt_at=T0)
    dispatcher, transport = dispatcher_with({"accepted": True, "txHash": "abc"})

    # Still held by a live submission
    report = await dispatcher.dispatch_pending(now=T0 + minutes(9))
    assert report.recovered == []
    assert transport.bodies == []
    with pytest.raises(ClaimError, match="already in progress"):
        await claims.create_claim(race.id, wallet)

    report = await dispatcher.dispatch_pending(now=T0 + minutes(11))
    assert report.recovered == [claim.id]
    assert report.submitted == [claim.id]

    stored = await claims.get_claim(claim.id)
    assert stored.status == ClaimStatus.SUBMITTED
    assert stored.attempts == 2


async def test_stuck_submission_at_ceiling_fails_and_releases_rewards(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet, now=T0)
    await update_claim(claim.id, status=ClaimStatus.SUBMITTING, last_attempt_at=T0, attempts=2)
    dispatcher, transport = dispatcher_with({"accepted": True}, max_attempts=3)

    report = await dispatcher.dispatch_pending(now=T0 + hours(1))

    assert report.recovered == [claim.id]
    assert report.attempted == 0
    assert transport.bodies == []
    stored = await claims.get_claim(claim.id)
    assert stored.status == ClaimStatus.FAILED
    assert stored.last_error == "Recovered from stuck: submitting"
    assert not any(r.claimed for r in await wallet_rewards(race.id, wallet))


async def test_confirm_completes_claim(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet)
    tx_hash = signature()

    confirmed = await claims.confirm_claim(claim.id, tx_hash, wallet, now=T0 + hours(3))

    assert confirmed.status == ClaimStatus.COMPLETED
    assert confirmed.tx_hash == tx_hash
    assert confirmed.completed_at == T0 + hours(3)

    with pytest.raises(ClaimError):
        await claims.confirm_claim(claim.id, tx_hash, wallet)


async def test_confirm_checks_ownership_and_signature(claims, rewarded):
    race, wallet = rewarded
    claim = await claims.create_claim(race.id, wallet)

    with pytest.raises(ClaimOwnershipError):
        await claims.confirm_claim(claim.id, signature(), new_wallet())
    with pytest.raises(ValidationError):
        await claims.confirm_claim(claim.id, "bad-signature", wallet)
    with pytest.raises(ClaimNotFoundError):
        await claims.confirm_claim(9999, signature(), wallet)


async def test_executor_without_url_raises_configuration_error():
    client = PayoutExecutorClient(base_url="")

    with pytest.raises(ConfigurationError):
        await client.submit_claim(1, "race", new_wallet(), "1", "Mint")
