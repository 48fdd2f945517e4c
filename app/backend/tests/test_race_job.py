"""
Test the race reward tick: phase scheduling, recovery ordering, retries
and multi-round progression.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from app.core.database import get_async_session
from app.core.exceptions import LedgerFetchError, LedgerFetchReason
from app.models.participant import RaceParticipant
from app.models.race import RaceStatus, SnapshotStatus
from app.services.races.job import RaceRewardJob
from app.services.races.repository import RaceRepository

from conftest import T0, FakeClock, hours, minutes, load_race


@pytest.fixture
def job(ledger):
    return RaceRewardJob(repository=RaceRepository(), ledger_client=ledger)


async def participants_of(race_id, round_number=1):
    return await RaceRepository().load_round_participants(race_id, round_number)


async def test_no_transition_before_entry_delay(job, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {"alice": "100"})

    report = await job.run_tick(now=T0 + minutes(59))

    assert report.results == []
    assert ledger.calls == []
    assert (await load_race(race.id)).snapshot_status == SnapshotStatus.PENDING


async def test_entry_snapshot_ranks_holders(job, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {"alice": "100", "bob": "50", "carol": "10"})
    now = T0 + hours(1)

    report = await job.run_tick(now=now)

    assert report.to_response() == {
        "success": True,
        "processed": 1,
        "results": [{"raceId": race.id, "action": "entry_snapshot", "success": True}],
    }

    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_COMPLETE
    assert stored.entry_snapshot_at == now
    assert stored.total_participants == 3
    assert stored.snapshot_error is None

    participants = await participants_of(race.id)
    assert [(p.wallet_address, p.rank) for p in participants] == [("alice", 1), ("bob", 2), ("carol", 3)]
    assert participants[0].entry_balance == Decimal("100")
    assert all(p.is_eligible and p.reward_amount == 0 for p in participants)


async def test_null_snapshot_status_is_treated_as_pending(job, ledger, race_factory):
    race = await race_factory(snapshot_status=None)
    ledger.set_holders(race.contract_address, {"alice": "100"})

    await job.run_tick(now=T0 + hours(1))

    assert (await load_race(race.id)).snapshot_status == SnapshotStatus.ENTRY_COMPLETE


async def test_end_phase_waits_for_round_end(job, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {"alice": "100"})

    await job.run_tick(now=T0 + hours(1))
    report = await job.run_tick(now=T0 + hours(23))

    assert report.results == []
    assert ledger.calls == [race.contract_address]


async def test_two_round_race_end_to_end(job, ledger, race_factory):
    race = await race_factory(total_rounds=2, prize_pool=Decimal("60"))
    asset = race.contract_address
    ledger.set_holders(asset, {"alice": "100", "bob": "50", "carol": "10"})

    await job.run_tick(now=T0 + hours(1))

    ledger.set_holders(asset, {"alice": "95", "bob": "50", "carol": "12"})
    round_end = T0 + hours(24)
    report = await job.run_tick(now=round_end)
    assert report.results[0].action == "end_snapshot"
    assert report.results[0].success

    rewards = {p.wallet_address: p.reward_amount for p in await participants_of(race.id)}
    assert rewards == {"alice": Decimal("6"), "bob": Decimal("6"), "carol": Decimal("6")}

    stored = await load_race(race.id)
    assert stored.current_round == 2
    assert stored.round_started_at == round_end
    assert stored.entry_snapshot_at is None
    assert stored.snapshot_status == SnapshotStatus.PENDING
    assert stored.retry_count == 0
    assert stored.status == RaceStatus.ACTIVE

    # Round 2 runs on the new anchor
    ledger.set_holders(asset, {"dave": "500", "alice": "95"})
    await job.run_tick(now=round_end + hours(1))
    assert [p.wallet_address for p in await participants_of(race.id, 2)] == ["dave", "alice"]

    ledger.set_holders(asset, {"dave": "100", "alice": "95"})
    await job.run_tick(now=round_end + hours(24))

    round_two = {p.wallet_address: p for p in await participants_of(race.id, 2)}
    assert not round_two["dave"].is_eligible
    assert round_two["dave"].reward_amount == 0
    assert round_two["alice"].reward_amount == Decimal("18")

    stored = await load_race(race.id)
    assert stored.status == RaceStatus.COMPLETED
    assert stored.snapshot_status == SnapshotStatus.COMPLETED
    assert stored.time_remaining_hours == 0


async def test_eligibility_boundary(job, ledger, race_factory):
    race = await race_factory()
    asset = race.contract_address
    ledger.set_holders(asset, {"alice": "100", "bob": "100"})
    await job.run_tick(now=T0 + hours(1))

    ledger.set_holders(asset, {"alice": "90", "bob": "89.999"})
    await job.run_tick(now=T0 + hours(24))

    participants = {p.wallet_address: p for p in await participants_of(race.id)}
    assert participants["alice"].is_eligible
    assert not participants["bob"].is_eligible
    assert participants["bob"].token_balance == Decimal("89.999")
    assert participants["alice"].reward_amount == Decimal("18")
    assert participants["bob"].reward_amount == 0


async def test_participant_missing_from_current_holders_is_ineligible(job, ledger, race_factory):
    race = await race_factory()
    asset = race.contract_address
    ledger.set_holders(asset, {"alice": "100", "bob": "100"})
    await job.run_tick(now=T0 + hours(1))

    ledger.set_holders(asset, {"alice": "100", "newcomer": "1000"})
    await job.run_tick(now=T0 + hours(24))

    participants = {p.wallet_address: p for p in await participants_of(race.id)}
    assert set(participants) == {"alice", "bob"}
    assert participants["bob"].token_balance == 0
    assert not participants["bob"].is_eligible


async def test_retry_ceiling_moves_race_to_error(job, ledger, race_factory):
    race = await race_factory()
    ledger.fail_with(race.contract_address, LedgerFetchError("upstream down"))

    first = T0 + hours(1)
    await job.run_tick(now=first)
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.PENDING
    assert stored.retry_count == 1
    assert stored.last_retry_at == first
    assert "upstream down" in stored.snapshot_error

    # Inside the retry delay nothing is attempted
    report = await job.run_tick(now=first + minutes(4))
    assert report.skipped == {race.id: "retry_delay"}
    assert len(ledger.calls) == 1

    await job.run_tick(now=first + minutes(5))
    await job.run_tick(now=first + minutes(10))

    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ERROR
    assert stored.retry_count == 3
    assert len(ledger.calls) == 3

    report = await job.run_tick(now=first + minutes(20))
    assert report.candidates == 0
    assert len(ledger.calls) == 3
    assert (await load_race(race.id)) is not None


async def test_stuck_race_recovered_before_processing(job, ledger, race_factory):
    stuck = await race_factory(
        snapshot_status=SnapshotStatus.ENTRY_IN_PROGRESS,
        updated_at=T0 + hours(1),
    )
    ledger.set_holders(stuck.contract_address, {"alice": "100"})
    now = T0 + hours(1) + minutes(11)

    report = await job.run_tick(now=now)

    assert [r.race_id for r in report.recovered] == [stuck.id]
    stored = await load_race(stuck.id)
    assert stored.snapshot_status == SnapshotStatus.PENDING
    assert stored.retry_count == 1
    assert stored.snapshot_error == "Recovered from stuck: entry_in_progress"

    # Recovered in this tick, retried only after the delay
    assert report.skipped == {stuck.id: "retry_delay"}
    assert ledger.calls == []

    await job.run_tick(now=now + minutes(5))
    assert (await load_race(stuck.id)).snapshot_status == SnapshotStatus.ENTRY_COMPLETE


async def test_recent_in_progress_race_is_left_alone(job, ledger, race_factory):
    race = await race_factory(
        snapshot_status=SnapshotStatus.ENTRY_IN_PROGRESS,
        updated_at=T0 + hours(1),
    )

    report = await job.run_tick(now=T0 + hours(1) + minutes(9))

    assert report.recovered == []
    assert report.candidates == 0
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_IN_PROGRESS
    assert stored.retry_count == 0


async def test_stuck_end_phase_returns_to_entry_complete(job, ledger, race_factory):
    race = await race_factory(
        snapshot_status=SnapshotStatus.END_IN_PROGRESS,
        entry_snapshot_at=T0 + hours(1),
        updated_at=T0 + hours(24),
    )

    await job.run_tick(now=T0 + hours(24) + minutes(15))

    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_COMPLETE
    assert stored.retry_count == 1


async def test_stuck_race_at_ceiling_goes_to_error(job, race_factory):
    race = await race_factory(
        snapshot_status=SnapshotStatus.ENTRY_IN_PROGRESS,
        retry_count=2,
        updated_at=T0 + hours(1),
    )

    await job.run_tick(now=T0 + hours(2))

    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ERROR
    assert stored.retry_count == 3


async def test_failing_race_does_not_block_others(job, ledger, race_factory):
    broken = await race_factory()
    healthy = await race_factory()
    ledger.fail_with(broken.contract_address, LedgerFetchError("rate limited", LedgerFetchReason.RATE_LIMITED))
    ledger.set_holders(healthy.contract_address, {"alice": "100"})

    report = await job.run_tick(now=T0 + hours(1))

    outcomes = {r.race_id: r for r in report.results}
    assert not outcomes[broken.id].success
    assert "rate limited" in outcomes[broken.id].error
    assert outcomes[healthy.id].success
    assert report.processed == 2
    assert (await load_race(healthy.id)).snapshot_status == SnapshotStatus.ENTRY_COMPLETE


async def test_zero_holders_is_a_retryable_failure(job, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {})

    report = await job.run_tick(now=T0 + hours(1))

    assert not report.results[0].success
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.PENDING
    assert stored.retry_count == 1
    assert "No holders found" in stored.snapshot_error


async def test_missing_token_address_is_a_retryable_failure(job, ledger, race_factory):
    race = await race_factory(contract_address=None)

    await job.run_tick(now=T0 + hours(1))

    stored = await load_race(race.id)
    assert stored.retry_count == 1
    assert "No token address found" in stored.snapshot_error
    assert ledger.calls == []


async def test_completed_and_errored_races_are_not_candidates(job, ledger, race_factory):
    await race_factory(status=RaceStatus.COMPLETED, snapshot_status=SnapshotStatus.COMPLETED)
    await race_factory(snapshot_status=SnapshotStatus.ERROR, retry_count=3)

    report = await job.run_tick(now=T0 + hours(30))

    assert report.candidates == 0
    assert ledger.calls == []


async def test_entry_snapshot_replaces_rows_instead_of_duplicating(job, ledger, race_factory):
    race = await race_factory()
    asset = race.contract_address
    ledger.set_holders(asset, {"alice": "100", "bob": "50"})
    await job.run_tick(now=T0 + hours(1))

    # A retried entry for the same round
    async with get_async_session() as session:
        stored = await session.get(type(race), race.id)
        stored.snapshot_status = SnapshotStatus.PENDING
    ledger.set_holders(asset, {"bob": "300", "alice": "100"})
    await job.run_tick(now=T0 + hours(2))

    async with get_async_session() as session:
        count = (await session.execute(
            select(func.count(RaceParticipant.id)).where(RaceParticipant.race_id == race.id)
        )).scalar()
    assert count == 2

    participants = await participants_of(race.id)
    assert [(p.wallet_address, p.rank) for p in participants] == [("bob", 1), ("alice", 2)]


async def test_holders_all_gone_completes_round_without_rewards(job, ledger, race_factory):
    race = await race_factory()
    asset = race.contract_address
    ledger.set_holders(asset, {"alice": "100"})
    await job.run_tick(now=T0 + hours(1))

    ledger.set_holders(asset, {})
    report = await job.run_tick(now=T0 + hours(24))

    assert report.results[0].success
    stored = await load_race(race.id)
    assert stored.status == RaceStatus.COMPLETED
    assert stored.snapshot_status == SnapshotStatus.COMPLETED
    assert stored.retry_count == 0

    [alice] = await participants_of(race.id)
    assert not alice.is_eligible
    assert alice.token_balance == 0
    assert alice.reward_amount == 0


async def test_markers_are_stamped_when_claimed_not_when_tick_started(ledger, race_factory):
    clock = FakeClock(T0 + hours(1))
    slow = await race_factory()
    late = await race_factory()
    ledger.set_holders(slow.contract_address, {"alice": "100"})
    ledger.set_holders(late.contract_address, {"bob": "50"})

    job = RaceRewardJob(repository=RaceRepository(), ledger_client=ledger, clock=clock)
    overlapping = RaceRewardJob(repository=RaceRepository(), ledger_client=ledger, clock=clock)
    overlapping_reports = []

    async def slow_fetch():
        clock.advance(minutes(11))

    async def overlapping_tick():
        overlapping_reports.append(await overlapping.run_tick())

    ledger.on_next_fetch(slow.contract_address, slow_fetch)
    ledger.on_next_fetch(late.contract_address, overlapping_tick)

    report = await job.run_tick()

    # The second marker was claimed 11 minutes into the tick, so the
    # overlapping tick sees a fresh marker and leaves it alone
    [overlap] = overlapping_reports
    assert overlap.recovered == []
    assert overlap.processed == 0

    assert [r.success for r in report.results] == [True, True]
    stored = await load_race(late.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_COMPLETE
    assert stored.retry_count == 0
    assert stored.entry_snapshot_at == T0 + hours(1) + minutes(11)


async def test_failure_is_stamped_when_it_happens(ledger, race_factory):
    clock = FakeClock(T0 + hours(1))
    race = await race_factory()
    ledger.fail_with(race.contract_address, LedgerFetchError("timeout", LedgerFetchReason.TRANSPORT))

    async def slow_fetch():
        clock.advance(minutes(3))

    ledger.on_next_fetch(race.contract_address, slow_fetch)
    job = RaceRewardJob(repository=RaceRepository(), ledger_client=ledger, clock=clock)

    report = await job.run_tick()

    assert report.started_at == T0 + hours(1)
    stored = await load_race(race.id)
    assert stored.retry_count == 1
    assert stored.last_retry_at == T0 + hours(1) + minutes(3)
    assert stored.updated_at == T0 + hours(1) + minutes(3)
