"""
Test phase marker exclusion: claims, lost claims and markers taken away
while a phase is running.
"""

from decimal import Decimal

import pytest

from app.core.exceptions import SnapshotPhaseError
from app.models.race import SnapshotStatus
from app.services.ledger.types import HolderBalance
from app.services.races.recovery import RetryRecoverySupervisor
from app.services.races.repository import RaceRepository
from app.services.races.snapshot_engine import PhaseAction, SnapshotEngine
from app.utils.timeutils import frozen_clock

from conftest import T0, hours, load_race


@pytest.fixture
def repository():
    return RaceRepository()


@pytest.fixture
def engine(repository, ledger):
    return SnapshotEngine(repository, ledger, RetryRecoverySupervisor(repository))


async def test_phase_can_only_be_claimed_once(repository, race_factory):
    race = await race_factory()
    now = T0 + hours(1)

    first = await repository.claim_phase(race.id, SnapshotStatus.PENDING, SnapshotStatus.ENTRY_IN_PROGRESS, now)
    second = await repository.claim_phase(race.id, SnapshotStatus.PENDING, SnapshotStatus.ENTRY_IN_PROGRESS, now)

    assert first is True
    assert second is False
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_IN_PROGRESS
    assert stored.updated_at == now


async def test_lost_entry_claim_is_not_a_retry(repository, engine, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {"alice": "100"})
    now = T0 + hours(1)
    await repository.claim_phase(race.id, SnapshotStatus.PENDING, SnapshotStatus.ENTRY_IN_PROGRESS, now)

    outcome = await engine.run_entry_phase(race, frozen_clock(now))

    assert outcome.action == PhaseAction.ENTRY_SNAPSHOT
    assert not outcome.success
    assert not outcome.claimed
    assert outcome.error == "Phase already claimed"
    assert ledger.calls == []

    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_IN_PROGRESS
    assert stored.retry_count == 0
    assert stored.snapshot_error is None


async def test_lost_end_claim_is_not_a_retry(repository, engine, ledger, race_factory):
    race = await race_factory(snapshot_status=SnapshotStatus.ENTRY_COMPLETE, entry_snapshot_at=T0 + hours(1))
    now = T0 + hours(24)
    await repository.claim_phase(race.id, SnapshotStatus.ENTRY_COMPLETE, SnapshotStatus.END_IN_PROGRESS, now)

    outcome = await engine.run(race, PhaseAction.END_SNAPSHOT, frozen_clock(now))

    assert not outcome.claimed
    assert outcome.error == "Phase already claimed"
    assert ledger.calls == []
    assert (await load_race(race.id)).retry_count == 0


async def test_entry_marker_taken_away_mid_fetch_discards_snapshot(repository, engine, ledger, race_factory):
    race = await race_factory()
    ledger.set_holders(race.contract_address, {"alice": "100", "bob": "50"})
    now = T0 + hours(1)

    async def recovered_elsewhere():
        await repository.recover_stuck_race(race.id, now + hours(1), now, max_retries=3)

    ledger.on_next_fetch(race.contract_address, recovered_elsewhere)

    outcome = await engine.run_entry_phase(race, frozen_clock(now))

    assert not outcome.success
    assert outcome.claimed
    assert "Entry marker lost before completion" in outcome.error
    assert await repository.load_round_participants(race.id, 1) == []

    # Only the recovery counted an attempt
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.PENDING
    assert stored.retry_count == 1
    assert stored.snapshot_error == "Recovered from stuck: entry_in_progress"


async def test_complete_entry_snapshot_requires_marker(repository, race_factory):
    race = await race_factory()
    holders = [HolderBalance(wallet="alice", balance=Decimal("100"))]

    with pytest.raises(SnapshotPhaseError, match="Entry marker lost"):
        await repository.complete_entry_snapshot(race, holders, T0 + hours(1))

    assert await repository.load_round_participants(race.id, 1) == []
    assert (await load_race(race.id)).snapshot_status == SnapshotStatus.PENDING


async def test_finalize_round_requires_marker(repository, race_factory, participant_factory):
    race = await race_factory(snapshot_status=SnapshotStatus.ENTRY_COMPLETE, entry_snapshot_at=T0 + hours(1))
    participant = await participant_factory(race.id, "alice")
    evaluations = [{
        "id": participant.id,
        "token_balance": Decimal("100"),
        "is_eligible": True,
        "reward_amount": Decimal("18"),
    }]

    with pytest.raises(SnapshotPhaseError, match="End marker lost"):
        await repository.finalize_round(race, evaluations, T0 + hours(24))

    [stored_participant] = await repository.load_round_participants(race.id, 1)
    assert stored_participant.reward_amount == 0
    stored = await load_race(race.id)
    assert stored.snapshot_status == SnapshotStatus.ENTRY_COMPLETE
    assert stored.current_round == 1
