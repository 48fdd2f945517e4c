"""
Shared fixtures: in-memory SQLite database, a scripted ledger client and
a race factory.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("HELIUS_API_KEY", "test-helius-key")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional

import pytest
from solders.keypair import Keypair

from app.core.database import init_database, close_database, get_async_session, DatabaseManager
from app.models.participant import RaceParticipant
from app.models.race import RacePool, RaceStatus, SnapshotStatus
from app.services.ledger.types import HolderBalance


T0 = datetime(2025, 1, 1, 12, 0, 0)


def hours(value: float) -> timedelta:
    return timedelta(hours=value)


def minutes(value: float) -> timedelta:
    return timedelta(minutes=value)


def new_wallet() -> str:
    return str(Keypair().pubkey())


class FakeClock:
    """Settable clock; tests move it forward to simulate slow work."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta):
        self.now += delta


class FakeLedgerClient:
    """Ledger client returning scripted holder lists per asset."""

    def __init__(self):
        self.holders: Dict[str, List[HolderBalance]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.hooks: Dict[str, Callable[[], Awaitable[None]]] = {}

    def set_holders(self, asset: str, balances: Dict[str, str]):
        self.holders[asset] = [
            HolderBalance(wallet=wallet, balance=Decimal(balance))
            for wallet, balance in balances.items()
        ]
        self.holders[asset].sort(key=lambda h: h.balance, reverse=True)
        self.errors.pop(asset, None)

    def fail_with(self, asset: str, error: Exception):
        self.errors[asset] = error

    def on_next_fetch(self, asset: str, hook: Callable[[], Awaitable[None]]):
        """Run ``hook`` once while the next fetch for ``asset`` is in flight."""
        self.hooks[asset] = hook

    async def fetch_top_holders(self, asset: str, limit: int, decimals: int = 6) -> List[HolderBalance]:
        self.calls.append(asset)
        hook = self.hooks.pop(asset, None)
        if hook is not None:
            await hook()
        if asset in self.errors:
            raise self.errors[asset]
        return list(self.holders.get(asset, []))[:limit]


@pytest.fixture(autouse=True)
async def database():
    """Fresh in-memory database per test."""
    await init_database("sqlite:///:memory:")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.fixture
def ledger() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def race_factory():
    """Insert a race; keyword arguments override the defaults."""
    counter = {"n": 0}

    async def _create(**overrides) -> RacePool:
        counter["n"] += 1
        values = dict(
            token_symbol="RACE",
            contract_address=f"Mint{counter['n']}",
            token_decimals=6,
            status=RaceStatus.ACTIVE,
            prize_pool=Decimal("30"),
            daily_reward_amount=None,
            total_rounds=1,
            current_round=1,
            round_started_at=T0,
            snapshot_status=SnapshotStatus.PENDING,
            retry_count=0,
            total_participants=0,
            created_at=T0 + timedelta(seconds=counter["n"]),
            updated_at=T0,
        )
        values.update(overrides)
        race = RacePool(**values)
        async with get_async_session() as session:
            session.add(race)
        return race

    return _create


@pytest.fixture
def participant_factory():
    """Insert a participant row directly."""

    async def _create(
        race_id: str,
        wallet: str,
        round_number: int = 1,
        rank: int = 1,
        entry_balance: str = "100",
        reward_amount: str = "0",
        claimed: bool = False,
        is_eligible: bool = True,
        token_balance: Optional[str] = None,
    ) -> RaceParticipant:
        participant = RaceParticipant(
            race_id=race_id,
            wallet_address=wallet,
            round_number=round_number,
            rank=rank,
            entry_balance=Decimal(entry_balance),
            token_balance=Decimal(token_balance or entry_balance),
            is_eligible=is_eligible,
            reward_amount=Decimal(reward_amount),
            claimed=claimed,
            created_at=T0,
            updated_at=T0,
        )
        async with get_async_session() as session:
            session.add(participant)
        return participant

    return _create


async def load_race(race_id: str) -> RacePool:
    async with get_async_session() as session:
        return await session.get(RacePool, race_id)
