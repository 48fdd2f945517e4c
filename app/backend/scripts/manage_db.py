#!/usr/bin/env python3
"""
Database and race management script for the race rewards backend.
"""

import asyncio
import sys

import typer
from rich.console import Console
from rich.table import Table

from alembic.config import Config
from alembic import command
from app.core.database import init_database, close_database, DatabaseManager
from app.core.logging import setup_logging, get_logger
from app.core.exceptions import RaceRewardsException
from app.services.ledger.client import close_ledger_client
from app.services.payouts.claim_service import PayoutDispatcher
from app.services.payouts.executor_client import close_payout_executor_client
from app.services.races.job import RaceRewardJob
from app.services.races.repository import RaceRepository
from app.utils.timeutils import utc_now

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database and race management commands")


@app.command()
def init():
    """Initialize database with tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"✅ Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)

    console.print(f"⬇️ Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    alembic_cfg = Config("alembic.ini")
    command.current(alembic_cfg)


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command()
def tick():
    """Run one race reward tick now."""
    async def _tick():
        setup_logging()
        await init_database()
        try:
            return await RaceRewardJob().run_tick()
        finally:
            await close_ledger_client()
            await close_database()

    report = asyncio.run(_tick())

    table = Table(title=f"Race tick at {report.started_at.isoformat()}")
    table.add_column("Race", style="cyan")
    table.add_column("Action")
    table.add_column("Result")
    table.add_column("Error", style="red")

    for recovered in report.recovered:
        table.add_row(
            recovered.race_id,
            "recover_stuck",
            f"{recovered.stuck_status.value} -> {recovered.new_status.value}",
            ""
        )
    for result in report.results:
        table.add_row(result.race_id, result.action, "✅" if result.success else "❌", result.error or "")
    for race_id, reason in report.skipped.items():
        table.add_row(race_id, "skipped", reason, "")

    console.print(table)
    console.print(f"Processed {report.processed} of {report.candidates} candidate races")


@app.command()
def dispatch():
    """Submit pending claim requests to the payout executor."""
    async def _dispatch():
        setup_logging()
        await init_database()
        try:
            return await PayoutDispatcher().dispatch_pending()
        finally:
            await close_payout_executor_client()
            await close_database()

    report = asyncio.run(_dispatch())
    console.print(f"📤 Dispatch finished: {report.to_dict()}")


@app.command("reset-race")
def reset_race(race_id: str):
    """Return a race in error to its retryable phase."""
    async def _reset_race():
        setup_logging()
        await init_database()
        try:
            return await RaceRepository().reset_race(race_id, utc_now())
        finally:
            await close_database()

    try:
        race = asyncio.run(_reset_race())
    except RaceRewardsException as e:
        console.print(f"❌ {e.message}")
        sys.exit(1)

    console.print(f"🔁 Race {race.id} reset to {race.phase.value}")


@app.command()
def status():
    """Show database and race status."""
    table = Table(title="Race Status")
    table.add_column("Race", style="cyan")
    table.add_column("Token")
    table.add_column("Round")
    table.add_column("Phase", style="green")
    table.add_column("Retries")
    table.add_column("Last error", style="red")

    async def _status():
        setup_logging()
        await init_database()
        try:
            if not await DatabaseManager.health_check():
                return None
            races, _ = await RaceRepository().list_races(limit=100)
            return races
        finally:
            await close_database()

    races = asyncio.run(_status())
    if races is None:
        console.print("❌ Database health check failed!")
        sys.exit(1)

    for race in races:
        table.add_row(
            race.id,
            race.token_symbol or "-",
            f"{race.round_number}/{race.rounds_total}",
            race.phase.value,
            str(race.attempts),
            (race.snapshot_error or "")[:60]
        )

    console.print(table)


if __name__ == "__main__":
    app()
