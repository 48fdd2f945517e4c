"""
Main entry point for the scheduler service.
Runs the race reward tick and payout dispatch outside the API process.
"""

import asyncio
import signal

from app.core.database import init_database, close_database
from app.core.logging import setup_logging
from app.services.ledger.client import close_ledger_client
from app.services.payouts.executor_client import close_payout_executor_client
from .race_scheduler import RaceScheduler

import structlog

logger = structlog.get_logger(__name__)


class SchedulerMain:
    """Main scheduler service coordinator."""

    def __init__(self):
        self.race_scheduler = None
        self.running = False
        self.tasks = []

    async def initialize(self):
        """Initialize scheduler components."""
        try:
            logger.info("Initializing scheduler service")

            # Initialize database first
            await init_database()

            self.race_scheduler = RaceScheduler()
            await self.race_scheduler.initialize()

            logger.info("Scheduler service initialized successfully")

        except Exception as e:
            logger.error("Failed to initialize scheduler", error=str(e))
            raise

    async def start(self):
        """Start the scheduler service."""
        try:
            logger.info("Starting scheduler service")

            self.running = True

            self.tasks.append(asyncio.create_task(self.race_scheduler.start()))
            self.tasks.append(asyncio.create_task(self._periodic_health_check()))

            logger.info("Scheduler service started")

            await asyncio.gather(*self.tasks, return_exceptions=True)

        except Exception as e:
            logger.error("Scheduler service error", error=str(e))
            raise

    async def stop(self):
        """Stop the scheduler service."""
        logger.info("Stopping scheduler service")

        self.running = False

        if self.race_scheduler:
            await self.race_scheduler.stop()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        await close_ledger_client()
        await close_payout_executor_client()
        await close_database()

        logger.info("Scheduler service stopped")

    async def _periodic_health_check(self):
        """Periodic health check for scheduler components."""
        while self.running:
            try:
                await asyncio.sleep(300)  # 5 minutes

                if not self.running:
                    break

                health = await self.race_scheduler.health_check()
                logger.info("Scheduler health check", race_scheduler=health)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main():
    """Main function to run the scheduler service."""
    setup_logging()

    scheduler = SchedulerMain()
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(_shutdown(scheduler, s)))

    try:
        await scheduler.initialize()
        await scheduler.start()
    except Exception as e:
        logger.error("Scheduler service failed", error=str(e))
        raise
    finally:
        if scheduler.running:
            await scheduler.stop()


async def _shutdown(scheduler: SchedulerMain, signum: int):
    logger.info("Received signal, shutting down", signal=signum)
    await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(main())
