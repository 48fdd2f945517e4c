"""
Task scheduler for the race reward tick and payout dispatch.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Any, Callable, Optional

import structlog

from app.core.config import settings
from app.services.payouts.claim_service import PayoutDispatcher, get_payout_dispatcher
from app.services.races.job import RaceRewardJob, get_race_reward_job
from app.utils.timeutils import utc_now

logger = structlog.get_logger(__name__)


class ScheduledTask:
    """Represents a scheduled task."""

    def __init__(
        self,
        name: str,
        func: Callable,
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.enabled = enabled
        self.last_run: Optional[datetime] = None
        self.next_run = utc_now()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

        if not run_immediately:
            self.next_run = utc_now() + timedelta(seconds=interval_seconds)

    def should_run(self, now: Optional[datetime] = None) -> bool:
        """Check if task should run now."""
        return self.enabled and (now or utc_now()) >= self.next_run

    def schedule_next_run(self):
        self.next_run = utc_now() + timedelta(seconds=self.interval_seconds)

    async def run(self):
        """Execute the task."""
        try:
            logger.debug("Running scheduled task", task=self.name)

            start_time = utc_now()
            await self.func()
            duration = (utc_now() - start_time).total_seconds()

            self.last_run = start_time
            self.run_count += 1
            self.schedule_next_run()

            logger.debug(
                "Task completed",
                task=self.name,
                duration=duration,
                run_count=self.run_count
            )

        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.schedule_next_run()  # Still schedule next run

            logger.error(
                "Task failed",
                task=self.name,
                error=str(e),
                error_count=self.error_count
            )
            raise


class RaceScheduler:
    """Runs the race tick and payout dispatch on fixed intervals."""

    def __init__(
        self,
        race_job: Optional[RaceRewardJob] = None,
        payout_dispatcher: Optional[PayoutDispatcher] = None,
        loop_interval: int = 10
    ):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self.loop_interval = loop_interval
        self.race_job = race_job
        self.payout_dispatcher = payout_dispatcher
        self.last_tick: Optional[Dict[str, Any]] = None

    async def initialize(self):
        """Initialize the scheduler with the race tasks."""
        logger.info("Initializing race scheduler")

        if self.race_job is None:
            self.race_job = await get_race_reward_job()
        if self.payout_dispatcher is None:
            self.payout_dispatcher = await get_payout_dispatcher()

        self.register_task(
            "race_reward_tick",
            self._run_race_tick,
            interval_seconds=settings.scheduler_interval,
            enabled=settings.scheduler_enabled,
            run_immediately=True
        )

        self.register_task(
            "payout_dispatch",
            self._dispatch_payouts,
            interval_seconds=settings.payout_dispatch_interval,
            enabled=settings.scheduler_enabled and bool(settings.payout_executor_url)
        )

        logger.info("Race scheduler initialized", tasks=len(self.tasks))

    def register_task(
        self,
        name: str,
        func: Callable,
        interval_seconds: int,
        enabled: bool = True,
        run_immediately: bool = False
    ):
        """Register a new scheduled task."""
        self.tasks[name] = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately
        )
        logger.info("Registered task", task=name, interval=interval_seconds, enabled=enabled)

    def enable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = True
            logger.info("Enabled task", task=name)

    def disable_task(self, name: str):
        if name in self.tasks:
            self.tasks[name].enabled = False
            logger.info("Disabled task", task=name)

    async def start(self):
        """Start the scheduler loop."""
        logger.info("Starting race scheduler")
        self.running = True

        while self.running:
            try:
                await self.run_pending_tasks()
                await asyncio.sleep(self.loop_interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Race scheduler loop error", error=str(e))
                await asyncio.sleep(self.loop_interval)

        logger.info("Race scheduler stopped")

    async def stop(self):
        logger.info("Stopping race scheduler")
        self.running = False

    async def run_pending_tasks(self, now: Optional[datetime] = None):
        """Run all due tasks one after another."""
        pending_tasks = [
            task for task in self.tasks.values()
            if task.should_run(now)
        ]

        # Sequential: the tick and the dispatcher share the database
        for task in pending_tasks:
            try:
                await task.run()
            except Exception:
                # Already logged and counted by the task
                continue

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of the scheduler."""
        total_tasks = len(self.tasks)
        enabled_tasks = sum(1 for task in self.tasks.values() if task.enabled)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat(),
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < max(total_tasks, 1) * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": enabled_tasks,
            "tasks_with_errors": tasks_with_errors,
            "last_tick": self.last_tick,
            "tasks": task_statuses
        }

    # Task implementations
    async def _run_race_tick(self):
        report = await self.race_job.run_tick()
        self.last_tick = {
            "started_at": report.started_at.isoformat(),
            "processed": report.processed,
            "recovered": len(report.recovered),
            "skipped": len(report.skipped),
        }

    async def _dispatch_payouts(self):
        await self.payout_dispatcher.dispatch_pending()
