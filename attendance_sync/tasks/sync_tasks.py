"""
Background tasks for attendance synchronization.

Runs the daily device sync on the configured cron schedule, retries failed
jobs that still have retries left and prunes old job history.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from croniter import croniter

from attendance_sync.core.config import Settings, settings as default_settings, validate_attendance_sync_config
from attendance_sync.models.sync_job import JobType
from attendance_sync.schemas.attendance_sync import AttendanceSyncResult, DateRange, SyncJob
from attendance_sync.services.sync.job_orchestrator import (
    AttendanceJobOrchestrator,
    OrchestrationError,
    build_default_config,
)

logger = logging.getLogger(__name__)

SCHEDULER_TRIGGER = "scheduler"


def local_now(config: Settings) -> datetime:
    """Naive wall-clock time in the sync timezone."""
    return datetime.now(ZoneInfo(config.ATTENDANCE_SYNC_TIMEZONE)).replace(tzinfo=None)


def get_next_scheduled_run(cron_expression: Optional[str] = None, base: Optional[datetime] = None) -> datetime:
    """Next fire time of ``cron_expression`` (default: 6 AM daily) after ``base``."""
    expression = cron_expression or default_settings.ATTENDANCE_SYNC_CRON
    if not croniter.is_valid(expression):
        raise ValueError(f"Invalid cron expression: {expression}")
    return croniter(expression, base or datetime.now()).get_next(datetime)


async def run_scheduled_sync(
    orchestrator: AttendanceJobOrchestrator,
    config: Optional[Settings] = None,
    now: Optional[datetime] = None
) -> Optional[AttendanceSyncResult]:
    """
    Create and execute one scheduled sync covering yesterday and today.

    Returns None when sync is disabled or the configuration is invalid.
    """
    config = config or default_settings
    if not config.ATTENDANCE_SYNC_ENABLED:
        logger.info("Attendance sync disabled, skipping scheduled run")
        return None

    validation = validate_attendance_sync_config(config)
    if not validation["is_valid"]:
        logger.error(f"Attendance sync configuration invalid: {'; '.join(validation['errors'])}")
        return None

    now = now or local_now(config)
    today = now.date()
    job_config = build_default_config(config, DateRange(start=today - timedelta(days=1), end=today))

    job = await orchestrator.create_sync_job(
        JobType.DAILY_SYNC, job_config, triggered_by=SCHEDULER_TRIGGER, scheduled_at=now
    )
    try:
        return await orchestrator.execute_job(job.id)
    except OrchestrationError as e:
        logger.error(f"Scheduled sync {job.id} failed: {e}")
        return None


async def retry_failed_jobs(orchestrator: AttendanceJobOrchestrator) -> int:
    """Re-run failed jobs that still have retries left. Returns how many were retried."""
    retried = 0
    for failed in await orchestrator.get_jobs_for_retry():
        retry: SyncJob = await orchestrator.retry_job(failed.id)
        try:
            await orchestrator.execute_job(retry.id)
        except OrchestrationError as e:
            logger.error(f"Retry {retry.id} of job {failed.id} failed: {e}")
        retried += 1
    return retried


class SyncTaskManager:
    """
    Runs the scheduler and cleanup loops until stopped.
    """

    def __init__(
        self,
        orchestrator: AttendanceJobOrchestrator,
        config: Optional[Settings] = None,
        cleanup_interval: float = 21600,
        days_to_keep: int = 30
    ):
        self.orchestrator = orchestrator
        self.config = config or default_settings
        self.cleanup_interval = cleanup_interval
        self.days_to_keep = days_to_keep
        self.next_run_at: Optional[datetime] = None
        self._running_tasks: Dict[str, asyncio.Task] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._running_tasks.values())

    async def start(self) -> None:
        """Start the scheduler and cleanup loops."""
        logger.info("Starting attendance sync task manager")
        self._shutdown_event.clear()

        self._running_tasks['scheduler'] = asyncio.create_task(self._scheduler_loop())
        self._running_tasks['cleanup'] = asyncio.create_task(self._cleanup_loop())

        logger.info("Attendance sync task manager started")

    async def stop(self) -> None:
        """Stop the task manager and all running tasks."""
        logger.info("Stopping attendance sync task manager")
        self._shutdown_event.set()

        for task_name, task in self._running_tasks.items():
            if not task.done():
                logger.info(f"Cancelling task: {task_name}")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._running_tasks.clear()
        logger.info("Attendance sync task manager stopped")

    async def _wait_or_shutdown(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False

    async def _scheduler_loop(self) -> None:
        logger.info("Started attendance sync scheduler loop")

        while not self._shutdown_event.is_set():
            try:
                now = local_now(self.config)
                self.next_run_at = get_next_scheduled_run(self.config.ATTENDANCE_SYNC_CRON, now)
                logger.info(f"Next attendance sync scheduled for {self.next_run_at.isoformat()}")

                if await self._wait_or_shutdown((self.next_run_at - now).total_seconds()):
                    break

                await run_scheduled_sync(self.orchestrator, self.config)
                await retry_failed_jobs(self.orchestrator)

            except Exception as e:
                logger.error(f"Error in attendance sync scheduler loop: {e}")
                if await self._wait_or_shutdown(60):
                    break

        logger.info("Attendance sync scheduler loop stopped")

    async def _cleanup_loop(self) -> None:
        logger.info("Started sync job cleanup loop")

        while not self._shutdown_event.is_set():
            try:
                await self.orchestrator.cleanup_old_jobs(self.days_to_keep)
            except Exception as e:
                logger.error(f"Error in sync job cleanup loop: {e}")

            if await self._wait_or_shutdown(self.cleanup_interval):
                break

        logger.info("Sync job cleanup loop stopped")
