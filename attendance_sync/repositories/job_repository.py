"""
Persistence for attendance sync jobs.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.models.sync_job import AttendanceSyncJob, JobStatus, TERMINAL_STATUSES
from attendance_sync.schemas.attendance_sync import JobListRequest
from attendance_sync.utils.dates import utcnow


logger = logging.getLogger(__name__)


class JobStateError(Exception):
    """Raised when a job transition is not allowed, e.g. leaving a terminal state."""
    pass


class JobRepository:
    """Create, transition and query sync jobs."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, job: AttendanceSyncJob) -> AttendanceSyncJob:
        async with self.session_factory() as session:
            session.add(job)
            await session.commit()
            logger.info(f"Created sync job {job.id} ({job.type.value})")
            return job

    async def get(self, job_id: str) -> Optional[AttendanceSyncJob]:
        async with self.session_factory() as session:
            return await session.get(AttendanceSyncJob, job_id)

    async def mark_running(self, job_id: str) -> AttendanceSyncJob:
        async with self.session_factory() as session:
            job = await self._get_mutable(session, job_id)
            job.mark_running()
            await session.commit()
            return job

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None
    ) -> AttendanceSyncJob:
        """
        Move a job to ``status``.

        Terminal jobs are immutable; trying to move one raises
        :class:`JobStateError`.
        """
        async with self.session_factory() as session:
            job = await self._get_mutable(session, job_id)
            if status in TERMINAL_STATUSES:
                job.mark_finished(status, result=result, error=error)
            elif status == JobStatus.RUNNING:
                job.mark_running()
            else:
                job.status = status
            await session.commit()
            logger.info(f"Sync job {job_id} -> {status.value}")
            return job

    async def _get_mutable(self, session, job_id: str) -> AttendanceSyncJob:
        job = await session.get(AttendanceSyncJob, job_id)
        if job is None:
            raise JobStateError(f"Job {job_id} not found")
        if job.is_terminal:
            raise JobStateError(f"Job {job_id} is already {job.status.value}")
        return job

    async def increment_retry_count(self, job_id: str) -> Optional[AttendanceSyncJob]:
        async with self.session_factory() as session:
            job = await session.get(AttendanceSyncJob, job_id)
            if job is None:
                return None
            job.retry_count = (job.retry_count or 0) + 1
            await session.commit()
            return job

    async def list(self, request: JobListRequest) -> Tuple[List[AttendanceSyncJob], int]:
        filters = []
        if request.status:
            filters.append(AttendanceSyncJob.status == request.status)
        if request.type:
            filters.append(AttendanceSyncJob.type == request.type)
        if request.start_date:
            filters.append(AttendanceSyncJob.created_at >= request.start_date)
        if request.end_date:
            filters.append(AttendanceSyncJob.created_at <= request.end_date)

        stmt = (
            select(AttendanceSyncJob)
            .where(*filters)
            .order_by(AttendanceSyncJob.created_at.desc(), AttendanceSyncJob.id.desc())
            .offset(request.offset)
            .limit(request.limit)
        )
        count_stmt = select(func.count(AttendanceSyncJob.id)).where(*filters)

        async with self.session_factory() as session:
            jobs = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar_one()
            return jobs, total

    async def get_metrics(self) -> Dict[str, Any]:
        async with self.session_factory() as session:
            status_rows = await session.execute(
                select(AttendanceSyncJob.status, func.count(AttendanceSyncJob.id))
                .group_by(AttendanceSyncJob.status)
            )
            counts = {status: count for status, count in status_rows.all()}

            avg_duration = (await session.execute(
                select(func.avg(AttendanceSyncJob.duration_ms))
                .where(AttendanceSyncJob.status == JobStatus.COMPLETED)
            )).scalar()

            last_execution = (await session.execute(
                select(func.max(AttendanceSyncJob.started_at))
            )).scalar()

            last_success = (await session.execute(
                select(func.max(AttendanceSyncJob.completed_at))
                .where(AttendanceSyncJob.status == JobStatus.COMPLETED)
            )).scalar()

        return {
            "counts": counts,
            "average_execution_time_ms": float(avg_duration or 0.0),
            "last_execution": last_execution,
            "last_successful_execution": last_success,
        }

    async def get_consecutive_failures(self) -> int:
        """FAILED jobs since the most recent COMPLETED one, newest first."""
        stmt = (
            select(AttendanceSyncJob.status)
            .where(AttendanceSyncJob.status.in_([JobStatus.COMPLETED, JobStatus.FAILED]))
            .order_by(AttendanceSyncJob.completed_at.desc(), AttendanceSyncJob.created_at.desc())
            .limit(50)
        )
        async with self.session_factory() as session:
            statuses = (await session.execute(stmt)).scalars().all()

        failures = 0
        for status in statuses:
            if status != JobStatus.FAILED:
                break
            failures += 1
        return failures

    async def get_recent_stats(self, hours: int = 24) -> Dict[str, int]:
        since = utcnow() - timedelta(hours=hours)
        async with self.session_factory() as session:
            total = (await session.execute(
                select(func.count(AttendanceSyncJob.id)).where(AttendanceSyncJob.created_at >= since)
            )).scalar_one()
            failed = (await session.execute(
                select(func.count(AttendanceSyncJob.id)).where(
                    AttendanceSyncJob.created_at >= since,
                    AttendanceSyncJob.status == JobStatus.FAILED
                )
            )).scalar_one()
        return {"total_jobs": total, "failed_jobs": failed}

    async def cleanup(self, days_to_keep: int = 30) -> int:
        """
        Delete terminal jobs created more than ``days_to_keep`` days ago.

        Attendance records written by a pruned job stay AUTO_SYNC; the
        store clears their ``sync_job_id``.
        """
        cutoff = utcnow() - timedelta(days=days_to_keep)
        stmt = delete(AttendanceSyncJob).where(
            AttendanceSyncJob.created_at < cutoff,
            AttendanceSyncJob.status.in_(TERMINAL_STATUSES)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        logger.info(f"Cleaned up {result.rowcount} sync jobs older than {days_to_keep} days")
        return result.rowcount

    async def get_jobs_for_retry(self, now: Optional[datetime] = None) -> List[AttendanceSyncJob]:
        """Failed jobs from the last 24 hours that still have retries left."""
        since = (now or utcnow()) - timedelta(hours=24)
        stmt = (
            select(AttendanceSyncJob)
            .where(
                AttendanceSyncJob.status == JobStatus.FAILED,
                AttendanceSyncJob.retry_count < AttendanceSyncJob.max_retries,
                AttendanceSyncJob.created_at >= since
            )
            .order_by(AttendanceSyncJob.created_at)
        )
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())
