"""
SQLAlchemy model for attendance sync jobs.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Index, Enum as SQLEnum
)
import enum
from datetime import datetime
from typing import Any, Dict, Optional

from attendance_sync.core.database import Base
from attendance_sync.utils.dates import utcnow


class JobStatus(str, enum.Enum):
    """Lifecycle of a sync job."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class JobType(str, enum.Enum):
    """What triggered a sync job."""
    DAILY_SYNC = "DAILY_SYNC"
    MANUAL_TRIGGER = "MANUAL_TRIGGER"
    BACKFILL = "BACKFILL"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class AttendanceSyncJob(Base):
    """Model for tracking attendance sync jobs."""

    __tablename__ = "attendance_sync_jobs"

    id = Column(String(50), primary_key=True, index=True)
    type = Column(SQLEnum(JobType), nullable=False)
    status = Column(SQLEnum(JobStatus), nullable=False, default=JobStatus.PENDING)

    # Timing
    scheduled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    triggered_by = Column(String(100), nullable=True)
    config = Column(JSON, nullable=False)

    # Retry handling
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)

    # Outcome
    result = Column(JSON, nullable=True)
    error = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_attendance_sync_jobs_status", "status"),
        Index("ix_attendance_sync_jobs_created_at", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self, started_at: Optional[datetime] = None) -> None:
        self.status = JobStatus.RUNNING
        self.started_at = started_at or utcnow()

    def mark_finished(
        self,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None
    ) -> None:
        """Move the job into a terminal state and stamp its duration."""
        self.status = status
        self.completed_at = utcnow()
        if self.started_at:
            self.duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)
        if result is not None:
            self.result = result
        if error is not None:
            self.error = error
