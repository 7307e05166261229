from .staff import Staff
from .attendance import AttendanceRecord, AttendancePunch, RecordSource
from .sync_job import AttendanceSyncJob, JobStatus, JobType, TERMINAL_STATUSES

__all__ = [
    "Staff",
    "AttendanceRecord",
    "AttendancePunch",
    "RecordSource",
    "AttendanceSyncJob",
    "JobStatus",
    "JobType",
    "TERMINAL_STATUSES",
]
