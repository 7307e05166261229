from .attendance_repository import (
    AttendanceRepository, AttendanceRecordCreate, PunchCreate, CreateError, CreateManyResult
)
from .staff_directory import StaffDirectory
from .job_repository import JobRepository, JobStateError

__all__ = [
    "AttendanceRepository",
    "AttendanceRecordCreate",
    "PunchCreate",
    "CreateError",
    "CreateManyResult",
    "StaffDirectory",
    "JobRepository",
    "JobStateError",
]
