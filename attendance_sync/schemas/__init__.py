from .zkteco import MachineConfig, DeviceInfo, DeviceUser, ConnectionTestResult
from .attendance_sync import (
    SyncErrorType, SyncErrorCode, MachineJobStatus, HealthState, DeduplicationStrategy,
    DateRange, SyncJobOptions, SyncJobConfig, AttendanceSyncError, MachineJobResult,
    SyncSummary, AttendanceSyncResult, SyncJob, JobListRequest, JobListResponse,
    JobExecutionMetrics, JobHealthStatus
)

__all__ = [
    "MachineConfig",
    "DeviceInfo",
    "DeviceUser",
    "ConnectionTestResult",
    "SyncErrorType",
    "SyncErrorCode",
    "MachineJobStatus",
    "HealthState",
    "DeduplicationStrategy",
    "DateRange",
    "SyncJobOptions",
    "SyncJobConfig",
    "AttendanceSyncError",
    "MachineJobResult",
    "SyncSummary",
    "AttendanceSyncResult",
    "SyncJob",
    "JobListRequest",
    "JobListResponse",
    "JobExecutionMetrics",
    "JobHealthStatus",
]
