"""
Pydantic schemas for attendance sync jobs and their results
"""

from pydantic import BaseModel, Field, validator
from datetime import date, datetime
from typing import List, Dict, Any, Optional
from enum import Enum

from attendance_sync.models.sync_job import JobStatus, JobType
from attendance_sync.schemas.zkteco import MachineConfig


class SyncErrorType(str, Enum):
    """Error taxonomy of the sync pipeline"""
    VALIDATION = "VALIDATION"
    EMPLOYEE_MAPPING = "EMPLOYEE_MAPPING"
    DUPLICATE = "DUPLICATE"
    CONFLICT = "CONFLICT"
    DEVICE_COMMUNICATION = "DEVICE_COMMUNICATION"
    ORCHESTRATION = "ORCHESTRATION"


class SyncErrorCode(str, Enum):
    """Codes reported on machine level sync errors"""
    MACHINE_ERROR = "MACHINE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EMPLOYEE_MAPPING_ERROR = "EMPLOYEE_MAPPING_ERROR"
    CONFLICT_DETECTED = "CONFLICT_DETECTED"
    DATABASE_INSERT_ERROR = "DATABASE_INSERT_ERROR"
    VALIDATION_SERVICE_ERROR = "VALIDATION_SERVICE_ERROR"
    EXECUTION_FAILED = "EXECUTION_FAILED"


class MachineJobStatus(str, Enum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class HealthState(str, Enum):
    ACTIVE = "ACTIVE"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


class DeduplicationStrategy(str, Enum):
    """What to do with a record whose (staff, date, transaction) already exists"""
    SKIP_DUPLICATES = "SKIP_DUPLICATES"
    UPDATE_EXISTING = "UPDATE_EXISTING"
    ERROR_ON_DUPLICATE = "ERROR_ON_DUPLICATE"


class DateRange(BaseModel):
    """Inclusive range of attendance dates"""
    start: date
    end: date

    @validator("end")
    def end_not_before_start(cls, v, values):
        start = values.get("start")
        if start and v < start:
            raise ValueError("Date range end must not be before start")
        return v

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end


class SyncJobOptions(BaseModel):
    enable_validation: bool = True
    enable_deduplication: bool = True
    parallel_machines: bool = False
    deduplication_strategy: DeduplicationStrategy = DeduplicationStrategy.SKIP_DUPLICATES
    timeout_ms: int = Field(default=30000, ge=1000, le=300000)
    batch_size: int = Field(default=100, ge=1, le=1000)


class SyncJobConfig(BaseModel):
    """Devices, date range and options a job runs with"""
    machines: List[MachineConfig]
    date_range: Optional[DateRange] = None
    options: SyncJobOptions = Field(default_factory=SyncJobOptions)


class AttendanceSyncError(BaseModel):
    """A typed error attached to a machine result"""
    code: SyncErrorCode
    message: str
    type: Optional[SyncErrorType] = None
    machine_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    details: Optional[Dict[str, Any]] = None
    recoverable: bool = True

    class Config:
        frozen = True
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }


class MachineJobResult(BaseModel):
    """Outcome of syncing one device"""
    machine_id: str
    machine_name: str
    status: MachineJobStatus
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    duplicates_found: int = 0
    conflicts_found: int = 0
    employee_mapping_issues: int = 0
    errors: List[AttendanceSyncError] = Field(default_factory=list)
    execution_time_ms: int = 0

    class Config:
        frozen = True


class SyncSummary(BaseModel):
    execution_time_ms: int
    average_records_per_machine: float
    success_rate: float

    class Config:
        frozen = True


class AttendanceSyncResult(BaseModel):
    """Aggregated outcome of a whole job, machines in priority order"""
    job_id: str
    total_machines: int
    successful_machines: int
    failed_machines: int
    total_records_processed: int
    total_records_created: int
    total_records_updated: int
    total_duplicates_found: int
    total_conflicts_found: int
    total_errors: int
    machine_results: List[MachineJobResult]
    summary: SyncSummary

    class Config:
        frozen = True


class SyncJob(BaseModel):
    """A sync job as exposed to monitoring clients"""
    id: str
    type: JobType
    status: JobStatus
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    triggered_by: Optional[str] = None
    config: Dict[str, Any]
    retry_count: int = 0
    max_retries: int = 3
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }


class JobListRequest(BaseModel):
    """Filter and pagination for listing jobs"""
    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class JobListResponse(BaseModel):
    jobs: List[SyncJob]
    total: int
    has_more: bool


class JobExecutionMetrics(BaseModel):
    """Rolling job counts for dashboards"""
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    cancelled_jobs: int = 0
    running_jobs: int = 0
    average_execution_time_ms: float = 0.0
    success_rate: float = 0.0
    last_execution: Optional[datetime] = None
    last_successful_execution: Optional[datetime] = None


class JobHealthStatus(BaseModel):
    is_healthy: bool
    current_status: HealthState
    consecutive_failures: int
    last_successful_sync: Optional[datetime] = None
    running_jobs: int = 0
    issues: List[str] = Field(default_factory=list)
