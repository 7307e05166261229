"""
Attendance sync job orchestration.

A job walks its enabled devices in priority order (one at a time, or all at
once when ``parallel_machines`` is set), pulls and validates their punches
and stores them as one attendance record per staff member and day. The
first punch of a day creates the record; later punches are folded into it,
whether they come from the same fetch, another device or a later run. A
failing device only fails its own machine result; the job itself fails only
when the orchestration raises.
"""

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from attendance_sync.core.circuit_breaker import CircuitBreakerManager
from attendance_sync.core.config import Settings, settings as default_settings
from attendance_sync.integrations.zkteco.gateway import (
    DeviceOperationConfig,
    ValidatedLogs,
    ZKTDeviceGateway,
)
from attendance_sync.models.attendance import RecordSource
from attendance_sync.models.sync_job import AttendanceSyncJob, JobStatus, JobType
from attendance_sync.repositories.attendance_repository import (
    AttendanceRecordCreate,
    AttendanceRepository,
    PunchCreate,
)
from attendance_sync.repositories.job_repository import JobRepository, JobStateError
from attendance_sync.schemas.attendance_sync import (
    AttendanceSyncError,
    AttendanceSyncResult,
    DateRange,
    DeduplicationStrategy,
    HealthState,
    JobExecutionMetrics,
    JobHealthStatus,
    JobListRequest,
    JobListResponse,
    MachineJobResult,
    MachineJobStatus,
    SyncErrorCode,
    SyncErrorType,
    SyncJob,
    SyncJobConfig,
    SyncJobOptions,
    SyncSummary,
)
from attendance_sync.schemas.zkteco import ConnectionTestResult, DeviceInfo, MachineConfig
from attendance_sync.services.employee_identity import EmployeeIdentityResolver
from attendance_sync.services.sync.data_validator import (
    AttendanceLogSchema,
    sanitize_attendance_data,
    validate_attendance_sequence,
)
from attendance_sync.services.sync.record_validator import (
    AttendanceRecordValidator,
    DeduplicationConfig,
    EnhancedValidationResult,
    ProcessedAttendanceRecord,
)
from attendance_sync.utils.dates import day_range, elapsed_ms, utcnow


logger = logging.getLogger(__name__)

GatewayFactory = Callable[[MachineConfig, DeviceOperationConfig], ZKTDeviceGateway]

_ERROR_CODES = {
    SyncErrorType.VALIDATION: SyncErrorCode.VALIDATION_ERROR,
    SyncErrorType.DUPLICATE: SyncErrorCode.VALIDATION_ERROR,
    SyncErrorType.EMPLOYEE_MAPPING: SyncErrorCode.EMPLOYEE_MAPPING_ERROR,
    SyncErrorType.CONFLICT: SyncErrorCode.CONFLICT_DETECTED,
}


class JobNotFoundError(Exception):
    pass


class JobAlreadyRunningError(Exception):
    pass


class OrchestrationError(Exception):
    """An unexpected fault outside the per-device guard; the job is marked FAILED."""

    def __init__(self, message: str, job_id: str):
        super().__init__(message)
        self.job_id = job_id


@dataclass
class RunningJob:
    job_id: str
    started_at: datetime
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class DailyRecordIndex:
    """
    AUTO_SYNC record ids per (staff, day) for one job run.

    Misses are looked up in the store once and remembered. Machines store
    their punches while holding ``lock``, so two devices never both create
    a record for the same day.
    """
    repository: AttendanceRepository
    records: Dict[Tuple[str, date], Optional[int]] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def find(self, staff_id: str, day: date) -> Optional[int]:
        key = (staff_id, day)
        if key not in self.records:
            existing = await self.repository.find_many(staff_id, day_range(day), origin=RecordSource.AUTO_SYNC)
            self.records[key] = existing[0].id if existing else None
        return self.records[key]

    def remember(self, staff_id: str, day: date, record_id: int) -> None:
        self.records[(staff_id, day)] = record_id


@dataclass
class MachineTally:
    """Counts for one machine, accumulated over its validation batches."""
    created_ids: Set[int] = field(default_factory=set)
    updated_ids: Set[int] = field(default_factory=set)
    duplicates: int = 0
    conflicts: int = 0
    unmapped: int = 0
    errors: List[AttendanceSyncError] = field(default_factory=list)

    @property
    def records_updated(self) -> int:
        return len(self.updated_ids - self.created_ids)


def generate_job_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"job_{int(time.time() * 1000)}_{suffix}"


def _punch_date(entry: Any) -> Optional[date]:
    if isinstance(entry, AttendanceLogSchema):
        return entry.timestamp.date()
    sanitized = sanitize_attendance_data(entry)
    if isinstance(sanitized, dict) and isinstance(sanitized.get("timestamp"), datetime):
        return sanitized["timestamp"].date()
    return None


class AttendanceJobOrchestrator:
    """Runs attendance sync jobs and reports on them."""

    def __init__(
        self,
        job_repository: JobRepository,
        attendance_repository: AttendanceRepository,
        identity_resolver: EmployeeIdentityResolver,
        gateway_factory: Optional[GatewayFactory] = None,
        circuit_breaker_manager: Optional[CircuitBreakerManager] = None,
        config: Optional[Settings] = None
    ):
        self.job_repository = job_repository
        self.attendance_repository = attendance_repository
        self.identity_resolver = identity_resolver
        self.config = config or default_settings
        self.circuit_breaker_manager = circuit_breaker_manager or CircuitBreakerManager(
            failure_threshold=self.config.ZKT_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=self.config.ZKT_CIRCUIT_RECOVERY_TIMEOUT
        )
        self.gateway_factory = gateway_factory or self._default_gateway

        self._running: Dict[str, RunningJob] = {}
        self._lock = asyncio.Lock()

    def _default_gateway(self, machine: MachineConfig, operation_config: DeviceOperationConfig) -> ZKTDeviceGateway:
        return ZKTDeviceGateway(
            machine,
            operation_config=operation_config,
            circuit_breaker_manager=self.circuit_breaker_manager
        )

    def _operation_config(self, machine: MachineConfig, options: Optional[SyncJobOptions] = None) -> DeviceOperationConfig:
        """A machine's own timeout wins over the job's, which wins over ZKT_DEFAULT_TIMEOUT."""
        if machine.timeout:
            timeout = machine.timeout
        elif options is not None:
            timeout = options.timeout_ms / 1000
        else:
            timeout = self.config.ZKT_DEFAULT_TIMEOUT
        return DeviceOperationConfig(
            enable_validation=options.enable_validation if options else True,
            timeout=timeout
        )

    @property
    def running_job_ids(self) -> List[str]:
        return list(self._running)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def create_sync_job(
        self,
        job_type: JobType,
        config: SyncJobConfig,
        triggered_by: Optional[str] = None,
        scheduled_at: Optional[datetime] = None
    ) -> SyncJob:
        job = AttendanceSyncJob(
            id=generate_job_id(),
            type=job_type,
            status=JobStatus.PENDING,
            scheduled_at=scheduled_at,
            triggered_by=triggered_by,
            config=config.model_dump(mode="json"),
            retry_count=0,
            max_retries=3 if config.options.enable_validation else 1,
        )
        job = await self.job_repository.create(job)
        return SyncJob.model_validate(job)

    async def execute_job(self, job_id: str) -> AttendanceSyncResult:
        """
        Run a job to completion and return its aggregated result.

        Raises JobAlreadyRunningError when the job is already in flight,
        JobNotFoundError for unknown ids, JobStateError for terminal jobs and
        OrchestrationError when the run itself breaks.
        """
        async with self._lock:
            if job_id in self._running:
                raise JobAlreadyRunningError(f"Job {job_id} is already running")
            running = RunningJob(job_id=job_id, started_at=utcnow())
            self._running[job_id] = running

        try:
            job = await self.job_repository.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            if job.is_terminal:
                raise JobStateError(f"Job {job_id} is already {job.status.value}")

            await self.job_repository.mark_running(job_id)
            logger.info(f"Starting sync job {job_id} ({job.type.value})")

            try:
                config = SyncJobConfig.model_validate(job.config)
                result = await self._run(job_id, config, running.cancel_event)
            except Exception as e:
                logger.exception(f"Sync job {job_id} failed")
                error = AttendanceSyncError(
                    code=SyncErrorCode.EXECUTION_FAILED,
                    type=SyncErrorType.ORCHESTRATION,
                    message=str(e) or "Unknown execution error",
                    recoverable=False,
                    details={"exception": e.__class__.__name__}
                )
                await self._finish(job_id, JobStatus.FAILED, error=error.model_dump(mode="json"))
                raise OrchestrationError(f"Job {job_id} failed: {e}", job_id) from e

            if running.cancel_event.is_set():
                logger.info(f"Sync job {job_id} was cancelled; result not stored")
                return result

            await self._finish(job_id, JobStatus.COMPLETED, result=result.model_dump(mode="json"))
            logger.info(
                f"Sync job {job_id} completed: {result.successful_machines}/{result.total_machines} machines, "
                f"{result.total_records_created} records created"
            )
            return result
        finally:
            async with self._lock:
                if self._running.get(job_id) is running:
                    del self._running[job_id]

    async def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            await self.job_repository.update_status(job_id, status, result=result, error=error)
        except JobStateError as e:
            # Cancelled while the devices were still being processed
            logger.warning(f"Could not mark job {job_id} {status.value}: {e}")

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel an in-flight job.

        The job stays in flight until its execution unwinds, so it cannot be
        started again meanwhile. Device calls already under way run to their
        own timeout.
        """
        async with self._lock:
            running = self._running.get(job_id)
            if running is None or running.cancel_event.is_set():
                return False
            running.cancel_event.set()

        try:
            await self.job_repository.update_status(job_id, JobStatus.CANCELLED)
        except JobStateError as e:
            logger.warning(f"Could not cancel job {job_id}: {e}")
            return False

        logger.info(f"Sync job {job_id} cancelled")
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, job_id: str, config: SyncJobConfig, cancel_event: asyncio.Event) -> AttendanceSyncResult:
        started = time.monotonic()
        options = config.options
        machines = sorted((m for m in config.machines if m.enabled), key=lambda m: m.priority)

        validator = AttendanceRecordValidator(
            self.attendance_repository,
            self.identity_resolver,
            DeduplicationConfig(
                enabled=options.enable_deduplication,
                strategy=options.deduplication_strategy
            )
        )
        day_index = DailyRecordIndex(self.attendance_repository)

        async def run_machine(machine: MachineConfig) -> Optional[MachineJobResult]:
            if cancel_event.is_set():
                return None
            return await self._process_machine_safely(job_id, machine, config, validator, day_index)

        machine_results: List[MachineJobResult] = []
        if options.parallel_machines:
            outcomes = await asyncio.gather(*(run_machine(m) for m in machines))
            machine_results = [r for r in outcomes if r is not None]
        else:
            for machine in machines:
                outcome = await run_machine(machine)
                if outcome is None:
                    logger.info(f"Sync job {job_id} cancelled before machine {machine.id}")
                    break
                machine_results.append(outcome)

        return self._aggregate(job_id, machine_results, elapsed_ms(started, time.monotonic()))

    async def _process_machine_safely(
        self,
        job_id: str,
        machine: MachineConfig,
        config: SyncJobConfig,
        validator: AttendanceRecordValidator,
        day_index: DailyRecordIndex
    ) -> MachineJobResult:
        started = time.monotonic()
        try:
            return await self._process_machine(job_id, machine, config, validator, day_index)
        except Exception as e:
            logger.exception(f"Machine {machine.id} failed in job {job_id}")
            return self._failed_result(
                machine, SyncErrorCode.MACHINE_ERROR, str(e) or "Unknown machine error", started,
                error_type=SyncErrorType.ORCHESTRATION
            )

    def _failed_result(
        self,
        machine: MachineConfig,
        code: SyncErrorCode,
        message: str,
        started: float,
        records_processed: int = 0,
        details: Optional[Dict[str, Any]] = None,
        error_type: SyncErrorType = SyncErrorType.DEVICE_COMMUNICATION
    ) -> MachineJobResult:
        return MachineJobResult(
            machine_id=machine.id,
            machine_name=machine.name,
            status=MachineJobStatus.FAILED,
            records_processed=records_processed,
            errors=[AttendanceSyncError(
                code=code,
                type=error_type,
                message=message,
                machine_id=machine.id,
                details=details,
                recoverable=True
            )],
            execution_time_ms=elapsed_ms(started, time.monotonic())
        )

    async def _process_machine(
        self,
        job_id: str,
        machine: MachineConfig,
        config: SyncJobConfig,
        validator: AttendanceRecordValidator,
        day_index: DailyRecordIndex
    ) -> MachineJobResult:
        started = time.monotonic()
        gateway = self.gateway_factory(machine, self._operation_config(machine, config.options))

        try:
            connection = await gateway.connect()
            if not connection.success:
                return self._failed_result(
                    machine, SyncErrorCode.MACHINE_ERROR,
                    f"Failed to connect to machine {machine.name}: {connection.error.get('message')}",
                    started, details=connection.error
                )

            logs = await gateway.get_validated_attendance_logs()
            if not logs.success:
                return self._failed_result(
                    machine, SyncErrorCode.MACHINE_ERROR,
                    f"Failed to fetch attendance logs from {machine.name}: {logs.error.get('message')}",
                    started, details=logs.error
                )
        finally:
            await gateway.disconnect()

        fetched: ValidatedLogs = logs.data
        tally = MachineTally(errors=[
            AttendanceSyncError(
                code=SyncErrorCode.VALIDATION_ERROR,
                type=SyncErrorType.VALIDATION,
                message="; ".join(invalid.errors),
                machine_id=machine.id
            )
            for invalid in fetched.invalid_records
        ])

        punches = fetched.valid_records
        if config.date_range is not None:
            punches = [p for p in punches if self._in_range(p, config.date_range)]
        records_processed = len(punches) + len(fetched.invalid_records)

        sequence = validate_attendance_sequence([p for p in punches if isinstance(p, AttendanceLogSchema)])
        for warning in sequence.errors:
            logger.warning(f"Machine {machine.id}: {warning}")

        batch_size = config.options.batch_size
        for start in range(0, len(punches), batch_size):
            try:
                validation = await validator.validate_batch(punches[start:start + batch_size], sync_job_id=job_id)
            except Exception as e:
                logger.exception(f"Validation service failed for machine {machine.id}")
                return self._failed_result(
                    machine, SyncErrorCode.VALIDATION_SERVICE_ERROR,
                    f"Validation service error: {e}", started, records_processed=records_processed,
                    error_type=SyncErrorType.ORCHESTRATION
                )

            tally.errors.extend(self._record_errors(machine, validation))
            tally.duplicates += validation.duplicate_count
            tally.conflicts += validation.conflict_count
            tally.unmapped += len(validation.employee_mapping_issues)

            async with day_index.lock:
                await self._store_batch(job_id, machine, validation.valid_records, day_index, tally)

        result = MachineJobResult(
            machine_id=machine.id,
            machine_name=machine.name,
            status=MachineJobStatus.PARTIAL if tally.errors else MachineJobStatus.SUCCESS,
            records_processed=records_processed,
            records_created=len(tally.created_ids),
            records_updated=tally.records_updated,
            duplicates_found=tally.duplicates,
            conflicts_found=tally.conflicts,
            employee_mapping_issues=tally.unmapped,
            errors=tally.errors,
            execution_time_ms=elapsed_ms(started, time.monotonic())
        )
        logger.info(
            f"Machine {machine.id}: {result.records_processed} processed, {result.records_created} created, "
            f"{result.records_updated} updated, {result.duplicates_found} duplicates, "
            f"{result.conflicts_found} conflicts, {len(result.errors)} errors"
        )
        return result

    @staticmethod
    def _in_range(punch: Any, date_range: DateRange) -> bool:
        punch_date = _punch_date(punch)
        # Unparseable entries go on to the validator, which rejects them
        return punch_date is None or date_range.contains(punch_date)

    @staticmethod
    def _record_errors(machine: MachineConfig, validation: EnhancedValidationResult) -> List[AttendanceSyncError]:
        errors: List[AttendanceSyncError] = []
        for bucket in (validation.invalid_records, validation.employee_mapping_issues, validation.conflict_records):
            for processed in bucket:
                for error in processed.errors:
                    errors.append(AttendanceSyncError(
                        code=_ERROR_CODES.get(error.type, SyncErrorCode.VALIDATION_ERROR),
                        type=error.type,
                        message=error.message,
                        machine_id=machine.id,
                        details={
                            "employee_id": error.employee_id,
                            "transaction_id": error.transaction_id,
                            "details": error.details,
                        },
                        recoverable=error.type != SyncErrorType.CONFLICT
                    ))
        return errors

    @staticmethod
    def _punch(machine: MachineConfig, processed: ProcessedAttendanceRecord) -> PunchCreate:
        return PunchCreate(
            zk_transaction_id=processed.transaction_id,
            timestamp=processed.record.timestamp,
            state=processed.record.state,
            machine_id=machine.id
        )

    async def _store_batch(
        self,
        job_id: str,
        machine: MachineConfig,
        valid_records: List[ProcessedAttendanceRecord],
        day_index: DailyRecordIndex,
        tally: MachineTally
    ) -> None:
        """
        Persist one batch of valid punches.

        Punches flagged for UPDATE_EXISTING go to the record holding their
        transaction. Any other punch joins the AUTO_SYNC record already kept
        for its staff member's day; what is left becomes new records. A
        transaction seen twice in the batch is counted as a duplicate.
        """
        targets: List[Tuple[int, ProcessedAttendanceRecord]] = []
        fresh: List[ProcessedAttendanceRecord] = []
        seen = set()

        for processed in sorted(valid_records, key=lambda p: p.record.timestamp):
            if processed.existing_record_id is not None:
                targets.append((processed.existing_record_id, processed))
                continue

            key = (processed.employee_mapping.staff_id, processed.record.timestamp.date(), processed.transaction_id)
            if key in seen:
                tally.duplicates += 1
                continue
            seen.add(key)

            record_id = await day_index.find(key[0], key[1])
            if record_id is None:
                fresh.append(processed)
            else:
                targets.append((record_id, processed))

        for record_id, processed in targets:
            record = await self.attendance_repository.update_existing(
                record_id, self._punch(machine, processed), sync_job_id=job_id
            )
            if record is not None:
                tally.updated_ids.add(record.id)

        drafts = self._fold_daily_records(job_id, machine, fresh)
        if not drafts:
            return

        created = await self.attendance_repository.create_many(drafts)
        for record in created.created:
            tally.created_ids.add(record.id)
            day_index.remember(record.staff_id, record.date, record.id)
        for failure in created.errors:
            tally.errors.append(AttendanceSyncError(
                code=SyncErrorCode.DATABASE_INSERT_ERROR,
                type=SyncErrorType.DUPLICATE,
                message=f"Failed to store attendance for staff {failure.record.staff_id} "
                        f"on {failure.record.date.isoformat()}: {failure.error}",
                machine_id=machine.id,
                details={"staff_id": failure.record.staff_id, "date": failure.record.date.isoformat()}
            ))

    @classmethod
    def _fold_daily_records(
        cls,
        job_id: str,
        machine: MachineConfig,
        punches: List[ProcessedAttendanceRecord]
    ) -> List[AttendanceRecordCreate]:
        """Group time-ordered punches per (staff, day); the earliest names the record's transaction."""
        drafts: Dict[Tuple[str, date], AttendanceRecordCreate] = {}

        for processed in punches:
            mapping = processed.employee_mapping
            day = processed.record.timestamp.date()
            draft = drafts.get((mapping.staff_id, day))
            if draft is None:
                draft = AttendanceRecordCreate(
                    staff_id=mapping.staff_id,
                    employee_id=mapping.employee_id or processed.record.user_id,
                    date=day,
                    zk_transaction_id=processed.transaction_id,
                    sync_job_id=job_id,
                    machine_id=machine.id,
                )
                drafts[(mapping.staff_id, day)] = draft
            draft.punches.append(cls._punch(machine, processed))

        return list(drafts.values())

    @staticmethod
    def _aggregate(job_id: str, machine_results: List[MachineJobResult], execution_time_ms: int) -> AttendanceSyncResult:
        total = len(machine_results)
        failed = sum(1 for r in machine_results if r.status == MachineJobStatus.FAILED)
        processed = sum(r.records_processed for r in machine_results)

        return AttendanceSyncResult(
            job_id=job_id,
            total_machines=total,
            successful_machines=total - failed,
            failed_machines=failed,
            total_records_processed=processed,
            total_records_created=sum(r.records_created for r in machine_results),
            total_records_updated=sum(r.records_updated for r in machine_results),
            total_duplicates_found=sum(r.duplicates_found for r in machine_results),
            total_conflicts_found=sum(r.conflicts_found for r in machine_results),
            total_errors=sum(len(r.errors) for r in machine_results),
            machine_results=machine_results,
            summary=SyncSummary(
                execution_time_ms=execution_time_ms,
                average_records_per_machine=processed / total if total else 0.0,
                success_rate=(total - failed) / total if total else 0.0
            )
        )

    # ------------------------------------------------------------------
    # Queries and monitoring
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        job = await self.job_repository.get(job_id)
        return SyncJob.model_validate(job) if job else None

    async def list_jobs(self, request: Optional[JobListRequest] = None) -> JobListResponse:
        request = request or JobListRequest()
        jobs, total = await self.job_repository.list(request)
        return JobListResponse(
            jobs=[SyncJob.model_validate(job) for job in jobs],
            total=total,
            has_more=request.offset + len(jobs) < total
        )

    async def get_job_metrics(self) -> JobExecutionMetrics:
        metrics = await self.job_repository.get_metrics()
        counts = metrics["counts"]
        completed = counts.get(JobStatus.COMPLETED, 0)
        failed = counts.get(JobStatus.FAILED, 0)
        finished = completed + failed

        return JobExecutionMetrics(
            total_jobs=sum(counts.values()),
            completed_jobs=completed,
            failed_jobs=failed,
            cancelled_jobs=counts.get(JobStatus.CANCELLED, 0),
            running_jobs=len(self._running),
            average_execution_time_ms=metrics["average_execution_time_ms"],
            success_rate=completed / finished if finished else 0.0,
            last_execution=metrics["last_execution"],
            last_successful_execution=metrics["last_successful_execution"]
        )

    async def get_health_status(self) -> JobHealthStatus:
        consecutive_failures = await self.job_repository.get_consecutive_failures()
        metrics = await self.job_repository.get_metrics()
        recent = await self.job_repository.get_recent_stats(hours=24)

        if consecutive_failures >= 3:
            state = HealthState.DOWN
        elif consecutive_failures > 0:
            state = HealthState.DEGRADED
        else:
            state = HealthState.ACTIVE

        issues: List[str] = []
        if consecutive_failures > 0:
            issues.append(f"{consecutive_failures} consecutive job failure(s)")
        if recent["total_jobs"] and recent["failed_jobs"] / recent["total_jobs"] > 0.5:
            issues.append(
                f"High failure rate in the last 24 hours: {recent['failed_jobs']}/{recent['total_jobs']} jobs failed"
            )

        breakers = self.circuit_breaker_manager.get_health_summary()
        if breakers["open_circuit_breakers"]:
            issues.append(f"Devices unavailable (circuit open): {', '.join(breakers['open_circuit_breakers'])}")

        return JobHealthStatus(
            is_healthy=state == HealthState.ACTIVE,
            current_status=state,
            consecutive_failures=consecutive_failures,
            last_successful_sync=metrics["last_successful_execution"],
            running_jobs=len(self._running),
            issues=issues
        )

    async def test_connection(self, machine: MachineConfig) -> ConnectionTestResult:
        gateway = self.gateway_factory(machine, self._operation_config(machine))
        return await gateway.test_connection()

    async def get_device_info(self, machine: MachineConfig) -> Optional[DeviceInfo]:
        gateway = self.gateway_factory(machine, self._operation_config(machine))
        try:
            connection = await gateway.connect()
            if not connection.success:
                logger.warning(f"Device info for {machine.id} unavailable: {connection.error.get('message')}")
                return None
            return connection.data["device_info"]
        finally:
            await gateway.disconnect()

    async def cleanup_old_jobs(self, days_to_keep: int = 30) -> int:
        return await self.job_repository.cleanup(days_to_keep)

    async def get_jobs_for_retry(self) -> List[SyncJob]:
        jobs = await self.job_repository.get_jobs_for_retry()
        return [SyncJob.model_validate(job) for job in jobs]

    async def retry_job(self, job_id: str) -> SyncJob:
        """Create a fresh job from a failed job's config and count the retry on the original."""
        job = await self.job_repository.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.FAILED:
            raise JobStateError(f"Only failed jobs can be retried; job {job_id} is {job.status.value}")

        await self.job_repository.increment_retry_count(job_id)
        return await self.create_sync_job(
            job.type,
            SyncJobConfig.model_validate(job.config),
            triggered_by=f"retry:{job_id}"
        )


def build_default_config(config: Settings, date_range: Optional[DateRange] = None) -> SyncJobConfig:
    """Job config from settings: configured machines and the ATTENDANCE_SYNC_* options."""
    return SyncJobConfig(
        machines=[MachineConfig(**{"port": config.ZKT_DEFAULT_PORT, **m}) for m in config.ZKT_MACHINES],
        date_range=date_range,
        options=SyncJobOptions(
            enable_validation=config.ATTENDANCE_SYNC_VALIDATION,
            enable_deduplication=config.ATTENDANCE_SYNC_DEDUPLICATION,
            parallel_machines=config.ATTENDANCE_SYNC_PARALLEL_MACHINES,
            deduplication_strategy=DeduplicationStrategy(config.ATTENDANCE_SYNC_DEDUPLICATION_STRATEGY),
            timeout_ms=config.ATTENDANCE_SYNC_TIMEOUT_MS,
            batch_size=config.ATTENDANCE_SYNC_BATCH_SIZE
        )
    )
