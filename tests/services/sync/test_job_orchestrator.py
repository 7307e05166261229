"""
End-to-end tests of sync job orchestration against fake devices and SQLite.
"""
import asyncio
import re
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
from zk.attendance import Attendance

from attendance_sync.core.circuit_breaker import CircuitBreakerManager
from attendance_sync.core.config import Settings
from attendance_sync.integrations.zkteco.client import PyZKDeviceClient
from attendance_sync.integrations.zkteco.gateway import ZKTDeviceGateway
from attendance_sync.models import AttendanceSyncJob, JobStatus, JobType, RecordSource
from attendance_sync.repositories import AttendanceRecordCreate, JobStateError
from attendance_sync.schemas.attendance_sync import (
    DateRange,
    DeduplicationStrategy,
    HealthState,
    JobListRequest,
    MachineJobStatus,
    SyncErrorCode,
    SyncErrorType,
    SyncJobConfig,
    SyncJobOptions,
)
from attendance_sync.schemas.zkteco import MachineConfig
from attendance_sync.services.sync.job_orchestrator import (
    AttendanceJobOrchestrator,
    JobAlreadyRunningError,
    JobNotFoundError,
    OrchestrationError,
    build_default_config,
)
from attendance_sync.services.sync.record_validator import AttendanceRecordValidator
from attendance_sync.utils.dates import day_range, utcnow
from tests.helpers import (
    FAST_RETRY,
    FakeDeviceClient,
    day_of_pairs,
    make_punch,
    recorded_pyzk_connection,
    yesterday_at,
)


MAIN = MachineConfig(id="zkt_main_01", name="Main Office - Entry", ip="192.168.1.100", priority=1)
BACK = MachineConfig(id="zkt_back_02", name="Back Office - Exit", ip="192.168.1.101", priority=2)


class FakeFleet:
    """Gateway factory serving fake clients by machine id."""

    def __init__(self):
        self.clients = {}
        self.operation_configs = {}
        self.manager = CircuitBreakerManager(failure_threshold=5, recovery_timeout=60)

    def add(self, machine, client):
        self.clients[machine.id] = client
        return client

    def factory(self, machine, operation_config):
        self.operation_configs[machine.id] = operation_config
        return ZKTDeviceGateway(
            machine,
            client=self.clients[machine.id],
            operation_config=operation_config,
            circuit_breaker_manager=self.manager,
            retry_config=FAST_RETRY
        )


@pytest.fixture
def fleet():
    fleet = FakeFleet()
    fleet.add(MAIN, FakeDeviceClient(logs=day_of_pairs(["aisha", "ibrahim"], first_uid=1)))
    fleet.add(BACK, FakeDeviceClient(logs=day_of_pairs(["mariyam"], first_uid=100)))
    return fleet


@pytest.fixture
def orchestrator(fleet, job_repository, attendance_repository, identity_resolver, staff_members):
    return AttendanceJobOrchestrator(
        job_repository,
        attendance_repository,
        identity_resolver,
        gateway_factory=fleet.factory,
        circuit_breaker_manager=fleet.manager,
        config=Settings()
    )


def _config(machines=(MAIN, BACK), date_range=None, **options):
    return SyncJobConfig(machines=list(machines), date_range=date_range, options=SyncJobOptions(**options))


async def _run(orchestrator, config=None, job_type=JobType.MANUAL_TRIGGER):
    job = await orchestrator.create_sync_job(job_type, config or _config(), triggered_by="tests")
    return job, await orchestrator.execute_job(job.id)


class TestCreateSyncJob:

    @pytest.mark.asyncio
    async def test_new_job_is_pending(self, orchestrator):
        job = await orchestrator.create_sync_job(JobType.DAILY_SYNC, _config(), triggered_by="scheduler",
                                                 scheduled_at=utcnow())

        assert re.fullmatch(r"job_\d+_[a-z0-9]{9}", job.id)
        assert job.status == JobStatus.PENDING
        assert job.max_retries == 3
        assert job.retry_count == 0
        assert job.triggered_by == "scheduler"
        assert [m["id"] for m in job.config["machines"]] == ["zkt_main_01", "zkt_back_02"]

    @pytest.mark.asyncio
    async def test_single_retry_without_validation(self, orchestrator):
        job = await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config(enable_validation=False))

        assert job.max_retries == 1

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, orchestrator):
        jobs = [await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config()) for _ in range(5)]

        assert len({job.id for job in jobs}) == 5


class TestExecuteJob:

    @pytest.mark.asyncio
    async def test_two_devices_fold_into_daily_records(self, orchestrator, attendance_repository):
        job, result = await _run(orchestrator)

        assert result.total_machines == 2
        assert result.successful_machines == 2
        assert result.total_records_processed == 6
        assert result.total_records_created == 3
        assert result.total_errors == 0
        assert [r.status for r in result.machine_results] == [MachineJobStatus.SUCCESS, MachineJobStatus.SUCCESS]
        assert result.summary.success_rate == 1.0
        assert result.summary.average_records_per_machine == 3.0
        assert await attendance_repository.count() == 3

        stored = await orchestrator.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.result["total_records_created"] == 3
        assert stored.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_folded_record_spans_the_day(self, orchestrator, attendance_repository):
        await _run(orchestrator, _config(machines=[MAIN]))

        day = yesterday_at(8).date()
        records = await attendance_repository.find_many("staff-aisha", (day, day + timedelta(days=1)))
        assert len(records) == 1
        assert records[0].clock_in_time == yesterday_at(8)
        assert records[0].clock_out_time == yesterday_at(17)
        assert records[0].total_hours == 9.0
        assert records[0].zk_transaction_id == "1"
        assert records[0].machine_id == "zkt_main_01"

    @pytest.mark.asyncio
    async def test_rerun_finds_only_duplicates(self, orchestrator, attendance_repository):
        await _run(orchestrator)

        _, rerun = await _run(orchestrator)

        assert rerun.total_records_processed == 6
        assert rerun.total_records_created == 0
        assert rerun.total_duplicates_found == 6
        assert rerun.successful_machines == 2
        assert await attendance_repository.count() == 3

    @pytest.mark.asyncio
    async def test_repeated_transaction_in_one_fetch(self, orchestrator, fleet):
        punch = make_punch(1, "aisha", yesterday_at(8))
        fleet.add(MAIN, FakeDeviceClient(logs=[punch, dict(punch)]))

        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        assert result.total_records_created == 1
        assert result.total_duplicates_found == 1

    @pytest.mark.asyncio
    async def test_update_existing_touches_stored_records(self, orchestrator, attendance_repository):
        await _run(orchestrator)

        _, result = await _run(
            orchestrator, _config(deduplication_strategy=DeduplicationStrategy.UPDATE_EXISTING)
        )

        assert result.total_records_updated == 3
        assert result.total_records_created == 0
        assert result.total_duplicates_found == 0
        assert await attendance_repository.count() == 3

    @pytest.mark.asyncio
    async def test_disabled_machines_are_skipped(self, orchestrator, fleet):
        spare = MachineConfig(id="zkt_spare_03", name="Spare", ip="192.168.1.102", enabled=False)
        spare_client = fleet.add(spare, FakeDeviceClient())

        _, result = await _run(orchestrator, _config(machines=[MAIN, BACK, spare]))

        assert result.total_machines == 2
        assert spare_client.connect_calls == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [False, True])
    async def test_results_follow_priority_order(self, orchestrator, fleet, parallel):
        fleet.clients[MAIN.id].delay = 0.2

        _, result = await _run(orchestrator, _config(machines=[BACK, MAIN], parallel_machines=parallel))

        assert [r.machine_id for r in result.machine_results] == ["zkt_main_01", "zkt_back_02"]

    @pytest.mark.asyncio
    async def test_date_range_limits_processed_punches(self, orchestrator, fleet):
        old = datetime.now() - timedelta(days=3)
        fleet.add(MAIN, FakeDeviceClient(logs=[
            make_punch(1, "aisha", yesterday_at(8)),
            make_punch(2, "aisha", old.replace(hour=8, minute=0, second=0, microsecond=0)),
        ]))
        day = yesterday_at(8).date()

        _, result = await _run(orchestrator, _config(machines=[MAIN], date_range=DateRange(start=day, end=day)))

        assert result.total_records_processed == 1
        assert result.total_records_created == 1


class TestDailyFolding:

    @pytest.mark.asyncio
    async def test_incremental_sync_extends_stored_day(self, orchestrator, fleet, attendance_repository):
        check_in = make_punch(1, "aisha", yesterday_at(8), state=0)
        fleet.add(MAIN, FakeDeviceClient(logs=[check_in]))
        await _run(orchestrator, _config(machines=[MAIN]))

        fleet.add(MAIN, FakeDeviceClient(logs=[dict(check_in), make_punch(2, "aisha", yesterday_at(17), state=1)]))
        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        assert result.total_records_created == 0
        assert result.total_records_updated == 1
        assert result.total_duplicates_found == 1
        records = await attendance_repository.find_many("staff-aisha", day_range(yesterday_at(8).date()))
        assert len(records) == 1
        assert records[0].clock_in_time == yesterday_at(8)
        assert records[0].clock_out_time == yesterday_at(17)
        assert records[0].total_hours == 9.0
        assert sorted(p.zk_transaction_id for p in records[0].punches) == ["1", "2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("parallel", [False, True])
    async def test_entry_and_exit_devices_share_one_record(self, orchestrator, fleet, attendance_repository,
                                                           parallel):
        fleet.add(MAIN, FakeDeviceClient(logs=[make_punch(1, "aisha", yesterday_at(8), state=0)]))
        fleet.add(BACK, FakeDeviceClient(logs=[make_punch(500, "aisha", yesterday_at(17), state=1)]))

        _, result = await _run(orchestrator, _config(parallel_machines=parallel))

        assert result.total_records_created == 1
        assert result.total_records_updated == 1
        records = await attendance_repository.find_many("staff-aisha", day_range(yesterday_at(8).date()))
        assert len(records) == 1
        assert records[0].total_hours == 9.0
        assert {p.machine_id for p in records[0].punches} == {"zkt_main_01", "zkt_back_02"}

    @pytest.mark.asyncio
    async def test_other_day_gets_its_own_record(self, orchestrator, fleet, attendance_repository):
        fleet.add(MAIN, FakeDeviceClient(logs=[make_punch(1, "aisha", yesterday_at(8), state=0)]))
        await _run(orchestrator, _config(machines=[MAIN]))

        day_before = yesterday_at(8) - timedelta(days=1)
        fleet.add(MAIN, FakeDeviceClient(logs=[make_punch(2, "aisha", day_before, state=0)]))
        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        assert result.total_records_created == 1
        assert result.total_records_updated == 0
        assert await attendance_repository.count() == 2

    @pytest.mark.asyncio
    async def test_pyzk_punches_of_one_user_fold_into_one_day(self, orchestrator, fleet, attendance_repository):
        clock = PyZKDeviceClient(MAIN.ip)
        # pyzk gives every punch of a user that user's slot as uid
        clock._connect = Mock(return_value=recorded_pyzk_connection([
            Attendance("aisha", yesterday_at(8), 1, 0, uid=7),
            Attendance("aisha", yesterday_at(17), 1, 1, uid=7),
        ]))
        fleet.add(MAIN, clock)

        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        assert result.total_records_processed == 2
        assert result.total_duplicates_found == 0
        assert result.total_records_created == 1
        records = await attendance_repository.find_many("staff-aisha", day_range(yesterday_at(8).date()))
        assert len(records[0].punches) == 2
        assert records[0].total_hours == 9.0


class TestJobOptions:

    def test_job_timeout_applies_without_machine_timeout(self, orchestrator):
        operation_config = orchestrator._operation_config(MAIN, SyncJobOptions(timeout_ms=1000))

        assert operation_config.timeout == 1.0

    def test_machine_timeout_wins(self, orchestrator):
        machine = MachineConfig(id="zkt_slow_04", name="Warehouse", ip="192.168.1.104", timeout=2.5)

        assert orchestrator._operation_config(machine, SyncJobOptions(timeout_ms=1000)).timeout == 2.5

    def test_settings_timeout_without_job(self, orchestrator):
        assert orchestrator._operation_config(MAIN).timeout == Settings().ZKT_DEFAULT_TIMEOUT

    @pytest.mark.asyncio
    async def test_gateways_receive_job_timeout(self, orchestrator, fleet):
        await _run(orchestrator, _config(timeout_ms=2000))

        assert fleet.operation_configs[MAIN.id].timeout == 2.0
        assert fleet.operation_configs[BACK.id].timeout == 2.0

    @pytest.mark.asyncio
    async def test_punches_validated_in_batches(self, orchestrator, attendance_repository, monkeypatch):
        batches = []
        validate_batch = AttendanceRecordValidator.validate_batch

        async def counting_validate_batch(self, records, sync_job_id=None):
            batches.append(len(records))
            return await validate_batch(self, records, sync_job_id=sync_job_id)

        monkeypatch.setattr(AttendanceRecordValidator, "validate_batch", counting_validate_batch)

        _, result = await _run(orchestrator, _config(machines=[MAIN], batch_size=3))

        assert batches == [3, 1]
        assert result.total_records_created == 2
        assert result.total_records_updated == 0
        records = await attendance_repository.find_many("staff-ibrahim", day_range(yesterday_at(8).date()))
        assert records[0].clock_out_time == yesterday_at(17, 1)
        assert records[0].total_hours == 9.0


class TestMachineFailures:

    @pytest.mark.asyncio
    async def test_unmapped_users_make_machine_partial(self, orchestrator, fleet):
        fleet.add(MAIN, FakeDeviceClient(logs=day_of_pairs(["aisha", "ghost"])))

        job, result = await _run(orchestrator, _config(machines=[MAIN]))

        machine = result.machine_results[0]
        assert machine.status == MachineJobStatus.PARTIAL
        assert machine.employee_mapping_issues == 2
        assert machine.records_created == 1
        assert {e.code for e in machine.errors} == {SyncErrorCode.EMPLOYEE_MAPPING_ERROR}
        assert {e.type for e in machine.errors} == {SyncErrorType.EMPLOYEE_MAPPING}
        assert (await orchestrator.get_job(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_schema_invalid_punches_reported(self, orchestrator, fleet):
        fleet.add(MAIN, FakeDeviceClient(logs=[make_punch(1, "aisha", yesterday_at(8)),
                                               make_punch(2, "bad id!", yesterday_at(9))]))

        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        machine = result.machine_results[0]
        assert machine.records_processed == 2
        assert machine.records_created == 1
        assert machine.errors[0].code == SyncErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_unreachable_device_fails_only_its_machine(self, orchestrator, fleet):
        fleet.add(BACK, FakeDeviceClient(connect_error=ConnectionRefusedError("Connection refused")))

        job, result = await _run(orchestrator)

        assert result.successful_machines == 1
        assert result.failed_machines == 1
        back = result.machine_results[1]
        assert back.status == MachineJobStatus.FAILED
        assert back.errors[0].code == SyncErrorCode.MACHINE_ERROR
        assert back.errors[0].type == SyncErrorType.DEVICE_COMMUNICATION
        assert back.errors[0].message.startswith("Failed to connect to machine Back Office - Exit")
        assert result.total_records_created == 2
        assert (await orchestrator.get_job(job.id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fetch_failure(self, orchestrator, fleet):
        fleet.add(MAIN, FakeDeviceClient(fetch_error=ConnectionResetError("connection reset")))

        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        assert result.machine_results[0].errors[0].message.startswith("Failed to fetch attendance logs")
        assert fleet.clients[MAIN.id].connected is False

    @pytest.mark.asyncio
    async def test_validation_service_failure(self, orchestrator):
        with patch.object(AttendanceRecordValidator, "validate_batch",
                          AsyncMock(side_effect=RuntimeError("store offline"))):
            _, result = await _run(orchestrator)

        main = result.machine_results[0]
        assert main.status == MachineJobStatus.FAILED
        assert main.records_processed == 4
        assert main.errors[0].code == SyncErrorCode.VALIDATION_SERVICE_ERROR
        assert main.errors[0].type == SyncErrorType.ORCHESTRATION
        assert main.errors[0].message == "Validation service error: store offline"
        assert result.failed_machines == 2

    @pytest.mark.asyncio
    async def test_manual_entries_raise_conflicts(self, orchestrator, attendance_repository):
        await attendance_repository.create_many([AttendanceRecordCreate(
            staff_id="staff-aisha", employee_id="EMP001", date=yesterday_at(8).date(),
            source=RecordSource.MANUAL
        )])

        _, result = await _run(orchestrator, _config(machines=[MAIN]))

        machine = result.machine_results[0]
        assert machine.conflicts_found == 2
        assert machine.records_created == 1
        assert machine.status == MachineJobStatus.PARTIAL
        assert {e.code for e in machine.errors} == {SyncErrorCode.CONFLICT_DETECTED}
        assert all(e.recoverable is False for e in machine.errors)


class TestJobGuards:

    @pytest.mark.asyncio
    async def test_concurrent_execution_rejected(self, orchestrator, fleet, attendance_repository):
        fleet.clients[MAIN.id].delay = 0.2
        job = await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config())

        outcomes = await asyncio.gather(
            orchestrator.execute_job(job.id), orchestrator.execute_job(job.id), return_exceptions=True
        )

        rejected = [o for o in outcomes if isinstance(o, JobAlreadyRunningError)]
        assert len(rejected) == 1
        assert str(rejected[0]) == f"Job {job.id} is already running"
        assert await attendance_repository.count() == 3
        assert orchestrator.running_job_ids == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError, match="Job job_missing not found"):
            await orchestrator.execute_job("job_missing")

        assert orchestrator.running_job_ids == []

    @pytest.mark.asyncio
    async def test_finished_job_cannot_rerun(self, orchestrator):
        job, _ = await _run(orchestrator)

        with pytest.raises(JobStateError):
            await orchestrator.execute_job(job.id)

    @pytest.mark.asyncio
    async def test_orchestration_fault_fails_job(self, orchestrator):
        job = await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config())

        with patch.object(AttendanceJobOrchestrator, "_aggregate", side_effect=RuntimeError("aggregation broke")):
            with pytest.raises(OrchestrationError) as exc_info:
                await orchestrator.execute_job(job.id)

        assert exc_info.value.job_id == job.id
        stored = await orchestrator.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error["code"] == "EXECUTION_FAILED"
        assert stored.error["type"] == "ORCHESTRATION"
        assert stored.error["message"] == "aggregation broke"
        assert orchestrator.running_job_ids == []

    @pytest.mark.asyncio
    async def test_cancel_stops_before_next_machine(self, orchestrator, fleet):
        fleet.clients[MAIN.id].delay = 0.4
        job = await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config())

        task = asyncio.create_task(orchestrator.execute_job(job.id))
        await asyncio.sleep(0.1)
        cancelled = await orchestrator.cancel_job(job.id)
        result = await task

        assert cancelled is True
        assert [r.machine_id for r in result.machine_results] == ["zkt_main_01"]
        assert fleet.clients[BACK.id].connect_calls == 0
        stored = await orchestrator.get_job(job.id)
        assert stored.status == JobStatus.CANCELLED
        assert stored.result is None
        assert await orchestrator.cancel_job(job.id) is False

    @pytest.mark.asyncio
    async def test_cancelled_job_stays_in_flight_until_it_unwinds(self, orchestrator, fleet, job_repository,
                                                                  monkeypatch):
        fleet.clients[MAIN.id].delay = 0.4
        job = await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config())
        update_status = job_repository.update_status

        async def slow_update_status(job_id, status, **kwargs):
            if status == JobStatus.CANCELLED:
                await asyncio.sleep(0.2)
            return await update_status(job_id, status, **kwargs)

        monkeypatch.setattr(job_repository, "update_status", slow_update_status)

        first = asyncio.create_task(orchestrator.execute_job(job.id))
        await asyncio.sleep(0.1)
        cancel = asyncio.create_task(orchestrator.cancel_job(job.id))
        await asyncio.sleep(0.05)

        with pytest.raises(JobAlreadyRunningError):
            await orchestrator.execute_job(job.id)
        assert await orchestrator.cancel_job(job.id) is False

        assert await cancel is True
        await first
        assert fleet.clients[MAIN.id].connect_calls == 1
        assert (await orchestrator.get_job(job.id)).status == JobStatus.CANCELLED
        assert orchestrator.running_job_ids == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, orchestrator):
        assert await orchestrator.cancel_job("job_missing") is False


class TestMonitoring:

    @pytest.mark.asyncio
    async def test_metrics_after_runs(self, orchestrator, job_repository):
        await _run(orchestrator)
        await job_repository.create(AttendanceSyncJob(
            id="job_failed", type=JobType.DAILY_SYNC, status=JobStatus.FAILED, config={}
        ))

        metrics = await orchestrator.get_job_metrics()

        assert metrics.total_jobs == 2
        assert metrics.completed_jobs == 1
        assert metrics.failed_jobs == 1
        assert metrics.success_rate == 0.5
        assert metrics.running_jobs == 0
        assert metrics.last_successful_execution is not None

    @pytest.mark.asyncio
    async def test_list_jobs_pagination(self, orchestrator):
        for _ in range(3):
            await orchestrator.create_sync_job(JobType.MANUAL_TRIGGER, _config())

        page = await orchestrator.list_jobs(JobListRequest(limit=2))
        rest = await orchestrator.list_jobs(JobListRequest(limit=2, offset=2))

        assert page.total == 3
        assert len(page.jobs) == 2
        assert page.has_more is True
        assert len(rest.jobs) == 1
        assert rest.has_more is False

    @pytest.mark.asyncio
    async def test_health_with_no_history_is_active(self, orchestrator):
        health = await orchestrator.get_health_status()

        assert health.current_status == HealthState.ACTIVE
        assert health.is_healthy is True
        assert health.issues == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failures, expected", [
        (1, HealthState.DEGRADED),
        (2, HealthState.DEGRADED),
        (3, HealthState.DOWN),
    ])
    async def test_health_degrades_with_consecutive_failures(self, orchestrator, job_repository, failures, expected):
        now = utcnow()
        for i in range(failures):
            await job_repository.create(AttendanceSyncJob(
                id=f"job_failed_{i}", type=JobType.DAILY_SYNC, status=JobStatus.FAILED, config={},
                completed_at=now - timedelta(minutes=i)
            ))

        health = await orchestrator.get_health_status()

        assert health.current_status == expected
        assert health.is_healthy is False
        assert health.consecutive_failures == failures
        assert f"{failures} consecutive job failure(s)" in health.issues
        assert any(issue.startswith("High failure rate") for issue in health.issues)

    @pytest.mark.asyncio
    async def test_health_reports_open_breakers(self, orchestrator, fleet):
        await fleet.manager.get_or_create(MAIN.address).force_open("maintenance")

        health = await orchestrator.get_health_status()

        assert health.current_status == HealthState.ACTIVE
        assert health.issues == ["Devices unavailable (circuit open): 192.168.1.100:4370"]


class TestDeviceOperations:

    @pytest.mark.asyncio
    async def test_connection_test_and_device_info(self, orchestrator, fleet):
        result = await orchestrator.test_connection(MAIN)
        info = await orchestrator.get_device_info(MAIN)

        assert result.success is True
        assert info.serial_number == "FK-0001"
        assert fleet.clients[MAIN.id].connected is False

    @pytest.mark.asyncio
    async def test_device_info_unavailable(self, orchestrator, fleet):
        fleet.add(MAIN, FakeDeviceClient(connect_error=ConnectionRefusedError("Connection refused")))

        assert await orchestrator.get_device_info(MAIN) is None
        assert (await orchestrator.test_connection(MAIN)).success is False


class TestRetryAndCleanup:

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, orchestrator, job_repository):
        await job_repository.create(AttendanceSyncJob(
            id="job_failed", type=JobType.DAILY_SYNC, status=JobStatus.FAILED,
            config=_config().model_dump(mode="json")
        ))

        candidates = await orchestrator.get_jobs_for_retry()
        retry = await orchestrator.retry_job("job_failed")

        assert [job.id for job in candidates] == ["job_failed"]
        assert retry.type == JobType.DAILY_SYNC
        assert retry.status == JobStatus.PENDING
        assert retry.triggered_by == "retry:job_failed"
        assert (await orchestrator.get_job("job_failed")).retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_rejects_other_states(self, orchestrator):
        job, _ = await _run(orchestrator)

        with pytest.raises(JobStateError):
            await orchestrator.retry_job(job.id)
        with pytest.raises(JobNotFoundError):
            await orchestrator.retry_job("job_missing")

    @pytest.mark.asyncio
    async def test_cleanup_old_jobs(self, orchestrator, job_repository):
        await job_repository.create(AttendanceSyncJob(
            id="job_old", type=JobType.DAILY_SYNC, status=JobStatus.COMPLETED, config={},
            created_at=utcnow() - timedelta(days=45)
        ))

        assert await orchestrator.cleanup_old_jobs(days_to_keep=30) == 1


class TestBuildDefaultConfig:

    def test_machines_and_options_from_settings(self):
        config = Settings(
            ZKT_MACHINES=[{"id": "a", "name": "A", "ip": "10.0.0.1"}],
            ATTENDANCE_SYNC_PARALLEL_MACHINES=True,
            ATTENDANCE_SYNC_DEDUPLICATION_STRATEGY="UPDATE_EXISTING",
        )
        day = datetime.now().date()

        job_config = build_default_config(config, DateRange(start=day, end=day))

        assert job_config.machines[0].port == 4370
        assert job_config.options.parallel_machines is True
        assert job_config.options.deduplication_strategy == DeduplicationStrategy.UPDATE_EXISTING
        assert job_config.date_range.start == day
