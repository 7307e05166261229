"""
Store-aware validation of device punches.

Schema-valid punches are resolved to staff, checked against the store for
an existing record holding the same transaction, and checked for unresolved
manual entries on the same day. Every outcome is data; nothing here raises
for a bad record.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from attendance_sync.models.attendance import RecordSource
from attendance_sync.repositories.attendance_repository import AttendanceRepository
from attendance_sync.schemas.attendance_sync import DeduplicationStrategy, SyncErrorType
from attendance_sync.services.employee_identity import EmployeeIdentityResolver, EmployeeMapping
from attendance_sync.services.sync.data_validator import AttendanceLogSchema, validate_attendance_record
from attendance_sync.utils.dates import day_range, elapsed_ms, utcnow


logger = logging.getLogger(__name__)


class ConflictType(str, Enum):
    MANUAL_VS_AUTO = "MANUAL_VS_AUTO"


class ConflictResolution(str, Enum):
    KEEP_EXISTING = "KEEP_EXISTING"
    USE_INCOMING = "USE_INCOMING"
    MERGE = "MERGE"


@dataclass
class DeduplicationConfig:
    enabled: bool = True
    strategy: DeduplicationStrategy = DeduplicationStrategy.SKIP_DUPLICATES


@dataclass
class AttendanceFetchError:
    type: SyncErrorType
    message: str
    details: Optional[str] = None
    employee_id: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class AttendanceConflict:
    existing_record_id: int
    conflict_type: ConflictType = ConflictType.MANUAL_VS_AUTO
    suggested_resolution: ConflictResolution = ConflictResolution.KEEP_EXISTING
    requires_manual_review: bool = True


@dataclass
class ProcessedAttendanceRecord:
    raw_record: Any
    is_valid: bool
    record: Optional[AttendanceLogSchema] = None
    errors: List[AttendanceFetchError] = field(default_factory=list)
    employee_mapping: Optional[EmployeeMapping] = None
    existing_record_id: Optional[int] = None
    conflict: Optional[AttendanceConflict] = None

    @property
    def transaction_id(self) -> Optional[str]:
        return str(self.record.uid) if self.record else None


@dataclass
class EnhancedValidationResult:
    valid_records: List[ProcessedAttendanceRecord] = field(default_factory=list)
    invalid_records: List[ProcessedAttendanceRecord] = field(default_factory=list)
    duplicate_records: List[ProcessedAttendanceRecord] = field(default_factory=list)
    conflict_records: List[ProcessedAttendanceRecord] = field(default_factory=list)
    employee_mapping_issues: List[ProcessedAttendanceRecord] = field(default_factory=list)
    total_processed: int = 0
    summary: Dict[str, float] = field(default_factory=dict)

    @property
    def valid_count(self) -> int:
        return len(self.valid_records)

    @property
    def invalid_count(self) -> int:
        return len(self.invalid_records)

    @property
    def duplicate_count(self) -> int:
        return len(self.duplicate_records)

    @property
    def conflict_count(self) -> int:
        return len(self.conflict_records)


def _guess_employee_id(raw: Any) -> str:
    if isinstance(raw, AttendanceLogSchema):
        return raw.user_id
    if isinstance(raw, dict):
        value = raw.get("user_id") or raw.get("userid") or raw.get("uid")
        if value is not None:
            return str(value)
    return "unknown"


class AttendanceRecordValidator:
    """
    Classifies punches into valid, invalid, duplicate, conflicting and
    unmapped buckets.

    ``UPDATE_EXISTING`` keeps duplicates in the valid bucket with
    ``existing_record_id`` set; the caller decides what to overwrite.
    """

    def __init__(
        self,
        attendance_repository: AttendanceRepository,
        identity_resolver: EmployeeIdentityResolver,
        deduplication_config: Optional[DeduplicationConfig] = None
    ):
        self.attendance_repository = attendance_repository
        self.identity_resolver = identity_resolver
        self.deduplication_config = deduplication_config or DeduplicationConfig()

    async def validate_batch(
        self,
        records: List[Any],
        sync_job_id: Optional[str] = None
    ) -> EnhancedValidationResult:
        started = time.monotonic()
        result = EnhancedValidationResult(total_processed=len(records))

        for raw in records:
            try:
                processed = await self._validate_single(raw)
            except Exception as e:
                logger.error(f"Validation of attendance record failed (job {sync_job_id}): {e}")
                result.invalid_records.append(ProcessedAttendanceRecord(
                    raw_record=raw,
                    is_valid=False,
                    errors=[AttendanceFetchError(
                        type=SyncErrorType.VALIDATION,
                        message=str(e) or "Unknown validation error",
                        employee_id=_guess_employee_id(raw)
                    )],
                    employee_mapping=EmployeeMapping(device_user_id=_guess_employee_id(raw), mapped=False)
                ))
                continue

            self._classify(processed, result)

        total = max(result.total_processed, 1)
        result.summary = {
            "success_rate": result.valid_count / total,
            "duplicate_rate": result.duplicate_count / total,
            "conflict_rate": result.conflict_count / total,
            "processing_time_ms": elapsed_ms(started, time.monotonic()),
        }

        logger.info(
            f"Validated {result.total_processed} attendance records: {result.valid_count} valid, "
            f"{result.invalid_count} invalid, {result.duplicate_count} duplicates, "
            f"{result.conflict_count} conflicts, {len(result.employee_mapping_issues)} unmapped"
        )
        return result

    def _classify(self, processed: ProcessedAttendanceRecord, result: EnhancedValidationResult) -> None:
        error_types = {error.type for error in processed.errors}

        if processed.record is None or SyncErrorType.VALIDATION in error_types:
            result.invalid_records.append(processed)
        elif SyncErrorType.EMPLOYEE_MAPPING in error_types:
            result.employee_mapping_issues.append(processed)
        elif SyncErrorType.DUPLICATE in error_types and processed.existing_record_id is None:
            if self.deduplication_config.strategy == DeduplicationStrategy.ERROR_ON_DUPLICATE:
                result.invalid_records.append(processed)
            else:
                result.duplicate_records.append(processed)
        elif processed.conflict is not None:
            result.conflict_records.append(processed)
        else:
            result.valid_records.append(processed)

    async def _validate_single(self, raw: Any) -> ProcessedAttendanceRecord:
        if isinstance(raw, AttendanceLogSchema):
            record = raw
        else:
            schema = validate_attendance_record(raw)
            if not schema.success:
                return ProcessedAttendanceRecord(
                    raw_record=raw,
                    is_valid=False,
                    errors=[
                        AttendanceFetchError(
                            type=SyncErrorType.VALIDATION,
                            message=message,
                            employee_id=_guess_employee_id(raw)
                        )
                        for message in schema.errors
                    ]
                )
            record = schema.data

        processed = ProcessedAttendanceRecord(raw_record=raw, is_valid=False, record=record)
        transaction_id = str(record.uid)

        mapping = await self.identity_resolver.map_device_user_to_staff(record.user_id)
        processed.employee_mapping = mapping
        if not mapping.mapped:
            processed.errors.append(AttendanceFetchError(
                type=SyncErrorType.EMPLOYEE_MAPPING,
                message=mapping.error or f"Employee {record.user_id} not found in staff records",
                employee_id=record.user_id,
                transaction_id=transaction_id
            ))
            return processed

        day = record.timestamp.date()
        window = day_range(day)

        if self.deduplication_config.enabled:
            existing = await self.attendance_repository.find_first(mapping.staff_id, window, transaction_id)
            if existing is not None:
                processed.errors.append(AttendanceFetchError(
                    type=SyncErrorType.DUPLICATE,
                    message="Duplicate record detected: EXACT_MATCH",
                    details=f"Attendance record {existing.id} already holds transaction {transaction_id}",
                    employee_id=record.user_id,
                    transaction_id=transaction_id
                ))
                if self.deduplication_config.strategy != DeduplicationStrategy.UPDATE_EXISTING:
                    return processed
                processed.existing_record_id = existing.id

        manual_records = await self.attendance_repository.find_many(
            mapping.staff_id, window, origin=RecordSource.MANUAL, conflict_resolved=False
        )
        if manual_records:
            processed.conflict = AttendanceConflict(existing_record_id=manual_records[0].id)
            processed.errors.append(AttendanceFetchError(
                type=SyncErrorType.CONFLICT,
                message=f"Conflict detected: {ConflictType.MANUAL_VS_AUTO.value}",
                details=(
                    f"Unresolved manual record {manual_records[0].id} on {day.isoformat()}; "
                    f"suggested resolution {ConflictResolution.KEEP_EXISTING.value}"
                ),
                employee_id=record.user_id,
                transaction_id=transaction_id
            ))
            return processed

        processed.is_valid = True
        return processed

    async def get_deduplication_stats(self, days: int = 7) -> Dict[str, Any]:
        """Record and unresolved-conflict counts for the last ``days`` days."""
        since = utcnow() - timedelta(days=days)
        total = await self.attendance_repository.count(since=since)
        unresolved = await self.attendance_repository.count(since=since, conflict_resolved=False)
        return {
            "total_records_processed": total,
            "duplicates_found": 0,
            "duplicate_rate": 0.0,
            "conflicts_found": unresolved,
            "conflict_rate": unresolved / max(total, 1),
            "unresolved_conflicts": unresolved,
            "since": since,
        }
