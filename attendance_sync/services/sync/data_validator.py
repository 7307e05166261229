"""
Schema-level validation of raw punches fetched from time-clock devices.

Devices report loosely typed values (timestamps in seconds or milliseconds,
numbers as strings, padded user ids). ``sanitize_attendance_data`` coerces
them and ``AttendanceLogSchema`` enforces the accepted ranges.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, validator

from attendance_sync.utils.dates import to_local_naive


logger = logging.getLogger(__name__)

USER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
WHITESPACE_RUN = re.compile(r"\s+")
LEADING_INT = re.compile(r"^\s*([-+]?\d+)")

# Unix timestamps below this are seconds, above are milliseconds
MILLISECONDS_THRESHOLD = 10_000_000_000

DUPLICATE_WINDOW = timedelta(seconds=60)


class AttendanceState(IntEnum):
    CHECK_IN = 0
    CHECK_OUT = 1
    BREAK_OUT = 2
    BREAK_IN = 3
    OVERTIME_IN = 4
    OVERTIME_OUT = 5


def _one_year_before(moment: datetime) -> datetime:
    try:
        return moment.replace(year=moment.year - 1)
    except ValueError:
        # Feb 29
        return moment.replace(year=moment.year - 1, day=28)


class AttendanceLogSchema(BaseModel):
    """A punch in canonical form."""
    uid: int = Field(..., ge=1, le=999999)
    user_id: str = Field(..., min_length=1, max_length=50)
    timestamp: datetime
    state: int = Field(..., ge=0, le=10)
    type: int = Field(..., ge=0, le=10)

    @validator("user_id")
    def validate_user_id(cls, v):
        if not USER_ID_PATTERN.match(v):
            raise ValueError(
                "Employee ID can only contain alphanumeric characters, dots, underscores, and hyphens"
            )
        return v

    @validator("timestamp")
    def validate_timestamp_window(cls, v):
        v = to_local_naive(v)
        now = datetime.now()
        if v < _one_year_before(now) or v > now + timedelta(days=1):
            raise ValueError(
                "Timestamp must be within the last year and not more than one day in the future"
            )
        return v

    class Config:
        frozen = True


@dataclass
class AttendanceValidationResult:
    success: bool
    data: Optional[AttendanceLogSchema] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class InvalidAttendanceRecord:
    original_data: Any
    errors: List[str]


@dataclass
class BatchAttendanceValidationResult:
    valid_records: List[AttendanceLogSchema] = field(default_factory=list)
    invalid_records: List[InvalidAttendanceRecord] = field(default_factory=list)
    total_processed: int = 0
    valid_count: int = 0
    invalid_count: int = 0


@dataclass
class SequenceValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _to_datetime(value: float) -> Any:
    seconds = value if value < MILLISECONDS_THRESHOLD else value / 1000
    try:
        return datetime.fromtimestamp(seconds)
    except (OverflowError, OSError, ValueError):
        return value


def sanitize_attendance_data(data: Any) -> Any:
    """Normalise the usual device inconsistencies; non-dicts pass through untouched."""
    if not isinstance(data, dict):
        return data

    sanitized: Dict[str, Any] = dict(data)

    if "userid" in sanitized and "user_id" not in sanitized:
        sanitized["user_id"] = sanitized.pop("userid")

    user_id = sanitized.get("user_id")
    if isinstance(user_id, str):
        sanitized["user_id"] = WHITESPACE_RUN.sub("_", user_id.strip())
    elif isinstance(user_id, int) and not isinstance(user_id, bool):
        sanitized["user_id"] = str(user_id)

    timestamp = sanitized.get("timestamp")
    if isinstance(timestamp, str):
        stripped = timestamp.strip()
        try:
            sanitized["timestamp"] = _to_datetime(float(stripped))
        except ValueError:
            try:
                sanitized["timestamp"] = to_local_naive(datetime.fromisoformat(stripped.replace("Z", "+00:00")))
            except ValueError:
                pass
    elif isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        sanitized["timestamp"] = _to_datetime(timestamp)
    elif isinstance(timestamp, datetime):
        sanitized["timestamp"] = to_local_naive(timestamp)

    for numeric_field in ("uid", "state", "type"):
        value = sanitized.get(numeric_field)
        if isinstance(value, str):
            match = LEADING_INT.match(value)
            if match:
                sanitized[numeric_field] = int(match.group(1))

    return sanitized


def _format_errors(exc: PydanticValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}" if location else message)
    return messages


def validate_attendance_record(data: Any) -> AttendanceValidationResult:
    """Sanitise and schema-check one raw punch. Never raises."""
    if not isinstance(data, dict):
        return AttendanceValidationResult(
            success=False,
            errors=["Attendance record must be an object"]
        )

    try:
        record = AttendanceLogSchema.model_validate(sanitize_attendance_data(data))
    except PydanticValidationError as e:
        return AttendanceValidationResult(success=False, errors=_format_errors(e))
    except (TypeError, ValueError) as e:
        return AttendanceValidationResult(success=False, errors=[str(e) or "Unknown validation error"])

    return AttendanceValidationResult(success=True, data=record)


def validate_attendance_records_batch(data: List[Any]) -> BatchAttendanceValidationResult:
    result = BatchAttendanceValidationResult(total_processed=len(data))

    for item in data:
        outcome = validate_attendance_record(item)
        if outcome.success:
            result.valid_records.append(outcome.data)
        else:
            result.invalid_records.append(InvalidAttendanceRecord(original_data=item, errors=outcome.errors))

    result.valid_count = len(result.valid_records)
    result.invalid_count = len(result.invalid_records)

    if result.invalid_count:
        logger.info(f"Schema validation rejected {result.invalid_count}/{result.total_processed} punches")
    return result


def validate_attendance_sequence(records: List[AttendanceLogSchema]) -> SequenceValidationResult:
    """
    Check punch order per employee.

    Two punches of one employee less than a minute apart are reported as a
    duplicate; otherwise two consecutive check-outs or check-ins are
    sequence violations. Nothing is corrected.
    """
    errors: List[str] = []
    by_employee: Dict[str, List[AttendanceLogSchema]] = {}
    for record in sorted(records, key=lambda r: r.timestamp):
        by_employee.setdefault(record.user_id, []).append(record)

    for punches in by_employee.values():
        for current, following in zip(punches, punches[1:]):
            if abs(following.timestamp - current.timestamp) < DUPLICATE_WINDOW:
                errors.append(
                    f"Duplicate attendance record detected for employee {current.user_id} "
                    f"at {current.timestamp.isoformat()}"
                )
                continue

            if current.state == AttendanceState.CHECK_OUT and following.state == AttendanceState.CHECK_OUT:
                errors.append(f"Invalid sequence: Employee {current.user_id} has consecutive check-out records")

            if current.state == AttendanceState.CHECK_IN and following.state == AttendanceState.CHECK_IN:
                errors.append(f"Invalid sequence: Employee {current.user_id} has consecutive check-in records")

    return SequenceValidationResult(valid=not errors, errors=errors)
