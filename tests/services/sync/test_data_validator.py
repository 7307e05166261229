"""
Tests for punch sanitisation, schema validation and sequence checks.
"""
from datetime import datetime, timedelta, timezone

import pytest

from attendance_sync.services.sync.data_validator import (
    AttendanceLogSchema,
    sanitize_attendance_data,
    validate_attendance_record,
    validate_attendance_records_batch,
    validate_attendance_sequence,
)
from tests.helpers import make_punch, yesterday_at


class TestSanitizeAttendanceData:

    def test_user_id_trimmed_and_whitespace_collapsed(self):
        data = sanitize_attendance_data({"user_id": "  john   doe \t smith "})

        assert data["user_id"] == "john_doe_smith"

    def test_userid_alias_and_numeric_user_id(self):
        assert sanitize_attendance_data({"userid": 1042})["user_id"] == "1042"

    def test_seconds_and_milliseconds_timestamps(self):
        moment = yesterday_at(9, 30)
        seconds = int(moment.timestamp())

        assert sanitize_attendance_data({"timestamp": seconds})["timestamp"] == moment
        assert sanitize_attendance_data({"timestamp": seconds * 1000})["timestamp"] == moment
        assert sanitize_attendance_data({"timestamp": str(seconds)})["timestamp"] == moment

    def test_iso_string_timestamp(self):
        moment = yesterday_at(9, 30)

        assert sanitize_attendance_data({"timestamp": moment.isoformat()})["timestamp"] == moment

    def test_aware_timestamp_converted_to_local(self):
        aware = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

        sanitized = sanitize_attendance_data({"timestamp": aware})["timestamp"]

        assert sanitized.tzinfo is None
        assert sanitized == aware.astimezone().replace(tzinfo=None)

    def test_numeric_strings_become_ints(self):
        data = sanitize_attendance_data({"uid": "17", "state": " 1", "type": "4abc"})

        assert (data["uid"], data["state"], data["type"]) == (17, 1, 4)

    def test_non_dict_passes_through(self):
        assert sanitize_attendance_data(None) is None
        assert sanitize_attendance_data("garbage") == "garbage"


class TestValidateAttendanceRecord:

    def test_valid_record(self):
        result = validate_attendance_record(make_punch(7, " aisha ", yesterday_at(8)))

        assert result.success is True
        assert isinstance(result.data, AttendanceLogSchema)
        assert result.data.user_id == "aisha"
        assert result.data.uid == 7

    @pytest.mark.parametrize("moment", [
        datetime.now() - timedelta(days=400),
        datetime.now() - timedelta(days=366),
        datetime.now() + timedelta(days=2),
    ])
    def test_timestamp_outside_window_rejected(self, moment):
        result = validate_attendance_record(make_punch(1, "aisha", moment))

        assert result.success is False
        assert any("within the last year" in e for e in result.errors)

    def test_timestamp_within_window_accepted(self):
        for moment in (datetime.now() - timedelta(days=360), datetime.now() + timedelta(hours=20)):
            assert validate_attendance_record(make_punch(1, "aisha", moment)).success is True

    @pytest.mark.parametrize("field, value", [
        ("uid", 0),
        ("uid", 1_000_000),
        ("state", 11),
        ("type", -1),
        ("user_id", ""),
        ("user_id", "x" * 51),
        ("user_id", "john@doe"),
    ])
    def test_out_of_range_fields_rejected(self, field, value):
        punch = make_punch(1, "aisha", yesterday_at(8))
        punch[field] = value

        result = validate_attendance_record(punch)

        assert result.success is False
        assert any(e.startswith(field) for e in result.errors)

    def test_invalid_user_id_message(self):
        result = validate_attendance_record(make_punch(1, "john@doe", yesterday_at(8)))

        assert any("Employee ID can only contain" in e for e in result.errors)

    def test_non_object_rejected(self):
        result = validate_attendance_record(["not", "a", "record"])

        assert result.success is False
        assert result.errors == ["Attendance record must be an object"]

    def test_missing_fields_reported(self):
        result = validate_attendance_record({"uid": 1})

        assert result.success is False
        assert len(result.errors) == 4


class TestValidateAttendanceRecordsBatch:

    def test_tolerates_malformed_entries(self):
        batch = [make_punch(1, "aisha", yesterday_at(8)), None, "garbage", {}, make_punch(2, "ibrahim", yesterday_at(9))]

        result = validate_attendance_records_batch(batch)

        assert result.total_processed == 5
        assert result.valid_count == 2
        assert result.invalid_count == 3
        assert result.invalid_records[0].original_data is None

    def test_empty_batch(self):
        result = validate_attendance_records_batch([])

        assert (result.total_processed, result.valid_count, result.invalid_count) == (0, 0, 0)


def _record(uid, user_id, moment, state):
    return AttendanceLogSchema(uid=uid, user_id=user_id, timestamp=moment, state=state, type=1)


class TestValidateAttendanceSequence:

    def test_clean_sequence(self):
        records = [
            _record(1, "aisha", yesterday_at(8), 0),
            _record(2, "ibrahim", yesterday_at(8, 5), 0),
            _record(3, "aisha", yesterday_at(17), 1),
            _record(4, "ibrahim", yesterday_at(17, 5), 1),
        ]

        assert validate_attendance_sequence(records).valid is True

    def test_punches_within_a_minute_are_duplicates(self):
        first = yesterday_at(8)
        records = [_record(1, "aisha", first, 0), _record(2, "aisha", first + timedelta(seconds=30), 0)]

        result = validate_attendance_sequence(records)

        assert result.valid is False
        assert result.errors == [
            f"Duplicate attendance record detected for employee aisha at {first.isoformat()}"
        ]

    def test_consecutive_check_outs_and_check_ins(self):
        records = [
            _record(1, "aisha", yesterday_at(8), 0),
            _record(2, "aisha", yesterday_at(9), 0),
            _record(3, "ibrahim", yesterday_at(17), 1),
            _record(4, "ibrahim", yesterday_at(18), 1),
        ]

        errors = validate_attendance_sequence(records).errors

        assert "Invalid sequence: Employee aisha has consecutive check-in records" in errors
        assert "Invalid sequence: Employee ibrahim has consecutive check-out records" in errors

    def test_other_employees_do_not_break_sequence(self):
        records = [
            _record(1, "aisha", yesterday_at(8), 0),
            _record(2, "ibrahim", yesterday_at(8, 30), 0),
            _record(3, "aisha", yesterday_at(17), 1),
        ]

        assert validate_attendance_sequence(records).valid is True
