"""
Tests for settings parsing and sync configuration checks.
"""
import pytest
from pydantic import ValidationError

from attendance_sync.core.config import Settings, get_enabled_machines, validate_attendance_sync_config


def _machine(**overrides):
    machine = {"id": "zkt_test_01", "name": "Test Clock", "ip": "10.0.0.10", "port": 4370,
               "enabled": True, "priority": 1}
    machine.update(overrides)
    return machine


class TestSettings:

    def test_defaults_are_valid(self):
        config = Settings()

        result = validate_attendance_sync_config(config)

        assert result["is_valid"] is True
        assert result["errors"] == []
        assert config.ZKT_DEFAULT_TIMEOUT == 5.0
        assert config.EMPLOYEE_MAPPING_STRATEGY == "email_prefix"

    def test_machines_parsed_from_json(self):
        config = Settings(ZKT_MACHINES='[{"id": "a", "name": "A", "ip": "10.0.0.1"}]')

        assert config.ZKT_MACHINES == [{"id": "a", "name": "A", "ip": "10.0.0.1"}]

    def test_unknown_deduplication_strategy_rejected(self):
        with pytest.raises(ValidationError):
            Settings(ATTENDANCE_SYNC_DEDUPLICATION_STRATEGY="MERGE_EVERYTHING")


class TestValidateAttendanceSyncConfig:

    def test_reports_every_problem(self):
        config = Settings(
            ZKT_MACHINES=[_machine(ip="999.1.1.1", port=70000), _machine(id="", name="")],
            ATTENDANCE_SYNC_BATCH_SIZE=0,
            ATTENDANCE_SYNC_TIMEOUT_MS=10,
            ATTENDANCE_SYNC_MAX_RETRIES=11,
        )

        errors = validate_attendance_sync_config(config)["errors"]

        assert "Machine zkt_test_01 has invalid IP address format" in errors
        assert "Machine zkt_test_01 has invalid port number" in errors
        assert "Machine unknown missing required fields" in errors
        assert "Batch size must be between 1 and 1000" in errors
        assert "Timeout must be between 1000ms and 300000ms (5 minutes)" in errors
        assert "Max retries must be between 0 and 10" in errors

    def test_requires_an_enabled_machine(self):
        config = Settings(ZKT_MACHINES=[_machine(enabled=False)])

        result = validate_attendance_sync_config(config)

        assert result["is_valid"] is False
        assert "At least one ZKT machine must be enabled" in result["errors"]

    def test_requires_machines(self):
        result = validate_attendance_sync_config(Settings(ZKT_MACHINES=[]))

        assert "At least one ZKT machine must be configured" in result["errors"]

    def test_enabled_machines_sorted_by_priority(self):
        config = Settings(ZKT_MACHINES=[
            _machine(id="late", priority=3),
            _machine(id="off", priority=0, enabled=False),
            _machine(id="early", priority=1),
        ])

        assert [m["id"] for m in get_enabled_machines(config)] == ["early", "late"]
