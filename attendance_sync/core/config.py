import json
import re
from typing import Any, Dict, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings


IPV4_PATTERN = re.compile(
    r"^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$"
)

DEFAULT_MACHINES: List[Dict[str, Any]] = [
    {
        "id": "zkt_main_01",
        "name": "Main Office - Entry",
        "ip": "192.168.1.100",
        "port": 4370,
        "enabled": True,
        "priority": 1,
    },
    {
        "id": "zkt_warehouse_01",
        "name": "Warehouse - Entry",
        "ip": "192.168.1.101",
        "port": 4370,
        "enabled": True,
        "priority": 2,
    },
]


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Attendance Sync"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./attendance_sync.db"
    DATABASE_ECHO: bool = False

    # ZKTeco device settings
    ZKT_MACHINES: List[Dict[str, Any]] = Field(default_factory=lambda: list(DEFAULT_MACHINES))
    ZKT_DEFAULT_PORT: int = 4370
    ZKT_DEFAULT_TIMEOUT: float = 5.0
    ZKT_DEVICE_PASSWORD: int = 0
    ZKT_FORCE_UDP: bool = False
    ZKT_MAX_RETRIES: int = 3
    ZKT_RETRY_DELAY: float = 1.0
    ZKT_RETRY_MAX_DELAY: float = 10.0
    ZKT_CIRCUIT_FAILURE_THRESHOLD: int = 5
    ZKT_CIRCUIT_RECOVERY_TIMEOUT: float = 30.0

    # Sync job defaults
    ATTENDANCE_SYNC_ENABLED: bool = True
    ATTENDANCE_SYNC_CRON: str = "0 6 * * *"
    ATTENDANCE_SYNC_TIMEZONE: str = "Asia/Maldives"
    ATTENDANCE_SYNC_MAX_RETRIES: int = 3
    ATTENDANCE_SYNC_RETRY_DELAY: int = 15
    ATTENDANCE_SYNC_BATCH_SIZE: int = 100
    ATTENDANCE_SYNC_TIMEOUT_MS: int = 30000
    ATTENDANCE_SYNC_VALIDATION: bool = True
    ATTENDANCE_SYNC_DEDUPLICATION: bool = True
    ATTENDANCE_SYNC_PARALLEL_MACHINES: bool = False
    ATTENDANCE_SYNC_DEDUPLICATION_STRATEGY: str = "SKIP_DUPLICATES"

    # Employee identity mapping
    EMPLOYEE_MAPPING_STRATEGY: str = "email_prefix"
    EMPLOYEE_EMAIL_DOMAIN: str = "@company.com"
    EMPLOYEE_CACHE_RESULTS: bool = True
    EMPLOYEE_CACHE_TTL_MINUTES: float = 30

    @validator("ZKT_MACHINES", pre=True)
    def parse_machines(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("ATTENDANCE_SYNC_DEDUPLICATION_STRATEGY")
    def validate_dedup_strategy(cls, v):
        allowed = ("SKIP_DUPLICATES", "UPDATE_EXISTING", "ERROR_ON_DUPLICATE")
        if v not in allowed:
            raise ValueError(f"Deduplication strategy must be one of {allowed}")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


def validate_attendance_sync_config(config: Settings) -> Dict[str, Any]:
    """
    Check a settings object for values the sync pipeline cannot run with.

    Returns a dict with ``is_valid`` and a list of human readable ``errors``
    instead of raising, so callers can surface every problem at once.
    """
    errors: List[str] = []

    if not config.ATTENDANCE_SYNC_CRON:
        errors.append("Cron expression is required for scheduling")

    if config.ATTENDANCE_SYNC_MAX_RETRIES < 0 or config.ATTENDANCE_SYNC_MAX_RETRIES > 10:
        errors.append("Max retries must be between 0 and 10")

    if config.ATTENDANCE_SYNC_RETRY_DELAY < 1 or config.ATTENDANCE_SYNC_RETRY_DELAY > 60:
        errors.append("Retry delay must be between 1 and 60 minutes")

    if not config.ZKT_MACHINES:
        errors.append("At least one ZKT machine must be configured")
    elif not any(machine.get("enabled", True) for machine in config.ZKT_MACHINES):
        errors.append("At least one ZKT machine must be enabled")

    for machine in config.ZKT_MACHINES:
        machine_id = machine.get("id") or "unknown"
        if not machine.get("id") or not machine.get("name") or not machine.get("ip"):
            errors.append(f"Machine {machine_id} missing required fields")

        port = machine.get("port", config.ZKT_DEFAULT_PORT)
        if not isinstance(port, int) or port < 1 or port > 65535:
            errors.append(f"Machine {machine_id} has invalid port number")

        if machine.get("ip") and not IPV4_PATTERN.match(str(machine["ip"])):
            errors.append(f"Machine {machine_id} has invalid IP address format")

    if config.ATTENDANCE_SYNC_BATCH_SIZE < 1 or config.ATTENDANCE_SYNC_BATCH_SIZE > 1000:
        errors.append("Batch size must be between 1 and 1000")

    if config.ATTENDANCE_SYNC_TIMEOUT_MS < 1000 or config.ATTENDANCE_SYNC_TIMEOUT_MS > 300000:
        errors.append("Timeout must be between 1000ms and 300000ms (5 minutes)")

    return {"is_valid": len(errors) == 0, "errors": errors}


def get_enabled_machines(config: Settings) -> List[Dict[str, Any]]:
    """Enabled machines from settings, in processing (priority) order."""
    enabled = [m for m in config.ZKT_MACHINES if m.get("enabled", True)]
    return sorted(enabled, key=lambda m: m.get("priority", 0))


settings = Settings()
