"""
Pydantic schemas for ZKTeco device configuration and device payloads
"""

from pydantic import BaseModel, Field, validator
from typing import Any, Dict, Optional

from attendance_sync.core.config import IPV4_PATTERN


class MachineConfig(BaseModel):
    """A time-clock device the sync pipeline talks to"""
    id: str = Field(..., min_length=1, max_length=50)
    name: str = Field(..., min_length=1, max_length=255)
    ip: str
    port: int = Field(default=4370, ge=1, le=65535)
    enabled: bool = True
    priority: int = Field(default=1, ge=0)
    timeout: Optional[float] = Field(default=None, gt=0)

    @validator("ip")
    def validate_ip(cls, v):
        if not IPV4_PATTERN.match(v):
            raise ValueError("Invalid IP address format")
        return v

    @property
    def address(self) -> str:
        return f"{self.ip}:{self.port}"


class DeviceInfo(BaseModel):
    """Identification data read from a device"""
    device_name: Optional[str] = None
    serial_number: Optional[str] = None
    firmware_version: Optional[str] = None
    platform: Optional[str] = None
    user_count: Optional[int] = None
    record_count: Optional[int] = None


class DeviceUser(BaseModel):
    """A user enrolled on a device"""
    uid: int
    user_id: str
    name: Optional[str] = None
    privilege: Optional[int] = None
    card: Optional[int] = None


class ConnectionTestResult(BaseModel):
    """Outcome of a connect, read-info and disconnect round trip"""
    success: bool
    message: str
    response_time_ms: int
    device_info: Optional[DeviceInfo] = None
    error: Optional[Dict[str, Any]] = None
