"""
Fake device client and punch builders shared by the test-suite.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

from attendance_sync.integrations.zkteco.client import DeviceClient
from attendance_sync.integrations.zkteco.error_handler import RetryConfig
from attendance_sync.schemas.zkteco import DeviceInfo, DeviceUser


FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.01, max_delay=0.02, jitter=False)


def yesterday_at(hour: int, minute: int = 0) -> datetime:
    day = datetime.now() - timedelta(days=1)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def make_punch(uid: int, user_id: str, timestamp: datetime, state: int = 0, punch_type: int = 1) -> Dict[str, Any]:
    return {"uid": uid, "user_id": user_id, "timestamp": timestamp, "state": state, "type": punch_type}


def day_of_pairs(user_ids: List[str], first_uid: int = 1) -> List[Dict[str, Any]]:
    """A check-in at 08:00 and a check-out at 17:00 yesterday for each user."""
    punches = []
    uid = first_uid
    for offset, user_id in enumerate(user_ids):
        punches.append(make_punch(uid, user_id, yesterday_at(8, offset), state=0))
        punches.append(make_punch(uid + 1, user_id, yesterday_at(17, offset), state=1))
        uid += 2
    return punches


def recorded_pyzk_connection(attendances=()) -> Mock:
    """Stand-in for the connection object pyzk's ZK.connect() returns."""
    conn = Mock()
    conn.get_attendance.return_value = list(attendances)
    conn.get_device_name.return_value = "K40"
    conn.get_serialnumber.return_value = "CKJ7193060123"
    conn.get_firmware_version.return_value = "Ver 6.60 Apr 28 2017"
    conn.get_platform.return_value = "ZEM560_TFT"
    conn.users = 3
    conn.records = len(attendances)
    return conn


class FakeDeviceClient(DeviceClient):
    """In-memory stand-in for a time clock."""

    def __init__(
        self,
        logs: Optional[List[Dict[str, Any]]] = None,
        info: Optional[DeviceInfo] = None,
        users: Optional[List[DeviceUser]] = None,
        connect_error: Optional[Exception] = None,
        fetch_error: Optional[Exception] = None,
        delay: float = 0.0
    ):
        self.logs = logs or []
        self.info = info or DeviceInfo(device_name="Fake Clock", serial_number="FK-0001", user_count=3)
        self.users = users or []
        self.connect_error = connect_error
        self.fetch_error = fetch_error
        self.delay = delay
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.attendance_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.connect_error:
            raise self.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    async def get_info(self) -> DeviceInfo:
        return self.info

    async def get_users(self) -> List[DeviceUser]:
        return list(self.users)

    async def get_attendance(self) -> List[Dict[str, Any]]:
        self.attendance_calls += 1
        if self.fetch_error:
            raise self.fetch_error
        return [dict(log) for log in self.logs]
