"""
Device clients speaking the ZKTeco protocol.

The protocol itself is handled by pyzk; its calls block on sockets, so they
are pushed onto worker threads with ``asyncio.to_thread``.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from zk import ZK

from attendance_sync.core.config import settings
from attendance_sync.schemas.zkteco import DeviceInfo, DeviceUser


logger = logging.getLogger(__name__)


class DeviceClient(ABC):
    """The operations the gateway needs from a physical device."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def get_info(self) -> DeviceInfo:
        ...

    @abstractmethod
    async def get_users(self) -> List[DeviceUser]:
        ...

    @abstractmethod
    async def get_attendance(self) -> List[Dict[str, Any]]:
        """Raw punches as ``{uid, user_id, timestamp, state, type}`` dicts; ``uid`` identifies the punch."""
        ...


class PyZKDeviceClient(DeviceClient):
    """DeviceClient backed by a pyzk connection."""

    def __init__(
        self,
        ip: str,
        port: int = 4370,
        timeout: float = 5.0,
        password: int = 0,
        force_udp: bool = False
    ):
        self.ip = ip
        self.port = port
        self.timeout = timeout
        self.password = password
        self.force_udp = force_udp
        self.conn = None

    def _connect(self):
        zk = ZK(
            self.ip,
            port=self.port,
            timeout=int(max(self.timeout, 1)),
            password=self.password,
            force_udp=self.force_udp,
            ommit_ping=True
        )
        return zk.connect()

    async def connect(self) -> None:
        self.conn = await asyncio.to_thread(self._connect)
        logger.debug(f"Socket open to {self.ip}:{self.port}")

    async def disconnect(self) -> None:
        conn, self.conn = self.conn, None
        if conn is not None:
            await asyncio.to_thread(conn.disconnect)

    def _require_conn(self):
        if self.conn is None:
            raise ConnectionError(f"No open connection to {self.ip}:{self.port}")
        return self.conn

    def _read_info(self) -> DeviceInfo:
        conn = self._require_conn()
        conn.read_sizes()
        return DeviceInfo(
            device_name=conn.get_device_name() or "ZKTeco Device",
            serial_number=conn.get_serialnumber() or None,
            firmware_version=conn.get_firmware_version() or None,
            platform=conn.get_platform() or None,
            user_count=conn.users,
            record_count=conn.records,
        )

    async def get_info(self) -> DeviceInfo:
        return await asyncio.to_thread(self._read_info)

    def _read_users(self) -> List[DeviceUser]:
        conn = self._require_conn()
        return [
            DeviceUser(
                uid=u.uid,
                user_id=str(u.user_id),
                name=u.name,
                privilege=u.privilege,
                card=u.card,
            )
            for u in conn.get_users()
        ]

    async def get_users(self) -> List[DeviceUser]:
        return await asyncio.to_thread(self._read_users)

    def _read_attendance(self) -> List[Dict[str, Any]]:
        conn = self._require_conn()
        # Device is disabled while the log buffer is read
        conn.disable_device()
        try:
            attendances = conn.get_attendance()
        finally:
            conn.enable_device()

        # pyzk's Attendance.uid is the user's slot on the device, shared by
        # all of their punches; a punch is identified by its log position.
        return [
            {
                "uid": position,
                "user_id": a.user_id,
                "timestamp": a.timestamp,
                "state": a.punch,
                "type": a.status,
            }
            for position, a in enumerate(attendances, start=1)
        ]

    async def get_attendance(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_attendance)


def create_pyzk_client(ip: str, port: int, timeout: Optional[float] = None, **kwargs) -> PyZKDeviceClient:
    return PyZKDeviceClient(
        ip,
        port=port,
        timeout=timeout or settings.ZKT_DEFAULT_TIMEOUT,
        password=kwargs.get("password", settings.ZKT_DEVICE_PASSWORD),
        force_udp=kwargs.get("force_udp", settings.ZKT_FORCE_UDP),
    )
