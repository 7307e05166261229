"""
Tests for the pyzk-backed device client with a recorded pyzk connection.
"""
from unittest.mock import Mock

import pytest
from zk.attendance import Attendance

from attendance_sync.integrations.zkteco.client import PyZKDeviceClient, create_pyzk_client
from attendance_sync.services.sync.data_validator import validate_attendance_records_batch
from tests.helpers import recorded_pyzk_connection, yesterday_at


def _aisha_day():
    # pyzk reports the same uid (the user's slot) on every punch of one user
    return [
        Attendance("aisha", yesterday_at(8), 1, 0, uid=7),
        Attendance("aisha", yesterday_at(17), 1, 1, uid=7),
    ]


class TestReadAttendance:

    def test_each_punch_gets_its_own_transaction(self):
        client = PyZKDeviceClient("192.168.1.100")
        client.conn = recorded_pyzk_connection(_aisha_day())

        logs = client._read_attendance()

        assert [log["uid"] for log in logs] == [1, 2]
        assert [log["state"] for log in logs] == [0, 1]
        assert [log["user_id"] for log in logs] == ["aisha", "aisha"]
        assert logs[1]["timestamp"] == yesterday_at(17)
        assert logs[0]["type"] == 1

    def test_logs_pass_schema_validation_as_separate_punches(self):
        client = PyZKDeviceClient("192.168.1.100")
        client.conn = recorded_pyzk_connection(_aisha_day())

        batch = validate_attendance_records_batch(client._read_attendance())

        assert batch.valid_count == 2
        assert {record.uid for record in batch.valid_records} == {1, 2}

    def test_device_reenabled_after_read(self):
        conn = recorded_pyzk_connection(_aisha_day())
        client = PyZKDeviceClient("192.168.1.100")
        client.conn = conn

        client._read_attendance()

        conn.disable_device.assert_called_once_with()
        conn.enable_device.assert_called_once_with()

    def test_device_reenabled_when_read_fails(self):
        conn = recorded_pyzk_connection()
        conn.get_attendance.side_effect = ConnectionResetError("connection reset")
        client = PyZKDeviceClient("192.168.1.100")
        client.conn = conn

        with pytest.raises(ConnectionResetError):
            client._read_attendance()

        conn.enable_device.assert_called_once_with()

    def test_requires_open_connection(self):
        client = PyZKDeviceClient("192.168.1.100", port=4370)

        with pytest.raises(ConnectionError, match="No open connection to 192.168.1.100:4370"):
            client._read_attendance()


class TestAsyncOperations:

    @pytest.mark.asyncio
    async def test_connect_fetch_and_disconnect(self):
        conn = recorded_pyzk_connection(_aisha_day())
        client = PyZKDeviceClient("192.168.1.100")
        client._connect = Mock(return_value=conn)

        await client.connect()
        info = await client.get_info()
        logs = await client.get_attendance()
        await client.disconnect()

        assert info.serial_number == "CKJ7193060123"
        assert info.record_count == 2
        assert len(logs) == 2
        conn.disconnect.assert_called_once_with()
        assert client.conn is None

    @pytest.mark.asyncio
    async def test_disconnect_without_connection(self):
        client = PyZKDeviceClient("192.168.1.100")

        await client.disconnect()

        assert client.conn is None


class TestCreatePyZKClient:

    def test_uses_given_timeout(self):
        client = create_pyzk_client("192.168.1.100", 4370, timeout=12.5)

        assert client.timeout == 12.5
        assert client.port == 4370
