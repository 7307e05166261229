"""
Gateway owning the connection to one ZKTeco device.

Every device call goes through a :class:`DeviceResiliencePolicy`: attempts
carry a timeout and are retried with exponential backoff, and the whole
retried operation runs inside the circuit breaker registered for the
device address. Results come back as :class:`DeviceResponse` objects so
callers never have to catch device exceptions.
"""
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from attendance_sync.core.circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerManager
from attendance_sync.core.config import settings
from attendance_sync.integrations.zkteco.client import DeviceClient, create_pyzk_client
from attendance_sync.integrations.zkteco.error_handler import (
    DeviceCircuitOpenError,
    DeviceError,
    DeviceErrorHandler,
    DeviceNotConnectedError,
    RetryConfig,
    retry_on_error,
)
from attendance_sync.schemas.zkteco import ConnectionTestResult, MachineConfig
from attendance_sync.services.sync.data_validator import (
    InvalidAttendanceRecord,
    validate_attendance_records_batch,
)


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


@dataclass
class DeviceResponse:
    success: bool
    data: Any = None
    error: Optional[Dict[str, Any]] = None


@dataclass
class DeviceServiceMetrics:
    total_operations: int = 0
    successful_operations: int = 0
    failed_operations: int = 0
    average_response_time: float = 0.0
    circuit_breaker_trips: int = 0
    last_operation_time: Optional[datetime] = None


@dataclass
class DeviceOperationConfig:
    enable_retry: bool = True
    enable_circuit_breaker: bool = True
    enable_validation: bool = True
    timeout: float = 5.0


@dataclass
class ValidatedLogs:
    valid_records: List[Any] = field(default_factory=list)
    invalid_records: List[InvalidAttendanceRecord] = field(default_factory=list)
    summary: Dict[str, int] = field(default_factory=dict)


class DeviceResiliencePolicy:
    """Retry with backoff inside a circuit breaker."""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        retry_config: RetryConfig,
        error_handler: Optional[DeviceErrorHandler] = None
    ):
        self.circuit_breaker = circuit_breaker
        self.retry_config = retry_config
        self.error_handler = error_handler

    async def execute(
        self,
        func: Callable[[], Awaitable[Any]],
        operation: str,
        device_id: str,
        timeout: Optional[float] = None,
        enable_retry: bool = True,
        enable_circuit_breaker: bool = True
    ) -> Any:
        """
        Run ``func`` and return its result or raise a classified DeviceError.

        The breaker sees one outcome per call, after retries are used up.
        """
        retry_config = self.retry_config if enable_retry else RetryConfig(max_attempts=1)

        async def attempt():
            return await retry_on_error(
                func, retry_config, operation,
                device_id=device_id, timeout=timeout, error_handler=self.error_handler
            )

        if not enable_circuit_breaker:
            return await attempt()

        try:
            return await self.circuit_breaker.call(attempt)
        except CircuitBreakerError as e:
            raise DeviceCircuitOpenError(str(e), device_id=device_id, operation=operation)


class ZKTDeviceGateway:
    """Connection lifecycle, data retrieval and health metrics for one device."""

    def __init__(
        self,
        machine: MachineConfig,
        client: Optional[DeviceClient] = None,
        operation_config: Optional[DeviceOperationConfig] = None,
        circuit_breaker_manager: Optional[CircuitBreakerManager] = None,
        retry_config: Optional[RetryConfig] = None,
        error_handler: Optional[DeviceErrorHandler] = None
    ):
        self.machine = machine
        self.device_id = machine.address
        self.operation_config = operation_config or DeviceOperationConfig(
            timeout=machine.timeout or settings.ZKT_DEFAULT_TIMEOUT
        )
        self.client = client or create_pyzk_client(
            machine.ip, machine.port, timeout=self.operation_config.timeout
        )

        manager = circuit_breaker_manager or CircuitBreakerManager(
            failure_threshold=settings.ZKT_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=settings.ZKT_CIRCUIT_RECOVERY_TIMEOUT
        )
        self.circuit_breaker = manager.get_or_create(self.device_id)
        self.error_handler = error_handler or DeviceErrorHandler()
        self.policy = DeviceResiliencePolicy(
            self.circuit_breaker,
            retry_config or RetryConfig(
                max_attempts=settings.ZKT_MAX_RETRIES,
                base_delay=settings.ZKT_RETRY_DELAY,
                max_delay=settings.ZKT_RETRY_MAX_DELAY
            ),
            self.error_handler
        )

        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[DeviceError] = None
        self.last_connected: Optional[datetime] = None
        self.metrics = DeviceServiceMetrics()

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def _execute(self, func: Callable[[], Awaitable[Any]], operation: str) -> Any:
        return await self.policy.execute(
            func,
            operation,
            self.device_id,
            timeout=self.operation_config.timeout,
            enable_retry=self.operation_config.enable_retry,
            enable_circuit_breaker=self.operation_config.enable_circuit_breaker
        )

    async def _close_client(self) -> None:
        try:
            await self.client.disconnect()
        except Exception as e:
            logger.warning(f"Error closing socket to {self.device_id}: {e}")

    async def connect(self) -> DeviceResponse:
        """Open the socket and read device info in the same call."""
        if self.is_connected:
            return DeviceResponse(success=True, data=self.get_connection_status())

        started = time.monotonic()
        self.state = ConnectionState.CONNECTING

        async def open_and_identify():
            await self.client.connect()
            try:
                return await self.client.get_info()
            except Exception:
                await self._close_client()
                raise

        try:
            device_info = await self._execute(open_and_identify, "connect")
        except DeviceError as e:
            self.state = ConnectionState.DISCONNECTED
            self.last_error = e
            self._update_metrics(started, success=False)
            logger.error(f"Connection to {self.machine.id} ({self.device_id}) failed: {e.message}")
            return DeviceResponse(success=False, error=e.to_dict())

        self.state = ConnectionState.CONNECTED
        self.last_error = None
        self.last_connected = datetime.now()
        self._update_metrics(started, success=True)
        logger.info(f"Connected to {self.machine.id} ({self.device_id})")

        return DeviceResponse(
            success=True,
            data={
                "is_connected": True,
                "device_info": device_info,
                "last_connected": self.last_connected,
            }
        )

    async def disconnect(self) -> DeviceResponse:
        """Close the connection. Safe to call in any state."""
        if self.state == ConnectionState.DISCONNECTED:
            return DeviceResponse(success=True, data=True)

        try:
            await self.client.disconnect()
        except Exception as e:
            logger.warning(f"Disconnect from {self.device_id} failed: {e}")
            return DeviceResponse(
                success=False,
                error={
                    "code": "DISCONNECTION_FAILED",
                    "message": str(e) or "Unknown disconnection error",
                    "timestamp": datetime.now().isoformat(),
                }
            )
        finally:
            self.state = ConnectionState.DISCONNECTED

        return DeviceResponse(success=True, data=True)

    async def _connected_call(
        self,
        func: Callable[[], Awaitable[Any]],
        operation: str,
        failure_code: str
    ) -> DeviceResponse:
        if not self.is_connected:
            error = DeviceNotConnectedError(device_id=self.device_id, operation=operation)
            return DeviceResponse(success=False, error=error.to_dict())

        started = time.monotonic()
        try:
            data = await self._execute(func, operation)
        except DeviceError as e:
            self.last_error = e
            self._update_metrics(started, success=False)
            error = e.to_dict()
            if not isinstance(e, DeviceCircuitOpenError):
                error["code"] = failure_code
            return DeviceResponse(success=False, error=error)

        self._update_metrics(started, success=True)
        return DeviceResponse(success=True, data=data)

    async def get_device_info(self) -> DeviceResponse:
        return await self._connected_call(self.client.get_info, "get_device_info", "GET_INFO_FAILED")

    async def get_users(self) -> DeviceResponse:
        return await self._connected_call(self.client.get_users, "get_users", "GET_USERS_FAILED")

    async def get_attendance_logs(self) -> DeviceResponse:
        response = await self._connected_call(
            self.client.get_attendance, "get_attendance_logs", "GET_ATTENDANCE_FAILED"
        )
        if response.success:
            logger.info(f"Fetched {len(response.data)} attendance logs from {self.machine.id}")
        return response

    async def get_validated_attendance_logs(self) -> DeviceResponse:
        """
        Fetch logs and run them through schema validation.

        With validation disabled every raw log is passed through as valid.
        """
        logs = await self.get_attendance_logs()
        if not logs.success:
            return logs

        if not self.operation_config.enable_validation:
            return DeviceResponse(
                success=True,
                data=ValidatedLogs(
                    valid_records=list(logs.data),
                    invalid_records=[],
                    summary={
                        "total_processed": len(logs.data),
                        "valid_count": len(logs.data),
                        "invalid_count": 0,
                    }
                )
            )

        batch = validate_attendance_records_batch(logs.data)
        return DeviceResponse(
            success=True,
            data=ValidatedLogs(
                valid_records=batch.valid_records,
                invalid_records=batch.invalid_records,
                summary={
                    "total_processed": batch.total_processed,
                    "valid_count": batch.valid_count,
                    "invalid_count": batch.invalid_count,
                }
            )
        )

    async def test_connection(self) -> ConnectionTestResult:
        """Connect, read device info and disconnect again."""
        started = time.monotonic()
        try:
            result = await self.connect()
            response_time_ms = int((time.monotonic() - started) * 1000)

            if result.success:
                await self.disconnect()
                return ConnectionTestResult(
                    success=True,
                    message="Connection successful",
                    response_time_ms=response_time_ms,
                    device_info=result.data["device_info"] if isinstance(result.data, dict) else None
                )

            return ConnectionTestResult(
                success=False,
                message=result.error.get("message") or "Connection failed",
                response_time_ms=response_time_ms,
                error=result.error
            )
        except Exception as e:
            logger.exception(f"Connection test for {self.device_id} raised")
            return ConnectionTestResult(
                success=False,
                message=str(e) or "Connection test failed",
                response_time_ms=int((time.monotonic() - started) * 1000),
                error={
                    "code": "TEST_CONNECTION_FAILED",
                    "message": str(e) or "Connection test failed",
                    "timestamp": datetime.now().isoformat(),
                }
            )

    async def health_check(self) -> Dict[str, Any]:
        test = await self.test_connection()
        return {
            "device_id": self.device_id,
            "machine_id": self.machine.id,
            "status": "connected" if test.success else "error",
            "last_check": datetime.now(),
            "response_time_ms": test.response_time_ms,
            "error": None if test.success else test.message,
        }

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "is_connected": self.is_connected,
            "last_connected": self.last_connected,
            "error": self.last_error.message if self.last_error else None,
        }

    def get_metrics(self) -> DeviceServiceMetrics:
        return replace(self.metrics)

    def get_error_handler_status(self) -> Dict[str, Any]:
        return {
            "circuit_breaker": self.circuit_breaker.get_status(),
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    def reset_error_handler(self) -> None:
        """Close this device's breaker and start metrics over."""
        self.circuit_breaker.reset()
        self.last_error = None
        self.metrics = DeviceServiceMetrics()

    def _update_metrics(self, started: float, success: bool) -> None:
        response_time = (time.monotonic() - started) * 1000

        self.metrics.total_operations += 1
        self.metrics.last_operation_time = datetime.now()

        if success:
            self.metrics.successful_operations += 1
        else:
            self.metrics.failed_operations += 1
            if self.circuit_breaker.is_open:
                self.metrics.circuit_breaker_trips += 1

        # Exponential moving average
        if self.metrics.average_response_time == 0:
            self.metrics.average_response_time = response_time
        else:
            self.metrics.average_response_time = (
                self.metrics.average_response_time * 0.7 + response_time * 0.3
            )
