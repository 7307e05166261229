"""
Error classification, logging and retry utilities for ZKTeco device calls.
"""

import asyncio
import errno
import logging
import random
import socket
import traceback
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable, Union


# Device communication logger
device_logger = logging.getLogger('zkteco_device')


class DeviceErrorSeverity:
    """Error severity levels for device operations."""
    LOW = "LOW"            # Transient, operation can continue
    MEDIUM = "MEDIUM"      # Device or data issue affecting some functionality
    HIGH = "HIGH"          # Repeated failures affecting major functionality
    CRITICAL = "CRITICAL"  # Needs immediate attention


class DeviceErrorCategory:
    """Error categories for device operations."""
    NETWORK = "NETWORK"
    AUTHENTICATION = "AUTHENTICATION"
    TIMEOUT = "TIMEOUT"
    DATA_CORRUPTION = "DATA_CORRUPTION"
    DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"
    SDK_ERROR = "SDK_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN = "UNKNOWN"


RETRYABLE_CATEGORIES = (
    DeviceErrorCategory.NETWORK,
    DeviceErrorCategory.TIMEOUT,
    DeviceErrorCategory.DEVICE_UNAVAILABLE,
)

_NETWORK_ERRNOS = (errno.ECONNREFUSED, errno.ENETUNREACH, errno.EHOSTUNREACH, errno.ECONNRESET)


class DeviceError(Exception):
    """Base exception for device errors with classification metadata."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        category: str = DeviceErrorCategory.UNKNOWN,
        severity: str = DeviceErrorSeverity.MEDIUM,
        device_id: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
        retry_count: int = 0,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or category
        self.category = category
        self.severity = severity
        self.device_id = device_id
        self.operation = operation
        self.details = details or {}
        self.retryable = category in RETRYABLE_CATEGORIES if retryable is None else retryable
        self.retry_count = retry_count
        self.original_exception = original_exception
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/storage."""
        return {
            'code': self.code,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
            'category': self.category,
            'severity': self.severity,
            'device_id': self.device_id,
            'operation': self.operation,
            'details': self.details,
            'retryable': self.retryable,
            'retry_count': self.retry_count,
        }


class DeviceNotConnectedError(DeviceError):
    """Raised when an operation needs a connection that is not open."""

    def __init__(self, message: str = "Device not connected", **kwargs):
        super().__init__(
            message,
            code="NOT_CONNECTED",
            category=DeviceErrorCategory.DEVICE_UNAVAILABLE,
            severity=DeviceErrorSeverity.MEDIUM,
            retryable=False,
            **kwargs
        )


class DeviceConnectionError(DeviceError):
    """Network-level failures reaching the device."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('code', "CONNECTION_FAILED")
        super().__init__(
            message,
            category=DeviceErrorCategory.NETWORK,
            severity=DeviceErrorSeverity.LOW,
            **kwargs
        )


class DeviceTimeoutError(DeviceError):
    """An operation did not finish within its timeout."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('code', "TIMEOUT")
        super().__init__(
            message,
            category=DeviceErrorCategory.TIMEOUT,
            severity=DeviceErrorSeverity.LOW,
            **kwargs
        )


class DeviceCircuitOpenError(DeviceError):
    """The device's circuit breaker is rejecting calls."""

    def __init__(self, message: str = "Circuit breaker is open", **kwargs):
        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            category=DeviceErrorCategory.DEVICE_UNAVAILABLE,
            severity=DeviceErrorSeverity.HIGH,
            retryable=False,
            **kwargs
        )


def categorize_error(error: Any, operation: Optional[str] = None) -> str:
    """
    Classify an exception (or error message) into a DeviceErrorCategory.

    Exception types are checked first, then the message text the way the
    SDK phrases its failures.
    """
    if error is None:
        return DeviceErrorCategory.UNKNOWN

    if isinstance(error, DeviceError):
        return error.category

    if isinstance(error, (asyncio.TimeoutError, socket.timeout)):
        return DeviceErrorCategory.TIMEOUT

    if isinstance(error, (ConnectionError, socket.gaierror)):
        return DeviceErrorCategory.NETWORK

    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return DeviceErrorCategory.NETWORK

    message = str(error).lower()

    if 'zklib' in message or 'zkt' in message or (operation and 'zkt' in operation.lower()):
        return DeviceErrorCategory.SDK_ERROR

    if any(term in message for term in ('network', 'connection', 'socket', 'econnrefused', 'enotfound', 'enetunreach')):
        return DeviceErrorCategory.NETWORK

    if any(term in message for term in ('timeout', 'timed out', 'etimedout')):
        return DeviceErrorCategory.TIMEOUT

    if any(term in message for term in ('auth', 'unauthorized', 'forbidden', 'credentials')):
        return DeviceErrorCategory.AUTHENTICATION

    if any(term in message for term in ('device', 'unavailable', 'offline', 'not found')):
        return DeviceErrorCategory.DEVICE_UNAVAILABLE

    if any(term in message for term in ('corrupt', 'invalid data', 'malformed', 'parse')):
        return DeviceErrorCategory.DATA_CORRUPTION

    return DeviceErrorCategory.UNKNOWN


def determine_severity(category: str, retry_count: int = 0, max_attempts: int = 3) -> str:
    if category == DeviceErrorCategory.AUTHENTICATION or (
        category == DeviceErrorCategory.NETWORK and retry_count >= max_attempts
    ):
        return DeviceErrorSeverity.CRITICAL

    if retry_count >= max_attempts // 2:
        return DeviceErrorSeverity.HIGH

    if category in (DeviceErrorCategory.DEVICE_UNAVAILABLE, DeviceErrorCategory.DATA_CORRUPTION):
        return DeviceErrorSeverity.MEDIUM

    if category in (DeviceErrorCategory.TIMEOUT, DeviceErrorCategory.NETWORK):
        return DeviceErrorSeverity.LOW

    return DeviceErrorSeverity.MEDIUM


def to_device_error(
    error: Exception,
    operation: Optional[str] = None,
    device_id: Optional[str] = None,
    retry_count: int = 0,
    max_attempts: int = 3,
    code: Optional[str] = None
) -> DeviceError:
    """Wrap any exception in a classified DeviceError."""
    if isinstance(error, DeviceError):
        error.device_id = error.device_id or device_id
        error.operation = error.operation or operation
        error.retry_count = retry_count
        return error

    category = categorize_error(error, operation)
    message = str(error) or error.__class__.__name__
    return DeviceError(
        message,
        code=code or category,
        category=category,
        severity=determine_severity(category, retry_count, max_attempts),
        device_id=device_id,
        operation=operation,
        retry_count=retry_count,
        original_exception=error
    )


class DeviceErrorHandler:
    """Logs device errors at a level matching their severity and keeps the recent ones."""

    def __init__(self, max_log_entries: int = 200):
        self._error_log: List[Dict[str, Any]] = []
        self._max_log_entries = max_log_entries

    def log_error(
        self,
        error: Union[DeviceError, Exception],
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        if isinstance(error, DeviceError):
            error_dict = error.to_dict()
        else:
            error_dict = {
                'message': str(error),
                'category': DeviceErrorCategory.UNKNOWN,
                'severity': DeviceErrorSeverity.MEDIUM,
                'timestamp': datetime.now().isoformat(),
                'traceback': traceback.format_exc()
            }

        if context:
            error_dict.update(context)

        severity = error_dict.get('severity', DeviceErrorSeverity.MEDIUM)
        log_message = (
            f"Device Error [{error_dict.get('category')}] {severity}: {error_dict['message']} "
            f"(Device: {error_dict.get('device_id') or 'unknown'}, "
            f"Operation: {error_dict.get('operation') or 'unknown'})"
        )

        if severity == DeviceErrorSeverity.CRITICAL:
            device_logger.critical(log_message)
        elif severity == DeviceErrorSeverity.HIGH:
            device_logger.error(log_message)
        elif severity == DeviceErrorSeverity.MEDIUM:
            device_logger.warning(log_message)
        else:
            device_logger.info(log_message)

        self._error_log.append(error_dict)
        if len(self._error_log) > self._max_log_entries:
            self._error_log.pop(0)

    def get_recent_errors(self, limit: int = 50, category_filter: Optional[str] = None) -> List[Dict[str, Any]]:
        errors = self._error_log
        if category_filter:
            errors = [e for e in errors if e.get('category') == category_filter]
        return errors[-limit:]

    def clear(self) -> None:
        self._error_log.clear()


class RetryConfig:
    """Configuration for retry attempts."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int) -> float:
        """Backoff before retrying after ``attempt`` (0-based) failed."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay += random.random() * 0.1 * delay
        return delay


async def retry_on_error(
    func: Callable,
    retry_config: RetryConfig,
    operation: str,
    device_id: Optional[str] = None,
    timeout: Optional[float] = None,
    error_handler: Optional[DeviceErrorHandler] = None
) -> Any:
    """
    Await ``func()`` with a per-attempt timeout, retrying retryable failures.

    Raises the classified :class:`DeviceError` of the last attempt once the
    attempts are used up, or immediately for non-retryable categories.
    """
    last_error: Optional[DeviceError] = None

    for attempt in range(retry_config.max_attempts):
        try:
            if timeout is not None:
                return await asyncio.wait_for(func(), timeout=timeout)
            return await func()

        except asyncio.TimeoutError as e:
            last_error = DeviceTimeoutError(
                f"{operation} timed out after {timeout}s",
                device_id=device_id,
                operation=operation,
                retry_count=attempt,
                original_exception=e
            )
        except Exception as e:
            last_error = to_device_error(
                e, operation, device_id, retry_count=attempt, max_attempts=retry_config.max_attempts
            )

        if not last_error.retryable or attempt == retry_config.max_attempts - 1:
            break

        delay = retry_config.calculate_delay(attempt)
        device_logger.info(
            f"Retrying {operation} on {device_id or 'device'} after error "
            f"(attempt {attempt + 1}/{retry_config.max_attempts}): {last_error.message}"
        )
        await asyncio.sleep(delay)

    last_error.severity = determine_severity(
        last_error.category, last_error.retry_count + 1, retry_config.max_attempts
    )
    if error_handler:
        error_handler.log_error(last_error)
    raise last_error
