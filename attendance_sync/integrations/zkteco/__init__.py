from .client import DeviceClient, PyZKDeviceClient
from .error_handler import (
    DeviceError, DeviceErrorCategory, DeviceErrorSeverity, RetryConfig, categorize_error
)
from .gateway import (
    ConnectionState, DeviceOperationConfig, DeviceResiliencePolicy, DeviceResponse,
    DeviceServiceMetrics, ValidatedLogs, ZKTDeviceGateway
)

__all__ = [
    "DeviceClient",
    "PyZKDeviceClient",
    "DeviceError",
    "DeviceErrorCategory",
    "DeviceErrorSeverity",
    "RetryConfig",
    "categorize_error",
    "ConnectionState",
    "DeviceOperationConfig",
    "DeviceResiliencePolicy",
    "DeviceResponse",
    "DeviceServiceMetrics",
    "ValidatedLogs",
    "ZKTDeviceGateway",
]
