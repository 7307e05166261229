"""
Per-device circuit breakers.

A time clock that stops answering would otherwise cost every sync job a full
round of connect timeouts and retries. The breaker counts consecutive
failures for one device address and, past the threshold, rejects calls
immediately until the recovery window has elapsed.

States:
- CLOSED: calls go to the device
- OPEN: calls are rejected without touching the device
- HALF_OPEN: the next call is a trial; it decides between CLOSED and OPEN
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Type, Dict, List
from datetime import datetime, timedelta, timezone
from enum import Enum
from dataclasses import dataclass, field, asdict


logger = logging.getLogger(__name__)

STATE_HISTORY_LIMIT = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout: float = 30.0  # seconds spent OPEN before a trial call
    success_threshold: int = 1  # trial successes that close the breaker
    timeout: Optional[float] = None  # per-call limit; None leaves timing to the caller
    expected_exception: Type[Exception] = Exception


@dataclass
class CircuitBreakerMetrics:
    """Counters for one breaker since creation or the last reset."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeout_requests: int = 0
    open_state_requests: int = 0
    trip_count: int = 0
    state_changes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 1.0
        return self.successful_requests / self.total_requests

    @property
    def failure_rate(self) -> float:
        return 1.0 - self.success_rate

    def record_state_change(self, from_state: CircuitState, to_state: CircuitState, reason: str):
        self.state_changes.append({
            'timestamp': _utcnow().isoformat(),
            'from_state': from_state,
            'to_state': to_state,
            'reason': reason
        })
        del self.state_changes[:-STATE_HISTORY_LIMIT]

    def as_dict(self) -> Dict[str, Any]:
        summary = asdict(self)
        summary['success_rate'] = self.success_rate
        summary['failure_rate'] = self.failure_rate
        return summary


class CircuitBreakerError(Exception):
    """The breaker is OPEN; the device was not contacted."""
    pass


class CircuitBreakerTimeoutError(Exception):
    pass


class CircuitBreaker:
    """
    Failure memory for one device.

    The lock only guards the bookkeeping. The wrapped call runs outside it,
    so a slow device never queues up callers that are about to be rejected.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 1,
        timeout: Optional[float] = None,
        expected_exception: Type[Exception] = Exception,
        name: Optional[str] = None
    ):
        self.config = CircuitBreakerConfig(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            success_threshold=success_threshold,
            timeout=timeout,
            expected_exception=expected_exception
        )

        self.name = name or f"CircuitBreaker_{id(self)}"
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.next_attempt_time: Optional[datetime] = None
        self.metrics = CircuitBreakerMetrics()
        self._lock = asyncio.Lock()

        logger.debug(f"Circuit breaker '{self.name}' ready (threshold={failure_threshold})")

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """
        Await ``func(*args, **kwargs)`` unless the breaker is OPEN.

        Raises CircuitBreakerError without calling ``func`` while OPEN and
        CircuitBreakerTimeoutError when the configured per-call timeout
        expires. Exceptions from ``func`` itself are re-raised after being
        counted.
        """
        async with self._lock:
            self.metrics.total_requests += 1
            if self.state == CircuitState.OPEN and self._recovery_window_elapsed():
                self._set_state(CircuitState.HALF_OPEN, "Recovery window elapsed, allowing a trial call")

            if self.state == CircuitState.OPEN:
                self.metrics.open_state_requests += 1
                logger.warning(f"Circuit breaker '{self.name}' is open, rejecting call")
                raise CircuitBreakerError(f"Circuit breaker '{self.name}' is open")

        try:
            if self.config.timeout is None:
                result = await func(*args, **kwargs)
            else:
                result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            async with self._lock:
                self.metrics.timeout_requests += 1
                self._record_failure(f"timed out after {self.config.timeout}s")
            raise CircuitBreakerTimeoutError(f"Request timed out after {self.config.timeout}s")
        except self.config.expected_exception as e:
            async with self._lock:
                self._record_failure(str(e))
            raise

        async with self._lock:
            self._record_success()
        return result

    def _recovery_window_elapsed(self) -> bool:
        return self.next_attempt_time is not None and _utcnow() >= self.next_attempt_time

    def _record_success(self):
        self.metrics.successful_requests += 1
        if self.state != CircuitState.HALF_OPEN:
            self.failure_count = 0
            return

        self.success_count += 1
        if self.success_count >= self.config.success_threshold:
            self._set_state(CircuitState.CLOSED, f"{self.success_count} trial call(s) succeeded")

    def _record_failure(self, reason: str):
        self.metrics.failed_requests += 1
        self.failure_count += 1
        self.last_failure_time = _utcnow()
        logger.error(f"Circuit breaker '{self.name}' recorded failure {self.failure_count}: {reason}")

        if self.state == CircuitState.HALF_OPEN:
            self._trip(f"Trial call failed: {reason}")
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._trip(f"{self.failure_count} consecutive failures (threshold {self.config.failure_threshold})")

    def _trip(self, reason: str):
        self.metrics.trip_count += 1
        self._set_state(CircuitState.OPEN, reason)
        logger.warning(f"Circuit breaker '{self.name}' tripped; next trial at {self.next_attempt_time}")

    def _set_state(self, new_state: CircuitState, reason: str):
        old_state = self.state
        self.state = new_state
        self.success_count = 0
        if new_state == CircuitState.OPEN:
            self.next_attempt_time = _utcnow() + timedelta(seconds=self.config.recovery_timeout)
        elif new_state == CircuitState.CLOSED:
            self.failure_count = 0
            self.next_attempt_time = None

        self.metrics.record_state_change(old_state, new_state, reason)
        logger.info(f"Circuit breaker '{self.name}': {old_state.value} -> {new_state.value} ({reason})")

    async def force_open(self, reason: str = "Manual override"):
        """Take the device out of rotation until the recovery window passes."""
        async with self._lock:
            self._set_state(CircuitState.OPEN, f"Manual: {reason}")

    async def force_closed(self, reason: str = "Manual override"):
        async with self._lock:
            self._set_state(CircuitState.CLOSED, f"Manual: {reason}")

    def reset(self):
        """Forget all failures and counters."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self.next_attempt_time = None
        self.metrics = CircuitBreakerMetrics()
        logger.info(f"Circuit breaker '{self.name}' reset")

    def get_status(self) -> Dict[str, Any]:
        config = asdict(self.config)
        config.pop('expected_exception')
        return {
            'name': self.name,
            'state': self.state,
            'failure_count': self.failure_count,
            'success_count': self.success_count,
            'last_failure_time': self.last_failure_time.isoformat() if self.last_failure_time else None,
            'next_attempt_time': self.next_attempt_time.isoformat() if self.next_attempt_time else None,
            'config': config,
            'metrics': self.metrics.as_dict(),
        }


class CircuitBreakerManager:
    """
    Breakers keyed by device address.

    Gateways live for one job and one device, but a device's failure history
    has to carry over to the next job, so the gateways borrow breakers from
    here.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 1
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str) -> CircuitBreaker:
        if name not in self.circuit_breakers:
            self.circuit_breakers[name] = CircuitBreaker(
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                success_threshold=self.success_threshold,
                name=name
            )
            logger.info(f"Registered circuit breaker for {name}")
        return self.circuit_breakers[name]

    def get_circuit_breaker(self, name: str) -> Optional[CircuitBreaker]:
        return self.circuit_breakers.get(name)

    def reset(self, name: str) -> bool:
        """Reset one device's breaker. Returns False for unknown devices."""
        circuit_breaker = self.circuit_breakers.get(name)
        if circuit_breaker is None:
            return False
        circuit_breaker.reset()
        return True

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self.circuit_breakers.items()}

    def get_health_summary(self) -> Dict[str, Any]:
        by_state: Dict[CircuitState, List[str]] = {state: [] for state in CircuitState}
        for name, breaker in self.circuit_breakers.items():
            by_state[breaker.state].append(name)

        total = len(self.circuit_breakers)
        closed = len(by_state[CircuitState.CLOSED])
        half_open = len(by_state[CircuitState.HALF_OPEN])
        return {
            'total_circuit_breakers': total,
            'closed': closed,
            'half_open': half_open,
            'open': len(by_state[CircuitState.OPEN]),
            'open_circuit_breakers': by_state[CircuitState.OPEN],
            'health_score': (closed + half_open * 0.5) / max(total, 1),
        }
