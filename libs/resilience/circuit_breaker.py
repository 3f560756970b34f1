"""
Circuit breaker for the relational store.

States:
- CLOSED: calls pass through; connection-class failures are counted.
- OPEN: calls are rejected immediately with ``CircuitOpenError``.
- HALF_OPEN: one probe at a time is let through; consecutive successes
  close the circuit, a single failure re-opens it.

Only infrastructure failures (refused/reset connections, timeouts,
server-side termination) move the breaker. Application errors such as a
constraint violation propagate to the caller untouched.
"""

from __future__ import annotations

import asyncio
import socket
import sqlite3
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from pydantic import BaseModel

from libs.common.errors import CircuitOpenError, UpstreamTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Message fragments that identify a lost or unreachable database
CONNECTION_ERROR_MARKERS = (
    "shutdown",
    "db_termination",
    "terminating connection",
    "connection terminated",
    "server closed the connection",
    "connection reset",
    "connection refused",
    "econnrefused",
    "econnreset",
    "etimedout",
    "enotfound",
    "unable to open database file",
    "disk i/o error",
    "database is locked",
)

# Postgres-style error codes for server-side termination
CONNECTION_ERROR_CODES = {"XX000", "57P01", "ECONNRESET", "ECONNREFUSED"}

# Misconfiguration must not look like an outage
CONFIGURATION_ERROR_MARKERS = (
    "tenant or user not found",
    "invalid oauth token",
    "authentication failed",
)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerSnapshot(BaseModel):
    """Point-in-time view of the breaker, for health checks and logs."""

    name: str
    state: CircuitState
    failure_count: int
    last_failure_time: Optional[float] = None
    half_open_success_count: int
    is_open: bool


def is_connection_error(error: BaseException) -> bool:
    """Return True when ``error`` signals an unreachable or lost database."""
    if isinstance(error, CircuitOpenError):
        return False

    message = str(error).lower()
    if any(marker in message for marker in CONFIGURATION_ERROR_MARKERS):
        return False

    if isinstance(error, (ConnectionError, socket.timeout, asyncio.TimeoutError, UpstreamTimeoutError)):
        return True

    code = getattr(error, "code", None) or getattr(error, "pgcode", None)
    if isinstance(code, str) and code.upper() in CONNECTION_ERROR_CODES:
        return True

    if isinstance(error, (sqlite3.IntegrityError, sqlite3.ProgrammingError)):
        return False

    return any(marker in message for marker in CONNECTION_ERROR_MARKERS)


class CircuitBreaker:
    """
    Guards calls to a flaky dependency.

    State transitions happen under a single lock, so concurrent callers can
    never both claim the half-open probe.

    Usage:
        breaker = CircuitBreaker(name="relational-store")
        rows = await breaker.call(lambda: store.fetch(...), "fetch rows")
    """

    def __init__(
        self,
        name: str = "relational-store",
        failure_threshold: int = 5,
        open_timeout_seconds: float = 30.0,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
        classifier: Callable[[BaseException], bool] = is_connection_error,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Name used in log events
            failure_threshold: Consecutive connection failures before opening
            open_timeout_seconds: Time spent OPEN before a probe is allowed
            half_open_successes: Consecutive probe successes needed to close
            clock: Monotonic time source, injectable for tests
            classifier: Decides which errors count as connection failures
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.open_timeout_seconds = open_timeout_seconds
        self.half_open_successes = half_open_successes
        self._clock = clock
        self._classifier = classifier
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_success_count = 0
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitBreakerSnapshot:
        with self._lock:
            return CircuitBreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                half_open_success_count=self._half_open_success_count,
                is_open=self._state == CircuitState.OPEN,
            )

    def _acquire_permission(self, operation: str) -> None:
        """Admit or reject one call. Must be called before the operation."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            now = self._clock()
            if self._state == CircuitState.OPEN:
                elapsed = now - (self._last_failure_time or now)
                if elapsed < self.open_timeout_seconds:
                    raise CircuitOpenError(operation, self.open_timeout_seconds - elapsed)
                self._state = CircuitState.HALF_OPEN
                self._half_open_success_count = 0
                self._probe_in_flight = True
                logger.info("Circuit breaker: OPEN -> HALF_OPEN", breaker=self.name, operation=operation)
                return

            # HALF_OPEN: a single probe at a time
            if self._probe_in_flight:
                raise CircuitOpenError(operation)
            self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._half_open_success_count += 1
                if self._half_open_success_count >= self.half_open_successes:
                    self._reset_locked()
                    logger.info("Circuit breaker: HALF_OPEN -> CLOSED", breaker=self.name)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self, error: BaseException) -> None:
        """Count ``error`` if it is connection-class; ignore it otherwise."""
        counted = self._classifier(error)
        with self._lock:
            if not counted:
                if self._state == CircuitState.HALF_OPEN:
                    self._probe_in_flight = False
                return

            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._half_open_success_count = 0
                self._probe_in_flight = False
                logger.warning("Circuit breaker: HALF_OPEN -> OPEN", breaker=self.name, error=str(error)[:100])
                return

            logger.warning(
                "Circuit breaker: failure recorded",
                breaker=self.name,
                failure_count=self._failure_count,
                error=str(error)[:100],
            )
            if self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                logger.error(
                    "Circuit breaker: CLOSED -> OPEN",
                    breaker=self.name,
                    failure_count=self._failure_count,
                    threshold=self.failure_threshold,
                )

    def reset(self) -> None:
        """Administrative reset back to CLOSED."""
        with self._lock:
            previous = self._state
            self._reset_locked()
        logger.info("Circuit breaker: manual reset", breaker=self.name, previous_state=previous.value)

    def _reset_locked(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = None
        self._half_open_success_count = 0
        self._probe_in_flight = False

    async def call(self, operation: Callable[[], Awaitable[T]], operation_name: str = "database operation") -> T:
        """
        Run ``operation`` under the breaker.

        Raises:
            CircuitOpenError: if the breaker rejects the call.
            Exception: whatever ``operation`` raised, after it was recorded.
        """
        try:
            self._acquire_permission(operation_name)
        except CircuitOpenError:
            logger.error("Circuit breaker: call rejected", breaker=self.name, operation=operation_name)
            raise

        try:
            result = await operation()
        except asyncio.CancelledError:
            self._release_probe()
            raise
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False
