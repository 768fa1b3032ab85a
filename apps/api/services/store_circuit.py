"""Retry-and-circuit wrapper around datastore operations.

Every ledger and refund-store call goes through `StoreCircuitExecutor`.
Transient failures are retried with exponential backoff and jitter; repeated
failed executions open the circuit, which short-circuits further calls and
lets the write gate answer 503 instead of piling load onto a sick database.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from services.billing_errors import StoreCircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"

_TRANSIENT_MESSAGE_HINTS = (
    "timed out",
    "timeout",
    "database is locked",
    "connection reset",
    "connection refused",
    "could not connect",
    "server closed the connection",
    "too many connections",
    "deadlock detected",
    "could not serialize access",
)


def is_transient_store_error(error: BaseException) -> bool:
    """True for failures worth retrying: connectivity, lock contention, timeouts."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, IntegrityError):
        return False
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    message = str(error).lower()
    return isinstance(error, SQLAlchemyError) and any(hint in message for hint in _TRANSIENT_MESSAGE_HINTS)


def _counts_as_store_failure(error: BaseException) -> bool:
    if isinstance(error, StoreCircuitOpenError):
        return False
    if isinstance(error, IntegrityError):
        return False
    return is_transient_store_error(error) or isinstance(error, (SQLAlchemyError, OSError))


class StoreCircuitExecutor:
    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 15.0,
        max_retries: int = 2,
        retry_base_delay_seconds: float = 0.12,
        retry_jitter_seconds: float = 0.08,
        metrics: Optional[Any] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = max(int(failure_threshold), 1)
        self.reset_timeout_seconds = max(float(reset_timeout_seconds), 0.0)
        self.max_retries = max(int(max_retries), 0)
        self.retry_base_delay_seconds = max(float(retry_base_delay_seconds), 0.0)
        self.retry_jitter_seconds = max(float(retry_jitter_seconds), 0.0)
        self.metrics = metrics
        self._clock = clock
        self._state = STATE_CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._half_open_trial_in_flight = False
        self._stats = {"fires": 0, "successes": 0, "failures": 0, "rejects": 0}
        if self.metrics is not None:
            self.metrics.update_circuit_state(STATE_CLOSED)

    async def execute_read(
        self, operation_name: str, operation: Callable[[], Awaitable[T]], *, retries: Optional[int] = None
    ) -> T:
        return await self.execute(operation_name, operation, kind="read", retries=retries)

    async def execute_write(
        self, operation_name: str, operation: Callable[[], Awaitable[T]], *, retries: Optional[int] = None
    ) -> T:
        return await self.execute(operation_name, operation, kind="write", retries=retries)

    async def execute(
        self,
        operation_name: str,
        operation: Callable[[], Awaitable[T]],
        *,
        kind: str = "read",
        retries: Optional[int] = None,
    ) -> T:
        attempts = (self.max_retries if retries is None else max(int(retries), 0)) + 1
        self._admit(operation_name)
        self._stats["fires"] += 1
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=self.retry_base_delay_seconds) + wait_random(0, self.retry_jitter_seconds),
                retry=retry_if_exception(is_transient_store_error),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    result = await operation()
        except BaseException as exc:
            if _counts_as_store_failure(exc):
                self._record_failure()
                logger.warning(
                    "Store operation failed: operation=%s kind=%s state=%s error=%s",
                    operation_name,
                    kind,
                    self._state,
                    exc,
                )
            else:
                self._release_trial()
            raise
        self._record_success()
        return result

    def _admit(self, operation_name: str) -> None:
        if self._state == STATE_OPEN:
            if self._opened_at is not None and self._clock() - self._opened_at >= self.reset_timeout_seconds:
                self._transition(STATE_HALF_OPEN)
            else:
                self._stats["rejects"] += 1
                raise StoreCircuitOpenError(operation_name, self.get_retry_after_seconds())
        if self._state == STATE_HALF_OPEN:
            if self._half_open_trial_in_flight:
                self._stats["rejects"] += 1
                raise StoreCircuitOpenError(operation_name, self.get_retry_after_seconds())
            self._half_open_trial_in_flight = True

    def _release_trial(self) -> None:
        self._half_open_trial_in_flight = False

    def _record_success(self) -> None:
        self._stats["successes"] += 1
        self._consecutive_failures = 0
        self._release_trial()
        if self._state != STATE_CLOSED:
            self._transition(STATE_CLOSED)

    def _record_failure(self) -> None:
        self._stats["failures"] += 1
        self._consecutive_failures += 1
        self._release_trial()
        if self._state == STATE_HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            self._opened_at = self._clock()
            if self._state != STATE_OPEN:
                self._transition(STATE_OPEN)

    def _transition(self, state: str) -> None:
        previous = self._state
        self._state = state
        if state == STATE_OPEN:
            logger.error("Store circuit opened after %s consecutive failures", self._consecutive_failures)
        elif state == STATE_HALF_OPEN:
            logger.warning("Store circuit half-open; admitting a trial operation")
        elif previous != STATE_CLOSED:
            logger.info("Store circuit closed")
        if self.metrics is not None:
            self.metrics.update_circuit_state(state)

    def get_state(self) -> str:
        if (
            self._state == STATE_OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout_seconds
        ):
            return STATE_HALF_OPEN
        return self._state

    def is_open(self) -> bool:
        return self.get_state() == STATE_OPEN

    def is_write_allowed(self) -> bool:
        return not self.is_open()

    def get_retry_after_seconds(self) -> int:
        if self._opened_at is None:
            return max(1, math.ceil(self.reset_timeout_seconds))
        remaining = self.reset_timeout_seconds - (self._clock() - self._opened_at)
        return max(1, math.ceil(remaining))

    def get_readiness_snapshot(self) -> Dict[str, Any]:
        state = self.get_state()
        fires = self._stats["fires"]
        failure_rate = (self._stats["failures"] / fires) if fires else 0.0
        return {
            "state": state,
            "open": state == STATE_OPEN,
            "consecutive_failures": self._consecutive_failures,
            "failure_rate": round(failure_rate, 4),
            "stats": dict(self._stats),
        }
