"""Adaptive-backoff periodic worker shared by the refund sweeper and reconciliation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdaptiveBackoff:
    """Reset-on-success, multiply-on-failure interval capped at `max_interval`."""

    def __init__(self, base_interval: float, max_interval: float, factor: float):
        self.base_interval = max(float(base_interval), 0.001)
        self.max_interval = max(float(max_interval), self.base_interval)
        self.factor = float(factor) if float(factor) > 1 else 2.0
        self.current = self.base_interval

    def record_success(self) -> float:
        self.current = self.base_interval
        return self.current

    def record_failure(self) -> float:
        self.current = min(self.current * self.factor, self.max_interval)
        return self.current


@dataclass
class WorkerStatus:
    running: bool
    last_run_at: Optional[datetime]
    last_successful_run_at: Optional[datetime]
    consecutive_failures: int
    current_interval_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for field_name in ("last_run_at", "last_successful_run_at"):
            value = payload[field_name]
            payload[field_name] = value.isoformat() if value else None
        return payload


class PeriodicWorker:
    """
    Base class for background loops.

    Subclasses implement `run_once()`. The loop sleeps for the current backoff
    interval, then runs one `tick()`. A tick that raises is logged, alerted as
    `<name>_loop_crash` and only grows the interval; it never kills the loop.
    `stop()` halts future scheduling but lets an in-flight tick finish.
    """

    name = "periodic_worker"

    def __init__(
        self,
        *,
        base_interval_seconds: float,
        max_interval_seconds: float,
        backoff_factor: float,
        metrics=None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.backoff = AdaptiveBackoff(base_interval_seconds, max_interval_seconds, backoff_factor)
        self.metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._running = False
        self._in_tick = False
        self._task: Optional[asyncio.Task] = None
        self.last_run_at: Optional[datetime] = None
        self.last_successful_run_at: Optional[datetime] = None
        self.consecutive_failures = 0

    async def run_once(self) -> Any:
        raise NotImplementedError

    async def tick(self) -> float:
        """Run one guarded iteration and return the delay before the next one."""
        self._in_tick = True
        self.last_run_at = self._clock()
        try:
            await self.run_once()
        except Exception as exc:
            self.consecutive_failures += 1
            delay = self.backoff.record_failure()
            logger.exception(
                "%s loop crashed (consecutive_failures=%s, next run in %.0fs): %s",
                self.name,
                self.consecutive_failures,
                delay,
                exc,
            )
            if self.metrics is not None:
                self.metrics.record_worker_run(self.name, "crash")
                self.metrics.record_alert(
                    f"{self.name}_loop_crash",
                    {"error": str(exc), "consecutive_failures": self.consecutive_failures},
                )
            return delay
        finally:
            self._in_tick = False

        self.consecutive_failures = 0
        self.last_successful_run_at = self._clock()
        if self.metrics is not None:
            self.metrics.record_worker_run(self.name, "success")
        return self.backoff.record_success()

    def start(self) -> bool:
        if self._running:
            return False
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("%s started (interval=%.0fs)", self.name, self.backoff.current)
        return True

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None and not self._in_tick and self._task is not asyncio.current_task():
            self._task.cancel()
        logger.info("%s stopped", self.name)

    async def join(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while self._running:
            await self._sleep(self.backoff.current)
            if not self._running:
                break
            await self.tick()

    def get_status(self) -> WorkerStatus:
        return WorkerStatus(
            running=self._running,
            last_run_at=self.last_run_at,
            last_successful_run_at=self.last_successful_run_at,
            consecutive_failures=self.consecutive_failures,
            current_interval_seconds=self.backoff.current,
        )
