"""Background retry of refunds that could not be applied synchronously."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from services.scheduling import PeriodicWorker

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    claimed: int = 0
    resolved: int = 0
    retried: int = 0
    escalated: int = 0
    released_stale: int = 0


class CreditRefundSweeper(PeriodicWorker):
    name = "credit_refund_sweeper"

    def __init__(
        self,
        ledger,
        failure_store,
        *,
        interval_seconds: float = 60,
        max_interval_seconds: float = 900,
        backoff_factor: float = 2.0,
        max_per_run: int = 25,
        max_attempts: int = 20,
        scan_limit: int = 50,
        stale_processing_seconds: int = 600,
        metrics=None,
        **worker_kwargs,
    ):
        super().__init__(
            base_interval_seconds=interval_seconds,
            max_interval_seconds=max_interval_seconds,
            backoff_factor=backoff_factor,
            metrics=metrics,
            **worker_kwargs,
        )
        self.ledger = ledger
        self.failure_store = failure_store
        self.max_per_run = max(int(max_per_run), 1)
        self.max_attempts = max(int(max_attempts), 1)
        self.scan_limit = max(int(scan_limit), 1)
        self.stale_processing_seconds = max(int(stale_processing_seconds), 1)

    async def run_once(self) -> SweepResult:
        result = SweepResult()
        result.released_stale = await self.failure_store.release_stale_processing(self.stale_processing_seconds)

        attempted = set()
        while result.claimed < self.max_per_run:
            record = await self.failure_store.claim_next_pending(self.max_attempts, self.scan_limit, exclude=attempted)
            if record is None:
                break
            result.claimed += 1
            attempted.add(record.refund_key)

            error_message = None
            try:
                refunded = await self.ledger.refund(
                    record.user_id,
                    record.amount,
                    refund_key=record.refund_key,
                    reason=record.reason,
                )
                if not refunded:
                    error_message = "refund returned false"
            except Exception as exc:
                error_message = str(exc) or exc.__class__.__name__

            if error_message is None:
                await self.failure_store.mark_resolved(record.refund_key)
                result.resolved += 1
                logger.info("Resolved refund %s for user=%s", record.refund_key, record.user_id)
                continue

            if record.attempts + 1 >= self.max_attempts:
                await self.failure_store.mark_escalated(record.refund_key, error_message)
                result.escalated += 1
                logger.error(
                    "Escalating refund %s for user=%s amount=%s after %s attempts: %s",
                    record.refund_key,
                    record.user_id,
                    record.amount,
                    record.attempts + 1,
                    error_message,
                )
                if self.metrics is not None:
                    self.metrics.record_alert(
                        "credit_refund_escalated",
                        {
                            "refund_key": record.refund_key,
                            "user_id": record.user_id,
                            "amount": record.amount,
                            "attempts": record.attempts + 1,
                            "last_error": error_message,
                        },
                    )
            else:
                await self.failure_store.release_for_retry(record.refund_key, error_message)
                result.retried += 1
                logger.warning(
                    "Refund %s retry %s/%s failed: %s",
                    record.refund_key,
                    record.attempts + 1,
                    self.max_attempts,
                    error_message,
                )

        if result.claimed or result.released_stale:
            logger.info(
                "Refund sweep complete: claimed=%s resolved=%s retried=%s escalated=%s released_stale=%s",
                result.claimed,
                result.resolved,
                result.retried,
                result.escalated,
                result.released_stale,
            )
        return result
