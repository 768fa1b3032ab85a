"""Periodic driver for credit reconciliation: incremental every tick, full pass daily."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from services.reconciliation import ReconciliationRunResult
from services.scheduling import PeriodicWorker

logger = logging.getLogger(__name__)


class CreditReconciliationWorker(PeriodicWorker):
    name = "credit_reconciliation_worker"

    def __init__(
        self,
        reconciliation_service,
        *,
        incremental_interval_seconds: float = 3600,
        full_interval_hours: float = 24,
        max_interval_seconds: float = 21600,
        backoff_factor: float = 2.0,
        metrics=None,
        **worker_kwargs,
    ):
        super().__init__(
            base_interval_seconds=incremental_interval_seconds,
            max_interval_seconds=max_interval_seconds,
            backoff_factor=backoff_factor,
            metrics=metrics,
            **worker_kwargs,
        )
        self.reconciliation_service = reconciliation_service
        self.full_interval = timedelta(hours=max(float(full_interval_hours), 0.001))
        self.next_full_due: datetime = self._clock() + self.full_interval
        self.last_results: Dict[str, Optional[ReconciliationRunResult]] = {"incremental": None, "full": None}

    async def run_once(self) -> Dict[str, Optional[ReconciliationRunResult]]:
        incremental = await self.reconciliation_service.run_incremental_pass()
        self.last_results["incremental"] = incremental
        logger.info(
            "Incremental reconciliation: scanned=%s users=%s positive=%s negative=%s checkpoint_updated=%s",
            incremental.scanned_items,
            incremental.processed_users,
            incremental.positive_corrections,
            incremental.negative_corrections,
            incremental.checkpoint_updated,
        )

        full = None
        now = self._clock()
        if now >= self.next_full_due:
            full = await self.reconciliation_service.run_full_pass()
            self.next_full_due = self._clock() + self.full_interval
            self.last_results["full"] = full
            logger.info(
                "Full reconciliation: scanned=%s users=%s positive=%s negative=%s next_due=%s",
                full.scanned_items,
                full.processed_users,
                full.positive_corrections,
                full.negative_corrections,
                self.next_full_due.isoformat(),
            )

        return {"incremental": incremental, "full": full}
