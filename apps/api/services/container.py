"""Explicit construction of the billing services, shared by the API and worker processes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from config import Settings
from services.credits import CreditLedgerService
from services.generation import BaseGenerationProvider, get_generation_provider
from services.metrics import MetricsService
from services.reconciliation import CreditReconciliationService
from services.reconciliation_worker import CreditReconciliationWorker
from services.refund_failures import RefundFailureStore
from services.refund_sweeper import CreditRefundSweeper
from services.store_circuit import StoreCircuitExecutor


@dataclass
class BillingServices:
    ledger: CreditLedgerService
    failure_store: RefundFailureStore
    reconciliation: CreditReconciliationService
    refund_sweeper: CreditRefundSweeper
    reconciliation_worker: CreditReconciliationWorker
    store_circuit: StoreCircuitExecutor
    metrics: MetricsService
    generation_provider: BaseGenerationProvider

    def start_workers(self, settings: Settings) -> list:
        started = []
        if not settings.CREDIT_REFUND_SWEEPER_DISABLED and self.refund_sweeper.start():
            started.append(self.refund_sweeper.name)
        if not settings.CREDIT_RECONCILIATION_DISABLED and self.reconciliation_worker.start():
            started.append(self.reconciliation_worker.name)
        return started

    async def stop_workers(self) -> None:
        for worker in (self.refund_sweeper, self.reconciliation_worker):
            worker.stop()
        for worker in (self.refund_sweeper, self.reconciliation_worker):
            await worker.join()


def build_store_circuit(settings: Settings, metrics: Optional[MetricsService] = None) -> StoreCircuitExecutor:
    return StoreCircuitExecutor(
        failure_threshold=settings.STORE_CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout_seconds=settings.STORE_CIRCUIT_RESET_SECONDS,
        max_retries=settings.STORE_CIRCUIT_MAX_RETRIES,
        metrics=metrics,
    )


def build_billing_services(
    settings: Settings,
    session_maker,
    *,
    metrics: Optional[MetricsService] = None,
    store_circuit: Optional[StoreCircuitExecutor] = None,
    generation_provider: Optional[BaseGenerationProvider] = None,
) -> BillingServices:
    metrics = metrics or MetricsService()
    store_circuit = store_circuit or build_store_circuit(settings, metrics)

    ledger = CreditLedgerService(
        session_maker,
        store_circuit,
        starter_credits=settings.FREE_TIER_STARTER_CREDITS,
    )
    failure_store = RefundFailureStore(session_maker, store_circuit, metrics=metrics)
    reconciliation = CreditReconciliationService(
        session_maker,
        ledger,
        store_circuit,
        incremental_scan_limit=settings.CREDIT_RECONCILIATION_INCREMENTAL_SCAN_LIMIT,
        full_pass_page_size=settings.CREDIT_RECONCILIATION_FULL_PAGE_SIZE,
        metrics=metrics,
    )
    refund_sweeper = CreditRefundSweeper(
        ledger,
        failure_store,
        interval_seconds=settings.CREDIT_REFUND_SWEEP_INTERVAL_SECONDS,
        max_interval_seconds=settings.CREDIT_REFUND_SWEEP_MAX_INTERVAL_SECONDS,
        backoff_factor=settings.CREDIT_REFUND_SWEEP_BACKOFF_FACTOR,
        max_per_run=settings.CREDIT_REFUND_SWEEP_MAX,
        max_attempts=settings.CREDIT_REFUND_MAX_ATTEMPTS,
        scan_limit=settings.CREDIT_REFUND_SCAN_LIMIT,
        stale_processing_seconds=settings.CREDIT_REFUND_STALE_PROCESSING_SECONDS,
        metrics=metrics,
    )
    reconciliation_worker = CreditReconciliationWorker(
        reconciliation,
        incremental_interval_seconds=settings.CREDIT_RECONCILIATION_INCREMENTAL_INTERVAL_SECONDS,
        full_interval_hours=settings.CREDIT_RECONCILIATION_FULL_INTERVAL_HOURS,
        max_interval_seconds=settings.CREDIT_RECONCILIATION_MAX_INTERVAL_SECONDS,
        backoff_factor=settings.CREDIT_RECONCILIATION_BACKOFF_FACTOR,
        metrics=metrics,
    )
    return BillingServices(
        ledger=ledger,
        failure_store=failure_store,
        reconciliation=reconciliation,
        refund_sweeper=refund_sweeper,
        reconciliation_worker=reconciliation_worker,
        store_circuit=store_circuit,
        metrics=metrics,
        generation_provider=generation_provider or get_generation_provider(),
    )
