"""Prometheus-backed metrics collaborator for billing alerts and worker health."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

logger = logging.getLogger(__name__)

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsService:
    """Owns its own registry so several app instances (and tests) never collide."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.alerts_total = Counter(
            "alerts_total",
            "Total number of alerts triggered",
            ["alert"],
            registry=self.registry,
        )
        self.worker_runs_total = Counter(
            "worker_runs_total",
            "Background worker iterations by outcome",
            ["worker", "outcome"],
            registry=self.registry,
        )
        self.coalesced_requests_total = Counter(
            "coalesced_requests_total",
            "Requests seen by the coalescing middleware",
            ["scope", "kind"],
            registry=self.registry,
        )
        self.store_circuit_state = Gauge(
            "store_circuit_state",
            "Datastore circuit state (0=closed, 1=half_open, 2=open)",
            registry=self.registry,
        )
        self.alert_counts: Dict[str, int] = {}

    def record_alert(self, alert_name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.alerts_total.labels(alert=alert_name).inc()
        self.alert_counts[alert_name] = self.alert_counts.get(alert_name, 0) + 1
        logger.warning("Alert triggered: %s %s", alert_name, metadata or {})

    def record_worker_run(self, worker: str, outcome: str) -> None:
        self.worker_runs_total.labels(worker=worker, outcome=outcome).inc()

    def record_coalescing(self, scope: str, kind: str) -> None:
        self.coalesced_requests_total.labels(scope=scope, kind=kind).inc()

    def update_circuit_state(self, state: str) -> None:
        self.store_circuit_state.set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def render(self) -> bytes:
        return generate_latest(self.registry)
