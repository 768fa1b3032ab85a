"""Reject mutating requests while the datastore circuit is open."""

from __future__ import annotations

import logging
from typing import Iterable

from starlette.responses import JSONResponse

from services.billing_errors import BillingError

logger = logging.getLogger(__name__)

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class WriteGateMiddleware:
    def __init__(self, app, store_circuit, exempt_prefixes: Iterable[str] = ("/health", "/metrics")):
        self.app = app
        self.store_circuit = store_circuit
        self.exempt_prefixes = tuple(exempt_prefixes)

    async def __call__(self, scope, receive, send) -> None:
        if (
            scope.get("type") != "http"
            or scope.get("method", "").upper() not in MUTATING_METHODS
            or scope.get("path", "").startswith(self.exempt_prefixes)
            or self.store_circuit.is_write_allowed()
        ):
            await self.app(scope, receive, send)
            return

        retry_after = self.store_circuit.get_retry_after_seconds()
        logger.warning("Write gate rejected %s %s; store circuit open", scope.get("method"), scope.get("path"))
        error = BillingError(
            "Writes are temporarily unavailable; please retry shortly",
            code="WRITES_TEMPORARILY_UNAVAILABLE",
            details={"retry_after_seconds": retry_after},
        )
        response = JSONResponse(status_code=503, content=error.to_dict(), headers={"Retry-After": str(retry_after)})
        await response(scope, receive, send)
