"""Refund helper used by billable routes: try once, otherwise hand off to the sweeper."""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Iterable, Optional

from services.billing_errors import RefundDeliveryError
from services.refund_failures import FailureInput

logger = logging.getLogger(__name__)

REFUND_KEY_PREFIX = "refund_"
REFUND_KEY_HASH_LENGTH = 48


def build_refund_key(parts: Iterable[Any]) -> str:
    """Deterministic refund key for one billable operation.

    The same parts always produce the same key, so a retried request refunds
    at most once.
    """
    normalized = "|".join("" if part is None else str(part) for part in parts)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"{REFUND_KEY_PREFIX}{digest[:REFUND_KEY_HASH_LENGTH]}"


async def refund_with_guard(
    ledger,
    failure_store,
    *,
    user_id: str,
    amount: int,
    refund_key: str,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    metrics=None,
) -> bool:
    """Refund immediately when possible. Returns True only if the credit landed now."""
    failure_reason: Optional[str] = None
    try:
        refunded = await ledger.refund(user_id, amount, refund_key=refund_key, reason=reason)
        if refunded:
            return True
        failure_reason = "refund returned false"
    except Exception as exc:
        failure_reason = str(exc) or exc.__class__.__name__
        logger.warning("Immediate refund %s failed for user=%s: %s", refund_key, user_id, failure_reason)

    try:
        await failure_store.upsert_failure(
            FailureInput(
                refund_key=refund_key,
                user_id=user_id,
                amount=amount,
                reason=reason,
                last_error=failure_reason,
                metadata=metadata or {},
            )
        )
    except Exception as exc:
        logger.critical(
            "Refund %s for user=%s amount=%s could not be applied or recorded: %s",
            refund_key,
            user_id,
            amount,
            exc,
            exc_info=True,
        )
        if metrics is not None:
            metrics.record_alert(
                "credit_refund_unrecorded",
                {"refund_key": refund_key, "user_id": user_id, "amount": amount, "error": str(exc)},
            )
        raise RefundDeliveryError(refund_key, user_id, amount, cause=str(exc)) from exc

    return False
