"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.billing_errors import LedgerUnavailableError
from services.container import BillingServices
from services.credits import ENTRY_PURCHASE

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1, le=10000)
    billing_reference: Optional[str] = None


def get_billing_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Billing services are not initialised.")
    return services


def ledger_unavailable(exc: LedgerUnavailableError) -> HTTPException:
    return HTTPException(status_code=503, detail=exc.to_dict(), headers={"Retry-After": "1"})


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    billing: BillingServices = Depends(get_billing_services),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        summary = await billing.ledger.get_summary(scoped_user_id, limit=limit)
    except LedgerUnavailableError as exc:
        raise ledger_unavailable(exc) from exc
    return {"user_id": scoped_user_id, **summary}


@router.post("/topup")
async def manual_topup(
    payload: CreditTopUpRequest,
    request: Request,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    billing: BillingServices = Depends(get_billing_services),
):
    scoped_user_id = ensure_user_scope(auth.user_id, payload.user_id)
    app_settings = request.app.state.settings

    if not app_settings.MANUAL_TOPUP_ENABLED:
        raise HTTPException(status_code=403, detail="Manual top-ups are disabled.")
    if app_settings.BILLING_ENABLED and not app_settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Billing enabled but Stripe is not configured.")

    billing_reference = (payload.billing_reference or "").strip() or None
    idempotency_key = f"purchase:{scoped_user_id}:{billing_reference}" if billing_reference else None

    try:
        balance_after = await billing.ledger.add_credits(
            scoped_user_id,
            payload.credits,
            entry_type=ENTRY_PURCHASE,
            reason=f"Manual top-up ({billing_reference or 'no reference'})",
            idempotency_key=idempotency_key,
        )
    except LedgerUnavailableError as exc:
        raise ledger_unavailable(exc) from exc

    logger.info("Top-up of %s credits for user=%s ref=%s", payload.credits, scoped_user_id, billing_reference)
    return {
        "ok": True,
        "credits_added": payload.credits,
        "balance_after": balance_after,
    }
