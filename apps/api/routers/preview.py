"""Billable preview generation."""

from __future__ import annotations

import logging
import uuid
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import settings
from routers.auth_scope import AuthContext, get_auth_context
from routers.billing import get_billing_services, ledger_unavailable
from services.billing_errors import LedgerUnavailableError, RefundDeliveryError
from services.container import BillingServices
from services.generation import GenerationRequest
from services.refund_guard import build_refund_key, refund_with_guard

router = APIRouter()
logger = logging.getLogger(__name__)

PREVIEW_GENERATE_PATH = "/preview/generate"
PREVIEW_GENERATE_SCOPE = "preview-generate"


class PreviewGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(min_length=1, max_length=4000)
    mode: Literal["image", "video"] = "image"
    target_model: Optional[str] = Field(default=None, alias="targetModel")
    aspect_ratio: Optional[str] = Field(default=None, alias="aspectRatio")
    skip_cache: bool = Field(default=False, alias="skipCache")


def preview_cost(mode: str) -> int:
    if mode == "video":
        return settings.CREDIT_COST_PREVIEW_VIDEO
    return settings.CREDIT_COST_PREVIEW_IMAGE


async def _reserve(billing: BillingServices, user_id: str, cost: int, request_id: str) -> bool:
    try:
        return await billing.ledger.reserve(user_id, cost)
    except LedgerUnavailableError as first_error:
        logger.warning("Reservation failed for request=%s user=%s; retrying once: %s", request_id, user_id, first_error)
    try:
        return await billing.ledger.reserve(user_id, cost)
    except LedgerUnavailableError as exc:
        logger.error("Reservation retry failed for request=%s user=%s: %s", request_id, user_id, exc)
        raise ledger_unavailable(exc) from exc


@router.post("/generate")
async def generate_preview(
    payload: PreviewGenerateRequest,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    billing: BillingServices = Depends(get_billing_services),
):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    user_id = auth.user_id
    cost = preview_cost(payload.mode)

    if not await _reserve(billing, user_id, cost, request_id):
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Insufficient credits",
                "code": "INSUFFICIENT_CREDITS",
                "details": {"required": cost, "request_id": request_id},
            },
        )

    # One id per successful reservation; client request ids may repeat across retries.
    charge_id = uuid.uuid4().hex

    try:
        result = await billing.generation_provider.generate(
            GenerationRequest(
                prompt=payload.prompt,
                mode=payload.mode,
                target_model=payload.target_model,
                aspect_ratio=payload.aspect_ratio,
            )
        )
    except Exception as exc:
        logger.error("Preview generation failed for request=%s user=%s: %s", request_id, user_id, exc)
        refund_key = build_refund_key(["preview", charge_id, user_id, "generation"])
        try:
            refunded = await refund_with_guard(
                billing.ledger,
                billing.failure_store,
                user_id=user_id,
                amount=cost,
                refund_key=refund_key,
                reason="preview generation failed",
                metadata={"request_id": request_id, "charge_id": charge_id, "mode": payload.mode},
                metrics=billing.metrics,
            )
            refund_status = "refunded" if refunded else "queued"
        except RefundDeliveryError:
            refund_status = "unrecorded"
        raise HTTPException(
            status_code=502,
            detail={
                "error": "Preview generation failed",
                "code": "GENERATION_FAILED",
                "details": {"request_id": request_id, "refund": refund_status, "refund_key": refund_key},
            },
        ) from exc

    return JSONResponse(
        content={
            "request_id": request_id,
            "asset_url": result.asset_url,
            "provider": result.provider,
            "metadata": result.metadata,
            "credits_charged": cost,
        },
        headers={"x-request-id": request_id, "x-credits-charged": str(cost)},
    )
