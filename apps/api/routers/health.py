"""
Health check and metrics endpoints.
"""

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST
from sqlalchemy import text

router = APIRouter()


def _worker_statuses(billing) -> dict:
    if billing is None:
        return {}
    return {
        worker.name: worker.get_status().to_dict()
        for worker in (billing.refund_sweeper, billing.reconciliation_worker)
    }


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    state = request.app.state
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "store_circuit": state.store_circuit.get_readiness_snapshot(),
        "workers": _worker_statuses(getattr(state, "billing", None)),
        "coalescing": state.coalescer.get_stats(),
    }

    # Check database connection
    try:
        async with state.session_maker() as session:
            await session.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if health_status["store_circuit"]["open"]:
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes-style readiness probe."""
    store_circuit = request.app.state.store_circuit
    if store_circuit.is_open():
        return JSONResponse(
            status_code=503,
            content={"ready": False, "store_circuit": store_circuit.get_readiness_snapshot()},
            headers={"Retry-After": str(store_circuit.get_retry_after_seconds())},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}


@router.get("/metrics")
async def metrics(request: Request):
    return Response(content=request.app.state.metrics.render(), media_type=CONTENT_TYPE_LATEST)
