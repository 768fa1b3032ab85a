"""
Video Prompt Workspace Billing - FastAPI Backend
Main application entry point with health check, billing and preview routing.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, settings, validate_security_settings
from database import Base, async_session_maker, bound_engine
import models  # noqa: F401
from middleware.coalescing import RequestCoalescingMiddleware
from middleware.write_gate import WriteGateMiddleware
from routers import billing, health, preview
from services.coalescing import RequestCoalescer
from services.container import build_billing_services, build_store_circuit
from services.generation import BaseGenerationProvider
from services.metrics import MetricsService


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    app_settings: Settings = app.state.settings
    print("🚀 Starting Video Prompt Workspace billing API...")
    validate_security_settings()
    if app_settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with bound_engine(app.state.session_maker).begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    billing_services = app.state.billing
    if app_settings.BACKGROUND_WORKERS_IN_API:
        try:
            recovered = await billing_services.failure_store.release_stale_processing(
                app_settings.CREDIT_REFUND_STALE_PROCESSING_SECONDS
            )
            if recovered:
                print(f"♻️ Released {recovered} stale refund claims after startup.")
        except Exception as exc:
            print(f"⚠️ Stale refund recovery skipped: {exc}")
        for name in billing_services.start_workers(app_settings):
            print(f"📅 {name} loop enabled.")
    yield
    # Shutdown
    await billing_services.stop_workers()
    print("👋 Shutting down API...")


def create_app(
    app_settings: Optional[Settings] = None,
    *,
    session_maker=None,
    generation_provider: Optional[BaseGenerationProvider] = None,
) -> FastAPI:
    app_settings = app_settings or settings
    session_maker = session_maker or async_session_maker

    application = FastAPI(
        title="Video Prompt Workspace Billing API",
        description="Credit ledger, refund recovery and billable preview generation",
        version="0.1.0",
        lifespan=lifespan,
    )

    metrics = MetricsService()
    store_circuit = build_store_circuit(app_settings, metrics)
    coalescer = RequestCoalescer(window_seconds=app_settings.COALESCING_WINDOW_MS / 1000.0)

    application.state.settings = app_settings
    application.state.session_maker = session_maker
    application.state.metrics = metrics
    application.state.store_circuit = store_circuit
    application.state.coalescer = coalescer
    application.state.billing = build_billing_services(
        app_settings,
        session_maker,
        metrics=metrics,
        store_circuit=store_circuit,
        generation_provider=generation_provider,
    )

    # Added innermost first: requests pass CORS, then the write gate, then coalescing.
    application.add_middleware(
        RequestCoalescingMiddleware,
        coalescer=coalescer,
        routes={preview.PREVIEW_GENERATE_PATH: preview.PREVIEW_GENERATE_SCOPE},
        metrics=metrics,
        enabled=app_settings.COALESCING_ENABLED,
    )
    application.add_middleware(WriteGateMiddleware, store_circuit=store_circuit)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    application.include_router(health.router, tags=["Health"])
    application.include_router(billing.router, prefix="/billing", tags=["Billing"])
    application.include_router(preview.router, prefix="/preview", tags=["Preview"])

    @application.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Video Prompt Workspace Billing API",
            "version": "0.1.0",
            "status": "running",
        }

    return application


app = create_app()
