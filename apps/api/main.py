"""
Usage Metering Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_ledger_settings
from database import Base, build_engine, build_session_maker
import models  # noqa: F401
from routers import (
    health,
    billing,
    consumption,
    tenants,
    webhooks,
)
from services.errors import (
    DailyLimitReached,
    InvalidPurchase,
    LedgerConflict,
    LedgerError,
    TenantDisabled,
    TenantNotFound,
    UnknownPlan,
    UnknownReservation,
)
from services.ledger import Ledger
from services.renewal import RenewalPolicy


async def _periodic_renewal_sweep(policy: RenewalPolicy) -> None:
    interval_minutes = max(int(settings.RENEWAL_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            renewed = await policy.sweep()
            if renewed:
                print(f"🔁 Renewal sweep: renewed={renewed}")
        except Exception as exc:
            print(f"⚠️ Renewal sweep tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Usage Metering Ledger API...")
    validate_ledger_settings()
    engine = build_engine(settings.DATABASE_URL)
    app.state.engine = engine
    app.state.session_maker = build_session_maker(engine)
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    sweep_task = None
    if settings.RENEWAL_SWEEP_ENABLED and int(settings.RENEWAL_SWEEP_INTERVAL_MINUTES) > 0:
        policy = RenewalPolicy(Ledger(app.state.session_maker))
        sweep_task = asyncio.create_task(_periodic_renewal_sweep(policy))
        print(
            "📅 Renewal sweep loop enabled "
            f"(every {int(settings.RENEWAL_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Usage Metering Ledger API",
    description="Per-tenant credit balances for a metered, pay-per-use feature",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ERROR_STATUS = (
    (TenantNotFound, 404),
    (UnknownReservation, 404),
    (TenantDisabled, 403),
    (UnknownPlan, 422),
    (InvalidPurchase, 422),
    (LedgerConflict, 503),
    (DailyLimitReached, 429),
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 400)
    content = {"detail": str(exc)}
    if isinstance(exc, DailyLimitReached):
        content.update({"error": "Daily limit reached", "limit": exc.limit})
    return JSONResponse(status_code=status_code, content=content)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tenants.router, prefix="/tenants", tags=["Tenants"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(consumption.router, prefix="/consumption", tags=["Consumption"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Usage Metering Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
