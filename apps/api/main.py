"""
Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    accounts,
    billing,
    admin,
)
from services.entitlements import get_entitlement_provider
from services.monthly_grants import run_monthly_grants
from services.subscriptions import reconcile_subscriptions


logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_monthly_grants() -> None:
    interval_minutes = max(int(settings.JOB_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            summary = await run_monthly_grants()
            print(
                f"💳 Monthly grants: granted={summary.granted} "
                f"initialized={summary.initialized} errors={summary.errors}"
            )
        except Exception as exc:
            print(f"⚠️ Monthly grant tick failed: {exc}")


async def _periodic_subscription_reconcile() -> None:
    interval_minutes = max(int(settings.JOB_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            summary = await reconcile_subscriptions(get_entitlement_provider())
            print(
                f"🔁 Subscription reconcile: renewed={summary.renewed} "
                f"expired={summary.expired} errors={summary.errors}"
            )
        except Exception as exc:
            print(f"⚠️ Subscription reconcile tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    tasks = []
    if settings.SCHEDULED_JOBS_ENABLED and int(settings.JOB_INTERVAL_MINUTES) > 0:
        tasks.append(asyncio.create_task(_periodic_monthly_grants()))
        tasks.append(asyncio.create_task(_periodic_subscription_reconcile()))
        print(
            "📅 Monthly grant and subscription reconcile loops enabled "
            f"(every {int(settings.JOB_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Credit balances, plans, purchases and generation limits for the styling app",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
