"""
Health check endpoints.

Readiness means the ledger can serve writes: the database answers and the
ledger tables exist (schema migrated or auto-created).
"""

from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from config import settings
from database import Base, get_session_factory

router = APIRouter()


async def missing_ledger_tables(session_factory: async_sessionmaker) -> List[str]:
    """Names of mapped ledger tables not present in the connected database."""
    async with session_factory() as session:
        conn = await session.connection()
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return sorted(name for name in Base.metadata.tables if name not in existing)


@router.get("/health")
async def health_check(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """
    Health check endpoint.
    Reports ledger schema, redis and entitlement provider configuration.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "ledger_schema": "unknown",
        "redis": "unknown",
        "entitlement_provider": "configured" if settings.REVENUECAT_API_KEY else "missing",
    }

    try:
        missing = await missing_ledger_tables(session_factory)
        health_status["ledger_schema"] = "ready" if not missing else f"missing: {', '.join(missing)}"
        if missing:
            health_status["status"] = "degraded"
    except Exception as e:
        health_status["ledger_schema"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs edge quotas and the job queue; the ledger works without it.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Kubernetes-style readiness check."""
    problems = []
    if not settings.REVENUECAT_API_KEY:
        problems.append("REVENUECAT_API_KEY")
    try:
        missing_tables = await missing_ledger_tables(session_factory)
        problems.extend(f"table:{name}" for name in missing_tables)
    except Exception:
        problems.append("database")

    if problems:
        return JSONResponse(status_code=503, content={"ready": False, "missing": problems})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
