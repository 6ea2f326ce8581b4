"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import redis.asyncio as redis

from config import settings
from database import get_session_maker

router = APIRouter()


@router.get("/health")
async def health_check(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
):
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
    }

    try:
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Redis only backs rate limiting; the ledger keeps working without it.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"

    return health_status


@router.get("/health/ready")
async def readiness_check(
    session_maker: async_sessionmaker[AsyncSession] = Depends(get_session_maker),
):
    """Kubernetes-style readiness probe."""
    try:
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        return JSONResponse(status_code=503, content={"ready": False, "database": str(exc)})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
