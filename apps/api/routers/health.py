"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.future import select
import redis.asyncio as redis

from config import settings
from models.processing_log import ProcessingLog

router = APIRouter()


async def _database_status() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis and the most recent ingestion run.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": "unknown",
        "jetstream": settings.JETSTREAM_URL,
        "collection": settings.CHECKIN_COLLECTION,
        "last_ingestion_run": None,
    }
    if health_status["database"] != "up":
        health_status["status"] = "degraded"
    else:
        try:
            from database import async_session_maker

            async with async_session_maker() as db:
                result = await db.execute(
                    select(ProcessingLog.run_at).order_by(ProcessingLog.id.desc()).limit(1)
                )
                run_at = result.scalar_one_or_none()
            health_status["last_ingestion_run"] = run_at.isoformat() if run_at else None
        except Exception as e:
            health_status["last_ingestion_run"] = f"unavailable: {str(e)}"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        if settings.ADDRESS_RESOLUTION_USE_QUEUE:
            health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    database = await _database_status()
    if database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
