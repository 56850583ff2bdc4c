"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine

router = APIRouter()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Reports database, Redis and LLM configuration status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "llm_api_key": "configured" if settings.LLM_API_KEY else "missing",
        "dispatch_mode": settings.AUDIT_DISPATCH_MODE,
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if settings.AUDIT_DISPATCH_MODE == "queue":
        try:
            r = redis.from_url(settings.REDIS_URL)
            await r.ping()
            await r.aclose()
            health_status["redis"] = "up"
        except Exception as e:
            health_status["redis"] = f"down: {str(e)}"
            health_status["status"] = "degraded"
    else:
        health_status["redis"] = "not used"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Readiness probe: stage executors need an LLM key."""
    missing = []
    if not settings.LLM_API_KEY:
        missing.append("LLM_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
