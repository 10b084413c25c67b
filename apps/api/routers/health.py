"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import resolve_deployment_region, settings

router = APIRouter()


def _missing_provider_settings(region: str) -> list:
    if region == "CN":
        required = {
            "WECHAT_PAY_MCH_ID": settings.WECHAT_PAY_MCH_ID,
            "WECHAT_PAY_SERIAL_NO": settings.WECHAT_PAY_SERIAL_NO,
            "WECHAT_PAY_PRIVATE_KEY": settings.WECHAT_PAY_PRIVATE_KEY,
            "WECHAT_PAY_API_V3_KEY": settings.WECHAT_PAY_API_V3_KEY,
        }
    else:
        required = {
            "STRIPE_SECRET_KEY": settings.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": settings.STRIPE_WEBHOOK_SECRET,
        }
    return [name for name, value in required.items() if not value]


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    region = resolve_deployment_region()
    health_status = {
        "status": "healthy",
        "api": "up",
        "region": region,
        "database": "unknown",
        "redis": "unknown",
    }

    # Check database connection
    try:
        from database import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Check Redis connection
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
async def readiness_check():
    """Readiness check: the region's payment rails must be configured."""
    region = resolve_deployment_region()
    missing = _missing_provider_settings(region)
    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "region": region, "missing": missing},
        )
    return {"ready": True, "region": region}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness check."""
    return {"alive": True}
