"""
Health check endpoints for monitoring and uptime.
"""
from datetime import datetime
import asyncio
import logging
import time

from fastapi import APIRouter, Depends
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from app.models.user import User
from app.db.session import db
from app.core.config import settings
from app.services import stripe_service
from app.services.auth import get_admin_user

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness probe; touches no dependencies"""
    return {"status": "ok", "timestamp": datetime.utcnow()}


async def _timed_check(name: str, check) -> dict:
    start_time = time.time()
    try:
        healthy = await asyncio.wait_for(check(), timeout=settings.HEALTH_CHECK_TIMEOUT_SECONDS)
        status = "healthy" if healthy else "unhealthy"
        error = None
    except asyncio.TimeoutError:
        status, error = "unhealthy", f"timed out after {settings.HEALTH_CHECK_TIMEOUT_SECONDS}s"
    except PyMongoError as e:
        status, error = "unhealthy", str(e)

    if error:
        logger.warning(f"Health check {name} failed: {error}")
    return {
        "status": status,
        "error": error,
        "response_time_ms": round((time.time() - start_time) * 1000, 2),
    }


async def _check_mongo() -> bool:
    await db.command("ping")
    return True


async def _check_stripe() -> bool:
    if not stripe_service.is_configured():
        return False
    return await run_in_threadpool(stripe_service.check_api_ok)


@router.get("/admin/system-status")
async def system_status(admin_user: User = Depends(get_admin_user)):
    checks = {
        "database": await _timed_check("database", _check_mongo),
        "stripe": await _timed_check("stripe", _check_stripe),
        "webhooks": {"status": "healthy" if settings.STRIPE_WEBHOOK_SECRET else "unhealthy"},
    }
    overall = "healthy" if all(c["status"] == "healthy" for c in checks.values()) else "degraded"
    return {
        "status": overall,
        "environment": settings.ENVIRONMENT,
        "timestamp": datetime.utcnow(),
        "services": checks,
    }
