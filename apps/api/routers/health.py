"""
Health probes for the credits API.
The credits store is required; Redis only backs rate limiting.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from database import get_db
from models.account_balance import AccountBalance

router = APIRouter()
logger = logging.getLogger(__name__)


def _missing_billing_keys() -> List[str]:
    if not settings.BILLING_ENABLED:
        return []
    return [
        key
        for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")
        if not (getattr(settings, key) or "").strip()
    ]


async def _credits_store_up(db: AsyncSession) -> bool:
    try:
        await db.execute(select(func.count()).select_from(AccountBalance))
        return True
    except SQLAlchemyError:
        logger.exception("Credits store health check failed")
        return False


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """Overall status: unhealthy without the credits store, degraded without Redis."""
    report = {
        "status": "healthy",
        "credits_store": "up",
        "redis": "up",
        "billing": "enabled" if settings.BILLING_ENABLED else "disabled",
        "stripe": "configured" if not _missing_billing_keys() else "incomplete",
    }

    if not await _credits_store_up(db):
        report["credits_store"] = "down"
        report["status"] = "unhealthy"

    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        report["redis"] = f"down: {exc}"
        if report["status"] == "healthy":
            report["status"] = "degraded"
    finally:
        await client.aclose()

    return JSONResponse(status_code=503 if report["status"] == "unhealthy" else 200, content=report)


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Ready once the credits store answers and billing keys are present."""
    missing = _missing_billing_keys()
    if not await _credits_store_up(db):
        missing.append("DATABASE_URL")

    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
