"""
Health endpoints: process liveness, dependency reachability and reconciliation backlog.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select, text
import redis.asyncio as redis

from config import settings, webhook_signing_secret
from database import engine
from models.webhook_retry import RetryQueueEntry
from services.job_queue import RECONCILIATION_QUEUE_NAME

router = APIRouter()


async def _retry_backlog() -> dict:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
        row = (
            await conn.execute(select(func.count(), func.min(RetryQueueEntry.created_at)).select_from(RetryQueueEntry))
        ).one()
    depth, oldest = row
    age_seconds = None
    if isinstance(oldest, datetime):
        if oldest.tzinfo is None:
            oldest = oldest.replace(tzinfo=timezone.utc)
        age_seconds = int((datetime.now(timezone.utc) - oldest).total_seconds())
    return {"depth": int(depth or 0), "oldest_age_seconds": age_seconds}


async def _worker_queue_length() -> int:
    client = redis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
    try:
        return int(await client.llen(f"rq:queue:{RECONCILIATION_QUEUE_NAME}"))
    finally:
        await client.aclose()


def _missing_secrets() -> list:
    missing = []
    if not settings.PAYSTACK_SECRET_KEY:
        missing.append("PAYSTACK_SECRET_KEY")
    if not webhook_signing_secret():
        missing.append("PAYSTACK_WEBHOOK_SECRET")
    if not settings.APP_MASTER_KEY:
        missing.append("APP_MASTER_KEY")
    return missing


@router.get("/health")
async def health_check():
    """
    Dependency health plus the webhook retry backlog.

    The database is required; Redis only carries worker jobs and rate-limit
    counters, so losing it does not degrade the ledger.
    """
    status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "paystack": "configured" if settings.PAYSTACK_SECRET_KEY else "missing",
        "retry_queue": None,
    }

    try:
        status["retry_queue"] = await _retry_backlog()
        status["database"] = "up"
    except Exception as e:
        status["database"] = f"down: {str(e)}"
        status["status"] = "degraded"

    try:
        status["worker_jobs_waiting"] = await _worker_queue_length()
        status["redis"] = "up"
    except Exception as e:
        status["redis"] = f"down: {str(e)}"

    return status


@router.get("/health/ready")
async def readiness_check():
    """Ready once payment and admin secrets are present."""
    missing = _missing_secrets()
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
