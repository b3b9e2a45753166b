"""Liveness and readiness for the journeys service."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..database import get_db
from ..services import dispatch_svc

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "healthy", "service": "journeys"}


@router.get("/ready")
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)):
    """Database reachable, plus dispatcher state and queue depth."""
    pool = getattr(request.app.state, "worker_pool", None)
    return {
        "status": "ready",
        "service": "journeys",
        "dispatcher_running": bool(pool and pool.running),
        "executions": await dispatch_svc.backlog(db),
        "messaging": {
            "email": settings.sendgrid_configured,
            "sms": settings.twilio_configured,
        },
    }
