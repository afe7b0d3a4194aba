"""Health and readiness checks for the media store."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db

router = APIRouter()


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "healthy", "service": "mediastore"}


@router.get("/ready")
async def readiness_check(request: Request, db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    reconciler = getattr(request.app.state, "reconciler", None)
    return {
        "status": "ready",
        "service": "mediastore",
        "reconciler": "running" if reconciler is not None and reconciler.running else "stopped",
    }
