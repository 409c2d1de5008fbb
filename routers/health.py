"""
routers/health.py — Health check endpoints for Ethos Monitor.

Endpoints:
    GET /health           — Liveness plus Ethos, token, store, scheduler and channel status
    GET /health/database  — Database connectivity
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.deps import get_dispatcher, get_ethos_client, get_scheduler, get_watchdog
from schemas import HealthResponse, ServiceStatus
from src.services import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


# ─────────────────────────────────────────────
# GET /health
# ─────────────────────────────────────────────

@router.get("", response_model=HealthResponse, summary="Application liveness")
async def health_check(
    db: AsyncSession = Depends(get_db),
    client=Depends(get_ethos_client),
    watchdog=Depends(get_watchdog),
    scheduler=Depends(get_scheduler),
    dispatcher=Depends(get_dispatcher),
):
    """Return application status. 200 whenever the server is running."""
    ethos_ok = await client.health_check()
    token = watchdog.get_status()
    stats = await store.get_stats(db)

    services = {
        "ethos": ServiceStatus(status="healthy" if ethos_ok else "error",
                               detail=None if ethos_ok else "Ethos API unreachable"),
        "token": ServiceStatus(status="healthy" if token.valid else "error",
                               detail=watchdog.format_status()),
    }
    overall = "healthy" if all(s.status == "healthy" for s in services.values()) else "degraded"

    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        services=services,
        data={
            "ethos_user_key": settings.ethos_user_key,
            "token": token.to_dict(),
            "database": {
                "relations": stats["total_relations"],
                "reviews": stats["total_reviews"],
                "alerts": stats["total_alerts"],
            },
            "scheduler": scheduler.get_status(),
            "notifications": {ch.channel.value.lower(): ch.enabled for ch in dispatcher.channels},
        },
    )


# ─────────────────────────────────────────────
# GET /health/database
# ─────────────────────────────────────────────

@router.get("/database", response_model=HealthResponse, summary="Database connectivity")
async def database_health(db: AsyncSession = Depends(get_db)):
    """Verify that the database can accept connections and execute queries."""
    try:
        await db.execute(text("SELECT 1"))
        db_status = ServiceStatus(status="healthy")
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        db_status = ServiceStatus(status="error", detail="Cannot connect to database")

    overall = "healthy" if db_status.status == "healthy" else "degraded"
    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        services={"database": db_status},
    )
