"""
routers/monitor.py — Monitor cycle control and dashboard statistics.

Endpoints:
    POST /api/monitor/run     — Run one cycle now (single-flight)
    GET  /api/monitor/status  — Scheduler and last-cycle status
    GET  /api/monitor/logs    — Recent cycle logs
    GET  /api/stats           — Store counts, scheduler status, recent runs
    GET  /api/config          — Effective monitoring configuration
"""

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.deps import get_dispatcher, get_monitor, get_scheduler, limiter
from schemas import MonitorLogResponse
from src.services import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Monitor"])


# ─────────────────────────────────────────────
# POST /api/monitor/run
# ─────────────────────────────────────────────

@router.post("/monitor/run")
@limiter.limit(settings.rate_limit_monitor_run)
async def run_monitor(request: Request, scheduler=Depends(get_scheduler)):
    """Run a monitor cycle and return its counts.

    If a cycle is already in flight this returns at once with zero counts
    and "Cycle already running" in `errors`.
    """
    result = await scheduler.trigger_manually()
    return {"status": "success", "data": result.to_dict()}


# ─────────────────────────────────────────────
# GET /api/monitor/status
# ─────────────────────────────────────────────

@router.get("/monitor/status")
async def monitor_status(scheduler=Depends(get_scheduler)):
    return {"status": "success", "data": scheduler.get_status()}


# ─────────────────────────────────────────────
# GET /api/monitor/logs
# ─────────────────────────────────────────────

@router.get("/monitor/logs")
async def monitor_logs(
    db: AsyncSession = Depends(get_db),
    limit: int = Query(20, ge=1, le=200),
):
    logs = await store.recent_monitor_logs(db, limit)
    return {
        "status": "success",
        "data": [MonitorLogResponse.model_validate(log).model_dump() for log in logs],
    }


# ─────────────────────────────────────────────
# GET /api/stats
# ─────────────────────────────────────────────

@router.get("/stats")
async def get_stats(
    db: AsyncSession = Depends(get_db),
    scheduler=Depends(get_scheduler),
):
    stats = await store.get_stats(db)
    recent = await store.recent_monitor_logs(db, 5)
    return {
        "status": "success",
        "data": {
            **stats,
            "monitor_status": scheduler.get_status(),
            "recent_runs": [MonitorLogResponse.model_validate(log).model_dump() for log in recent],
        },
    }


# ─────────────────────────────────────────────
# GET /api/config
# ─────────────────────────────────────────────

@router.get("/config")
async def get_config(
    monitor=Depends(get_monitor),
    scheduler=Depends(get_scheduler),
    dispatcher=Depends(get_dispatcher),
):
    return {
        "status": "success",
        "data": {
            "monitor_interval": scheduler.interval_minutes,
            "auto_defense": {
                "enabled": monitor.auto_defense.enabled,
                "require_confirm": monitor.auto_defense.require_confirm,
                "default_score": monitor.auto_defense.default_score,
            },
            "notifications": {ch.channel.value.lower(): ch.enabled for ch in dispatcher.channels},
        },
    }
