"""
routers/alerts.py — Delivered alerts and their operator status.

Endpoints:
    GET   /api/alerts           — List alerts (filter by status / relation)
    GET   /api/alerts/pending   — PENDING alerts
    GET   /api/alerts/{id}      — Alert with its review and active defense
    PATCH /api/alerts/{id}      — Set alert status
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models import Alert, AlertStatus, Review
from schemas import AlertResponse, AlertStatusUpdate, DefenseResponse, ReviewResponse
from src.services import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


@router.get("")
async def list_alerts(
    db: AsyncSession = Depends(get_db),
    alert_status: AlertStatus | None = Query(None, alias="status"),
    relation_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    criteria = []
    if alert_status is not None:
        criteria.append(Alert.status == alert_status.value)
    if relation_id:
        criteria.append(Alert.relation_id == relation_id)

    total = (await db.execute(select(func.count()).select_from(Alert).where(*criteria))).scalar_one()
    rows = (await db.execute(
        select(Alert).where(*criteria).order_by(Alert.sent_at.desc()).limit(limit).offset(offset)
    )).scalars().all()
    return {
        "status": "success",
        "data": [AlertResponse.model_validate(a).model_dump() for a in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/pending")
async def list_pending_alerts(db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(Alert)
        .where(Alert.status == AlertStatus.PENDING.value)
        .order_by(Alert.sent_at.desc())
        .limit(100)
    )).scalars().all()
    return {
        "status": "success",
        "data": [AlertResponse.model_validate(a).model_dump() for a in rows],
        "total": len(rows),
    }


@router.get("/{alert_id}")
async def get_alert(alert_id: str, db: AsyncSession = Depends(get_db)):
    alert = await store.get_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

    review = await db.get(Review, alert.review_id)
    defense = await store.get_active_defense(db, alert.review_id)
    return {
        "status": "success",
        "data": {
            **AlertResponse.model_validate(alert).model_dump(),
            "review": ReviewResponse.model_validate(review).model_dump() if review else None,
            "pending_defense": DefenseResponse.model_validate(defense).model_dump() if defense else None,
        },
    }


@router.patch("/{alert_id}")
async def update_alert(
    alert_id: str,
    body: AlertStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    alert = await store.get_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

    await store.set_alert_status(db, alert, body.status)
    logger.info("Alert %s set to %s", alert_id, body.status.value)
    return {"status": "success", "data": AlertResponse.model_validate(alert).model_dump()}
