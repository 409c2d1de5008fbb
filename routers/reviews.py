"""
routers/reviews.py — Ingested reviews and slashes.

Endpoints:
    GET /api/reviews           — List reviews (filter by negativity / relation)
    GET /api/reviews/negative  — Negative reviews only
    GET /api/reviews/stats     — Totals and negative share
"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models import Review
from schemas import ReviewResponse
from src.services import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["Reviews"])


async def _page(
    db: AsyncSession,
    negative: bool | None,
    relation_id: str | None,
    limit: int,
    offset: int,
) -> dict:
    criteria = []
    if negative is not None:
        criteria.append(Review.is_negative == negative)
    if relation_id:
        criteria.append(Review.relation_id == relation_id)

    total = (await db.execute(select(func.count()).select_from(Review).where(*criteria))).scalar_one()
    rows = (await db.execute(
        select(Review)
        .where(*criteria)
        .order_by(Review.created_at.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()

    return {
        "status": "success",
        "data": [ReviewResponse.model_validate(r).model_dump() for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("")
async def list_reviews(
    db: AsyncSession = Depends(get_db),
    negative: bool | None = Query(None),
    relation_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    return await _page(db, negative, relation_id, limit, offset)


@router.get("/negative")
async def list_negative_reviews(
    db: AsyncSession = Depends(get_db),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    return await _page(db, True, None, limit, offset)


@router.get("/stats")
async def review_stats(db: AsyncSession = Depends(get_db)):
    stats = await store.get_stats(db)
    total, negative = stats["total_reviews"], stats["negative_reviews"]
    return {
        "status": "success",
        "data": {
            "total": total,
            "negative": negative,
            "positive": total - negative,
            "negative_percentage": round(negative / total * 100, 1) if total else 0.0,
        },
    }
