"""
routers/relations.py — Monitored relations (vouched profiles).

Endpoints:
    GET  /api/relations          — List relations
    GET  /api/relations/{id}     — Relation detail with live Ethos score
    POST /api/relations/refresh  — Re-sync profiles from Ethos
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models import Alert, Relation, Review
from routers.deps import get_ethos_client, get_monitor
from schemas import AlertResponse, RelationResponse, ReviewResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/relations", tags=["Relations"])


@router.get("")
async def list_relations(
    db: AsyncSession = Depends(get_db),
    active: bool = Query(True, description="Only active relations"),
):
    review_counts = (
        select(Review.relation_id, func.count().label("n"))
        .group_by(Review.relation_id)
        .subquery()
    )
    stmt = (
        select(Relation, func.coalesce(review_counts.c.n, 0))
        .outerjoin(review_counts, review_counts.c.relation_id == Relation.id)
        .order_by(Relation.updated_at.desc())
    )
    if active:
        stmt = stmt.where(Relation.is_active == True)  # noqa: E712

    rows = (await db.execute(stmt)).all()
    data = [
        {**RelationResponse.model_validate(rel).model_dump(), "review_count": count}
        for rel, count in rows
    ]
    return {"status": "success", "data": data, "total": len(data)}


@router.post("/refresh")
async def refresh_relations(monitor=Depends(get_monitor)):
    result = await monitor.refresh_relations()
    return {"status": "success", "data": result}


@router.get("/{relation_id}")
async def get_relation(
    relation_id: str,
    db: AsyncSession = Depends(get_db),
    client=Depends(get_ethos_client),
):
    relation = await db.get(Relation, relation_id)
    if relation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Relation not found")

    reviews = (await db.execute(
        select(Review).where(Review.relation_id == relation_id).order_by(Review.created_at.desc())
    )).scalars().all()
    alerts = (await db.execute(
        select(Alert).where(Alert.relation_id == relation_id).order_by(Alert.sent_at.desc())
    )).scalars().all()

    return {
        "status": "success",
        "data": {
            **RelationResponse.model_validate(relation).model_dump(),
            "reviews": [ReviewResponse.model_validate(r).model_dump() for r in reviews],
            "alerts": [AlertResponse.model_validate(a).model_dump() for a in alerts],
            "ethos_score": await client.get_score(relation.userkey),
        },
    }
