"""
routers/defend.py — Posting defenses (counter-reviews) to Ethos.

Endpoints:
    POST /api/defend                     — Post an operator-written defense
    POST /api/defend/confirm/{alert_id}  — Confirm and post the suggested defense
    GET  /api/defend/suggest             — Suggested defense message
    GET  /api/defend/pending             — Pending alerts with an active defense
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models import ACTIVE_DEFENSE_STATUSES, Alert, AlertStatus, Defense
from routers.deps import get_defense_service, limiter
from schemas import AlertResponse, DefendRequest, DefenseResponse
from src.services import store
from src.services.defense import DefenseError, DefenseOutcome, suggest_defense

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/defend", tags=["Defense"])

_ERROR_STATUS = {
    DefenseError.CREDENTIAL_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    DefenseError.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    DefenseError.INVALID_STATE: status.HTTP_409_CONFLICT,
    DefenseError.SUBMISSION_FAILED: status.HTTP_502_BAD_GATEWAY,
}


def _outcome_response(outcome: DefenseOutcome) -> dict:
    if not outcome.success:
        raise HTTPException(
            status_code=_ERROR_STATUS.get(outcome.error, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail=outcome.detail,
        )
    return {
        "status": "success",
        "data": {
            "defense_id": outcome.defense_id,
            "ethos_review_id": outcome.ethos_review_id,
            "tx_hash": outcome.tx_hash,
        },
    }


# ─────────────────────────────────────────────
# POST /api/defend
# ─────────────────────────────────────────────

@router.post("")
@limiter.limit(settings.rate_limit_defend)
async def post_defense(
    request: Request,
    body: DefendRequest,
    db: AsyncSession = Depends(get_db),
    defense_service=Depends(get_defense_service),
):
    outcome = await defense_service.post_custom_defense(
        body.target_userkey, body.score, body.comment, review_id=body.review_id
    )
    response = _outcome_response(outcome)

    if body.alert_id:
        alert = await store.get_alert(db, body.alert_id)
        if alert is not None:
            await store.set_alert_status(db, alert, AlertStatus.CONFIRMED)

    return response


# ─────────────────────────────────────────────
# POST /api/defend/confirm/{alert_id}
# ─────────────────────────────────────────────

@router.post("/confirm/{alert_id}")
@limiter.limit(settings.rate_limit_defend)
async def confirm_defense(
    request: Request,
    alert_id: str,
    db: AsyncSession = Depends(get_db),
    defense_service=Depends(get_defense_service),
):
    alert = await store.get_alert(db, alert_id)
    if alert is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")

    outcome = await defense_service.execute_defense(alert_id, alert.review_id)
    return _outcome_response(outcome)


# ─────────────────────────────────────────────
# GET /api/defend/suggest
# ─────────────────────────────────────────────

@router.get("/suggest")
async def suggest(score: int = Query(3, ge=-5, le=5)):
    suggestion = suggest_defense(score)
    return {"status": "success", "data": {"score": suggestion.score, "comment": suggestion.message}}


# ─────────────────────────────────────────────
# GET /api/defend/pending
# ─────────────────────────────────────────────

@router.get("/pending")
async def pending_defenses(db: AsyncSession = Depends(get_db)):
    """Pending alerts paired with the defense awaiting confirmation."""
    rows = (await db.execute(
        select(Alert, Defense)
        .join(Defense, Defense.review_id == Alert.review_id)
        .where(
            Alert.status == AlertStatus.PENDING.value,
            Defense.status.in_(ACTIVE_DEFENSE_STATUSES),
        )
        .order_by(Alert.sent_at.desc())
    )).all()

    data = [
        {
            **AlertResponse.model_validate(alert).model_dump(),
            "defense": DefenseResponse.model_validate(defense).model_dump(),
        }
        for alert, defense in rows
    ]
    return {"status": "success", "data": data, "total": len(data)}
