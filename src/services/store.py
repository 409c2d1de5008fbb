"""
src/services/store.py — Persistence helpers shared by the pipeline and the API.

Every helper takes an open AsyncSession and leaves commit/rollback to the
caller, so a unit of work (one activity, one defense step) commits once.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    ACTIVE_DEFENSE_STATUSES,
    Alert,
    AlertStatus,
    AppConfig,
    Defense,
    DefenseStatus,
    MonitorLog,
    Relation,
    Review,
)
from src.services.activity_normalizer import NormalizedActivity

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─────────────────────────────────────────────
# Relations
# ─────────────────────────────────────────────

async def upsert_relation(
    db: AsyncSession,
    relation_id: str,
    userkey: str,
    address: str,
    name: str | None = None,
    avatar_url: str | None = None,
    score: int | None = None,
) -> Relation:
    """Create the relation on first sight; afterwards refresh name, avatar and score.

    Userkey and address are fixed at creation.
    """
    relation = await db.get(Relation, relation_id)
    if relation is None:
        relation = Relation(
            id=relation_id,
            userkey=userkey,
            name=name,
            address=address,
            avatar_url=avatar_url,
            score=score or 0,
            is_active=True,
        )
        db.add(relation)
        logger.info("New relation tracked: %s (%s)", relation_id, userkey)
    else:
        relation.name = name
        relation.avatar_url = avatar_url
        if score is not None:
            relation.score = score
        relation.updated_at = _now()
    await db.flush()
    return relation


async def get_relation(db: AsyncSession, relation_id: str) -> Relation | None:
    return await db.get(Relation, relation_id)


# ─────────────────────────────────────────────
# Reviews
# ─────────────────────────────────────────────

async def review_exists(db: AsyncSession, activity_id: str) -> bool:
    result = await db.execute(select(Review.id).where(Review.activity_id == activity_id))
    return result.scalar_one_or_none() is not None


async def create_review(
    db: AsyncSession, relation_id: str, activity: NormalizedActivity
) -> Review:
    review = Review(
        id=activity.review_id,
        relation_id=relation_id,
        activity_type=activity.activity_type,
        activity_id=activity.activity_id,
        author_key=activity.author_key,
        author_name=activity.author_name,
        author_addr=activity.author_address,
        score=activity.score,
        comment=activity.comment or None,
        is_negative=activity.is_negative,
        alerted=False,
        created_at=activity.created_at,
    )
    db.add(review)
    await db.flush()
    return review


async def mark_review_alerted(db: AsyncSession, review_id: str) -> None:
    await db.execute(update(Review).where(Review.id == review_id).values(alerted=True))


# ─────────────────────────────────────────────
# Alerts
# ─────────────────────────────────────────────

async def create_alert(
    db: AsyncSession,
    alert_id: str,
    review_id: str,
    relation_id: str,
    alert_type: str,
    channel: str,
    message_id: str,
) -> Alert:
    alert = Alert(
        id=alert_id,
        review_id=review_id,
        relation_id=relation_id,
        type=alert_type,
        channel=channel,
        status=AlertStatus.PENDING.value,
        message_id=message_id,
    )
    db.add(alert)
    await db.flush()
    return alert


async def get_alert(db: AsyncSession, alert_id: str) -> Alert | None:
    return await db.get(Alert, alert_id)


async def set_alert_status(db: AsyncSession, alert: Alert, status: AlertStatus) -> Alert:
    alert.status = status.value
    alert.responded_at = _now()
    await db.flush()
    return alert


async def expire_stale_alerts(db: AsyncSession, older_than_hours: int) -> int:
    """Mark PENDING alerts sent more than `older_than_hours` ago as EXPIRED."""
    cutoff = _now() - timedelta(hours=older_than_hours)
    result = await db.execute(
        update(Alert)
        .where(Alert.status == AlertStatus.PENDING.value, Alert.sent_at < cutoff)
        .values(status=AlertStatus.EXPIRED.value, responded_at=_now())
    )
    return result.rowcount or 0


# ─────────────────────────────────────────────
# Defenses
# ─────────────────────────────────────────────

async def create_defense(
    db: AsyncSession, review_id: str, target_key: str, score: int, comment: str
) -> Defense:
    defense = Defense(
        review_id=review_id,
        target_key=target_key,
        score=score,
        comment=comment,
        status=DefenseStatus.PENDING.value,
    )
    db.add(defense)
    await db.flush()
    return defense


async def get_active_defense(db: AsyncSession, review_id: str) -> Defense | None:
    """Return the PENDING or CONFIRMED defense for a review, if any."""
    result = await db.execute(
        select(Defense)
        .where(
            Defense.review_id == review_id,
            Defense.status.in_(ACTIVE_DEFENSE_STATUSES),
        )
        .order_by(Defense.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ─────────────────────────────────────────────
# Monitor logs & stats
# ─────────────────────────────────────────────

async def log_monitor_run(
    db: AsyncSession,
    relations_checked: int,
    reviews_found: int,
    new_negative: int,
    alerts_sent: int,
    errors: list[str],
    duration_ms: int,
) -> MonitorLog:
    entry = MonitorLog(
        relations_checked=relations_checked,
        reviews_found=reviews_found,
        new_negative=new_negative,
        alerts_sent=alerts_sent,
        errors="; ".join(errors) if errors else None,
        duration_ms=duration_ms,
    )
    db.add(entry)
    await db.flush()
    return entry


async def recent_monitor_logs(db: AsyncSession, limit: int = 10) -> list[MonitorLog]:
    result = await db.execute(
        select(MonitorLog).order_by(MonitorLog.run_at.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def _count(db: AsyncSession, model, *criteria) -> int:
    stmt = select(func.count()).select_from(model)
    if criteria:
        stmt = stmt.where(*criteria)
    return (await db.execute(stmt)).scalar_one()


async def get_stats(db: AsyncSession) -> dict:
    return {
        "total_relations": await _count(db, Relation),
        "active_relations": await _count(db, Relation, Relation.is_active == True),  # noqa: E712
        "total_reviews": await _count(db, Review),
        "negative_reviews": await _count(db, Review, Review.is_negative == True),  # noqa: E712
        "total_alerts": await _count(db, Alert),
        "pending_alerts": await _count(db, Alert, Alert.status == AlertStatus.PENDING.value),
        "defenses_sent": await _count(db, Defense),
        "successful_defenses": await _count(db, Defense, Defense.status == DefenseStatus.POSTED.value),
    }


# ─────────────────────────────────────────────
# App config
# ─────────────────────────────────────────────

async def get_config_value(db: AsyncSession, key: str) -> str | None:
    row = await db.get(AppConfig, key)
    return row.value if row else None


async def set_config_value(db: AsyncSession, key: str, value: str) -> None:
    row = await db.get(AppConfig, key)
    if row is None:
        db.add(AppConfig(key=key, value=value))
    else:
        row.value = value
    await db.flush()
