"""
models.py — SQLAlchemy ORM models for Ethos Monitor.

Relations and reviews mirror what the Ethos network reports; alerts,
defenses and monitor logs are produced locally by the pipeline.
Status columns are plain strings holding the values of the enums below.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ─────────────────────────────────────────────────────────────────────────────
# STATUS VALUES
# ─────────────────────────────────────────────────────────────────────────────

class AlertType(str, Enum):
    NEGATIVE_REVIEW = "NEGATIVE_REVIEW"
    SLASH = "SLASH"
    UNVOUCH = "UNVOUCH"


class AlertChannel(str, Enum):
    TELEGRAM = "TELEGRAM"
    DISCORD = "DISCORD"


class AlertStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IGNORED = "IGNORED"
    EXPIRED = "EXPIRED"


class DefenseStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    POSTED = "POSTED"
    FAILED = "FAILED"


ACTIVE_DEFENSE_STATUSES = (DefenseStatus.PENDING.value, DefenseStatus.CONFIRMED.value)


# ─────────────────────────────────────────────────────────────────────────────
# RELATION
# ─────────────────────────────────────────────────────────────────────────────

class Relation(Base):
    """A vouched counterparty whose received reviews are monitored.

    Upserted by vouch id on every monitor cycle; never deleted, only
    deactivated.
    """

    __tablename__ = "relations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    userkey: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str] = mapped_column(String(128), nullable=False)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    # ── Relationships ──────────────────────────────────────────────────────
    reviews: Mapped[list["Review"]] = relationship("Review", back_populates="relation")
    alerts: Mapped[list["Alert"]] = relationship("Alert", back_populates="relation")

    def __repr__(self) -> str:
        return f"<Relation id={self.id} userkey={self.userkey} active={self.is_active}>"


# ─────────────────────────────────────────────────────────────────────────────
# REVIEW
# ─────────────────────────────────────────────────────────────────────────────

class Review(Base):
    """One review or slash received by a relation.

    activity_id is the deduplication key: re-observing the same activity in
    a later cycle is a no-op. Only `alerted` changes after creation.
    """

    __tablename__ = "reviews"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    relation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("relations.id"), nullable=False
    )
    activity_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default="review"  # review | slash
    )
    activity_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    author_key: Mapped[str] = mapped_column(String(128), nullable=False)
    author_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    author_addr: Mapped[str | None] = mapped_column(String(128), nullable=True)

    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    alerted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Event time as reported by Ethos, not ingestion time
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────────────
    relation: Mapped["Relation"] = relationship("Relation", back_populates="reviews")
    alerts: Mapped[list["Alert"]] = relationship("Alert", back_populates="review")
    defenses: Mapped[list["Defense"]] = relationship("Defense", back_populates="review")

    __table_args__ = (
        Index("ix_reviews_relation_created", "relation_id", "created_at"),
        Index("ix_reviews_negative", "is_negative"),
    )

    def __repr__(self) -> str:
        return f"<Review id={self.id} score={self.score} negative={self.is_negative}>"


# ─────────────────────────────────────────────────────────────────────────────
# ALERT
# ─────────────────────────────────────────────────────────────────────────────

class Alert(Base):
    """One delivery of a negative-review notification to one channel."""

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    review_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("reviews.id"), nullable=False
    )
    relation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("relations.id"), nullable=False
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)      # AlertType
    channel: Mapped[str] = mapped_column(String(20), nullable=False)   # AlertChannel
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AlertStatus.PENDING.value
    )
    message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    responded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────────────
    review: Mapped["Review"] = relationship("Review", back_populates="alerts")
    relation: Mapped["Relation"] = relationship("Relation", back_populates="alerts")

    __table_args__ = (
        UniqueConstraint("review_id", "channel", name="uq_alerts_review_channel"),
        Index("ix_alerts_status_sent", "status", "sent_at"),
    )

    def __repr__(self) -> str:
        return f"<Alert id={self.id} channel={self.channel} status={self.status}>"


# ─────────────────────────────────────────────────────────────────────────────
# DEFENSE
# ─────────────────────────────────────────────────────────────────────────────

class Defense(Base):
    """A proposed or executed counter-review for a negative review.

    PENDING → CONFIRMED → POSTED | FAILED. POSTED and FAILED are terminal.
    """

    __tablename__ = "defenses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    review_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("reviews.id"), nullable=False, index=True
    )
    target_key: Mapped[str] = mapped_column(String(128), nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DefenseStatus.PENDING.value
    )

    ethos_review_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    posted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Relationships ──────────────────────────────────────────────────────
    review: Mapped["Review"] = relationship("Review", back_populates="defenses")

    def __repr__(self) -> str:
        return f"<Defense id={self.id} target={self.target_key} status={self.status}>"


# ─────────────────────────────────────────────────────────────────────────────
# MONITOR LOG
# ─────────────────────────────────────────────────────────────────────────────

class MonitorLog(Base):
    """Immutable audit record of one monitor cycle. Never updated."""

    __tablename__ = "monitor_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    relations_checked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reviews_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_negative: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alerts_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<MonitorLog id={self.id} negative={self.new_negative} run_at={self.run_at}>"


# ─────────────────────────────────────────────────────────────────────────────
# APP CONFIG
# ─────────────────────────────────────────────────────────────────────────────

class AppConfig(Base):
    """Key/value store for runtime settings and the persisted session token."""

    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AppConfig key={self.key}>"
