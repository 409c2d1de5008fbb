"""
schemas.py — Pydantic request/response schemas for Ethos Monitor.

Schemas validate input data and define the shape of API responses.
They are intentionally separate from SQLAlchemy models to keep the
API contract stable even when the database schema evolves.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from models import AlertStatus


# ─────────────────────────────────────────────
# Generic / Envelope
# ─────────────────────────────────────────────

class SuccessResponse(BaseModel):
    """Standard success envelope."""

    status: str = "success"
    message: str | None = None
    data: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    status: str = "error"
    error: str
    code: str | None = None


# ─────────────────────────────────────────────
# Records
# ─────────────────────────────────────────────

class RelationResponse(BaseModel):
    id: str
    userkey: str
    name: str | None
    address: str
    avatar_url: str | None
    is_active: bool
    score: int
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ReviewResponse(BaseModel):
    id: str
    relation_id: str
    activity_type: str
    activity_id: str
    author_key: str
    author_name: str | None
    author_addr: str | None
    score: int
    comment: str | None
    is_negative: bool
    alerted: bool
    created_at: datetime
    ingested_at: datetime

    model_config = {"from_attributes": True}


class AlertResponse(BaseModel):
    id: str
    review_id: str
    relation_id: str
    type: str
    channel: str
    status: str
    message_id: str | None
    sent_at: datetime
    responded_at: datetime | None

    model_config = {"from_attributes": True}


class DefenseResponse(BaseModel):
    id: str
    review_id: str
    target_key: str
    score: int
    comment: str
    status: str
    ethos_review_id: str | None
    tx_hash: str | None
    error: str | None
    created_at: datetime
    posted_at: datetime | None

    model_config = {"from_attributes": True}


class MonitorLogResponse(BaseModel):
    id: str
    relations_checked: int
    reviews_found: int
    new_negative: int
    alerts_sent: int
    errors: str | None
    duration_ms: int
    run_at: datetime

    model_config = {"from_attributes": True}


# ─────────────────────────────────────────────
# Requests
# ─────────────────────────────────────────────

class AlertStatusUpdate(BaseModel):
    """Payload for PATCH /api/alerts/{id}."""

    status: AlertStatus


class DefendRequest(BaseModel):
    """Payload for POST /api/defend — an operator-written defense."""

    target_userkey: str = Field(..., min_length=1)
    score: int = Field(..., ge=-5, le=5)
    comment: str = Field(..., min_length=1, max_length=1000)
    review_id: str | None = None
    alert_id: str | None = None

    @field_validator("comment")
    @classmethod
    def comment_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("comment must not be blank")
        return v.strip()


class TokenUpdateRequest(BaseModel):
    """Payload for POST /api/token/update."""

    token: str = Field(..., min_length=50)


class AutoDefenseSettings(BaseModel):
    enabled: bool | None = None
    require_confirm: bool | None = None
    default_score: int | None = Field(None, ge=-5, le=5)


class ChannelToggles(BaseModel):
    telegram: bool | None = None
    discord: bool | None = None


class SettingsUpdateRequest(BaseModel):
    """Payload for PATCH /api/settings. Omitted fields are left unchanged."""

    auto_defense: AutoDefenseSettings | None = None
    notifications: ChannelToggles | None = None


# ─────────────────────────────────────────────
# Health
# ─────────────────────────────────────────────

class ServiceStatus(BaseModel):
    status: str  # healthy | degraded | error
    detail: str | None = None


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    services: dict[str, ServiceStatus] = {}
    data: dict[str, Any] = {}
