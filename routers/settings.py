"""
routers/settings.py — Runtime settings and channel tests.

Endpoints:
    GET   /api/settings                  — Effective settings (secrets masked)
    PATCH /api/settings                  — Toggle auto-defense / channels
    POST  /api/settings/test/{channel}   — Send a test notice to one channel
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models import AlertChannel
from routers.deps import get_dispatcher, get_monitor, get_scheduler
from schemas import SettingsUpdateRequest
from security import mask_secret
from src.services.runtime_config import save_toggles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/settings", tags=["Settings"])


def _snapshot(monitor, dispatcher, scheduler) -> dict:
    return {
        "ethos": {
            "api_url": settings.ethos_api_url,
            "user_key": settings.ethos_user_key,
        },
        "monitor": {"interval_minutes": scheduler.interval_minutes},
        "auto_defense": {
            "enabled": monitor.auto_defense.enabled,
            "require_confirm": monitor.auto_defense.require_confirm,
            "default_score": monitor.auto_defense.default_score,
        },
        "notifications": {
            "telegram": {
                "enabled": _enabled(dispatcher, AlertChannel.TELEGRAM),
                "bot_token": mask_secret(settings.telegram_bot_token),
                "chat_id": settings.telegram_chat_id,
            },
            "discord": {
                "enabled": _enabled(dispatcher, AlertChannel.DISCORD),
                "webhook_url": mask_secret(settings.discord_webhook_url, show=8),
            },
        },
    }


def _enabled(dispatcher, name: AlertChannel) -> bool:
    channel = dispatcher.get_channel(name)
    return bool(channel and channel.enabled)


@router.get("")
async def get_settings_view(
    monitor=Depends(get_monitor),
    dispatcher=Depends(get_dispatcher),
    scheduler=Depends(get_scheduler),
):
    return {"status": "success", "data": _snapshot(monitor, dispatcher, scheduler)}


@router.patch("")
async def update_settings(
    body: SettingsUpdateRequest,
    db: AsyncSession = Depends(get_db),
    monitor=Depends(get_monitor),
    dispatcher=Depends(get_dispatcher),
    scheduler=Depends(get_scheduler),
):
    """Apply toggles immediately and persist them across restarts."""
    notifications = body.notifications.model_dump() if body.notifications else None
    for name, enabled in (notifications or {}).items():
        channel = dispatcher.get_channel(name)
        if enabled and (channel is None or not channel.configured):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{name} is not configured",
            )

    await save_toggles(
        db,
        monitor,
        dispatcher,
        auto_defense=body.auto_defense.model_dump() if body.auto_defense else None,
        notifications=notifications,
    )
    return {
        "status": "success",
        "message": "Settings updated",
        "data": _snapshot(monitor, dispatcher, scheduler),
    }


@router.post("/test/{channel}")
async def test_channel(channel: str, dispatcher=Depends(get_dispatcher)):
    try:
        target = AlertChannel(channel.upper())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown channel: {channel}")

    ch = dispatcher.get_channel(target)
    if ch is None or not ch.enabled:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{channel} is not enabled")

    delivered = await dispatcher.send_notification(
        "✅ Ethos Monitor test notification. Alerts will arrive here.", channel=target
    )
    if target.value not in delivered:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to reach {channel}")

    return {"status": "success", "data": {"channel": target.value, "message_id": delivered[target.value]}}
