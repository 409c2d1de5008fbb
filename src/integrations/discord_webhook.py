"""
src/integrations/discord_webhook.py — Discord alert channel (incoming webhook).

Webhooks cannot carry interactive components, so Discord alerts are
read-only: an embed plus a link to the dashboard's defend view.
"""

import logging

import httpx

from config import settings
from models import AlertChannel
from src.services.alert_dispatcher import (
    AlertPayload,
    NotificationChannel,
    defend_url,
    truncate_text,
)

logger = logging.getLogger(__name__)

COLOR_SLASH = 0xFF0000
COLOR_NEGATIVE = 0xFFA500
_FIELD_LIMIT = 1024


def format_alert_embed(payload: AlertPayload, frontend_url: str) -> dict:
    """Build the Discord embed for an alert."""
    label = "SLASH" if payload.is_slash else "NEGATIVE REVIEW"
    fields = [
        {
            "name": "📛 Target",
            "value": f"{payload.target.name or 'Unknown'}\n`{payload.target.address or 'unknown'}`",
            "inline": True,
        },
        {
            "name": "👤 Attacker",
            "value": f"{payload.attacker.name or 'Unknown'}\n`{payload.attacker.address or 'unknown'}`",
            "inline": True,
        },
        {"name": "⭐ Score", "value": f"{payload.score:+d}", "inline": True},
    ]
    if payload.comment:
        fields.append({
            "name": "💬 Comment",
            "value": truncate_text(payload.comment, _FIELD_LIMIT - 3),
            "inline": False,
        })
    if payload.auto_defense:
        fields.append({
            "name": "🤖 Suggested defense",
            "value": (
                f"\"{payload.auto_defense.suggested_comment}\"\n"
                f"Score: {payload.auto_defense.suggested_score:+d}"
            ),
            "inline": False,
        })

    embed = {
        "title": f"🚨 ETHOS ALERT — {label}",
        "color": COLOR_SLASH if payload.is_slash else COLOR_NEGATIVE,
        "description": f"[📊 Open in dashboard]({defend_url(frontend_url, payload.review_id)})",
        "fields": fields,
        "footer": {"text": f"Review {payload.review_id}"},
        "timestamp": payload.timestamp.isoformat(),
    }
    if payload.target.profile_url:
        embed["url"] = payload.target.profile_url
    return embed


class DiscordWebhookChannel(NotificationChannel):
    channel = AlertChannel.DISCORD

    def __init__(
        self,
        webhook_url: str,
        frontend_url: str,
        enabled: bool = True,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(enabled=enabled)
        self.webhook_url = webhook_url
        self.frontend_url = frontend_url
        self._http = httpx.AsyncClient(
            timeout=timeout or settings.ethos_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def _post(self, body: dict) -> str | None:
        # wait=true makes Discord return the created message
        resp = await self._http.post(self.webhook_url, params={"wait": "true"}, json=body)
        resp.raise_for_status()
        message_id = resp.json().get("id")
        return str(message_id) if message_id else None

    async def send_alert(self, payload: AlertPayload, alert_id: str) -> str | None:
        if not self.webhook_url:
            return None
        message_id = await self._post({"embeds": [format_alert_embed(payload, self.frontend_url)]})
        logger.info("Discord alert sent: %s", message_id)
        return message_id

    async def send_notification(self, text: str) -> str | None:
        if not self.webhook_url:
            return None
        return await self._post({"content": text[:2000]})

    async def aclose(self) -> None:
        await self._http.aclose()
