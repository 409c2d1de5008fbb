"""
routers/telegram_webhooks.py — Telegram bot webhook.

Endpoints:
    POST /webhooks/telegram  — Receive updates from Telegram (alert button presses, commands)
"""

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request
from telegram import Update

logger = logging.getLogger(__name__)

webhook_router = APIRouter(prefix="/webhooks", tags=["Telegram Webhook"])


# ─────────────────────────────────────────────
# POST /webhooks/telegram
# ─────────────────────────────────────────────

@webhook_router.post("/telegram", include_in_schema=False)
async def telegram_webhook(
    request: Request,
    secret_token: str | None = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
):
    """Receive and dispatch a Telegram update (called by Telegram's servers)."""
    svc = getattr(request.app.state, "telegram", None)
    if svc is None or svc.app is None:
        # Bot not initialised, accept silently to avoid Telegram retries
        return {"status": "ok"}

    if svc.webhook_secret and not hmac.compare_digest(secret_token or "", svc.webhook_secret):
        logger.warning("Rejected Telegram webhook call with a bad secret token")
        raise HTTPException(status_code=403, detail="Invalid webhook secret")

    try:
        raw = await request.json()
        update = Update.de_json(raw, svc.app.bot)
        await svc.process_update(update)
        return {"status": "ok"}
    except Exception as exc:
        logger.error("Error processing Telegram webhook: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc))
