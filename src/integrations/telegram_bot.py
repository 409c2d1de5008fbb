"""
src/integrations/telegram_bot.py — Telegram alert channel for Ethos Monitor.

Pushes HTML alerts to the operator chat with inline buttons and receives
button presses through the webhook (routers/telegram_webhooks.py):

  ✅ Confirm  — post the suggested defense
  ✏️ Edit     — no-op here; the dashboard handles editing
  ❌ Ignore   — mark the alert IGNORED
  📊 Dashboard — plain link to the defend view

Commands:
  /start   — Show chat id and bot status
  /status  — Session token status
"""

import html
import logging

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
)

from models import AlertChannel
from src.services.alert_dispatcher import (
    ActionHandler,
    AlertAction,
    AlertPayload,
    CallbackData,
    NotificationChannel,
    defend_url,
    truncate_address,
    truncate_text,
)

logger = logging.getLogger(__name__)

_COMMENT_LIMIT = 200
_DIVIDER = "━━━━━━━━━━━━━━━━━━━━━━"


# ─────────────────────────────────────────────────────────────────────────────
# Formatting
# ─────────────────────────────────────────────────────────────────────────────

def format_alert_message(payload: AlertPayload) -> str:
    """Render an alert as Telegram HTML."""
    emoji = "⚡" if payload.is_slash else "🚨"
    label = "SLASH DETECTED" if payload.is_slash else "NEGATIVE REVIEW"
    e = html.escape

    lines = [
        f"{emoji} <b>ETHOS ALERT — {label}</b>",
        "",
        f"📛 <b>Target:</b> {e(payload.target.name or 'Unknown')}",
        f"   <code>{e(truncate_address(payload.target.address))}</code>",
        "",
        f"👤 <b>Attacker:</b> {e(payload.attacker.name or 'Unknown')}",
        f"   <code>{e(truncate_address(payload.attacker.address))}</code>",
        "",
        f"⭐ <b>Score:</b> {payload.score:+d}",
    ]
    if payload.comment:
        lines.append(f"💬 <b>Comment:</b>\n<i>\"{e(truncate_text(payload.comment, _COMMENT_LIMIT))}\"</i>")
    lines.append("")
    if payload.target.profile_url:
        lines.append(f"🔗 <a href=\"{e(payload.target.profile_url)}\">View profile</a>")
    lines.append(f"⏰ <b>Detected:</b> {payload.timestamp.strftime('%Y-%m-%d %H:%M:%S UTC')}")

    if payload.auto_defense:
        lines += [
            "",
            _DIVIDER,
            "🤖 <b>Suggested defense:</b>",
            f"<i>\"{e(payload.auto_defense.suggested_comment)}\"</i>",
            f"Score: {payload.auto_defense.suggested_score:+d}",
            _DIVIDER,
        ]
    return "\n".join(lines)


def build_alert_keyboard(payload: AlertPayload, alert_id: str, frontend_url: str) -> InlineKeyboardMarkup:
    def cb(action: AlertAction) -> str:
        return CallbackData(action, alert_id, payload.review_id).encode()

    link = InlineKeyboardButton("📊 Dashboard", url=defend_url(frontend_url, payload.review_id))

    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton("✅ Confirm defense", callback_data=cb(AlertAction.CONFIRM)),
            InlineKeyboardButton("✏️ Edit", callback_data=cb(AlertAction.EDIT)),
        ],
        [InlineKeyboardButton("❌ Ignore", callback_data=cb(AlertAction.IGNORE))],
        [link],
    ])


# ─────────────────────────────────────────────────────────────────────────────
# TelegramAlertChannel
# ─────────────────────────────────────────────────────────────────────────────

class TelegramAlertChannel(NotificationChannel):
    """Async Telegram alert channel — one instance, built in main.py."""

    channel = AlertChannel.TELEGRAM
    interactive = True

    def __init__(
        self,
        token: str,
        chat_id: str,
        frontend_url: str,
        enabled: bool = True,
        webhook_secret: str | None = None,
    ):
        super().__init__(enabled=enabled)
        self.token = token
        self.chat_id = chat_id
        self.frontend_url = frontend_url
        self.webhook_secret = webhook_secret or None
        self.app: Application | None = None
        self._on_action: ActionHandler | None = None
        self._status_provider = None

    @property
    def configured(self) -> bool:
        return bool(self.token and self.chat_id)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Build the Application and register handlers."""
        self.app = ApplicationBuilder().token(self.token).build()
        self.app.add_handler(CommandHandler("start", self.cmd_start))
        self.app.add_handler(CommandHandler("status", self.cmd_status))
        self.app.add_handler(CallbackQueryHandler(self.handle_callback))
        await self.app.initialize()
        logger.info("Telegram alert channel initialised")

    async def set_webhook(self, url: str) -> None:
        """Register the webhook URL with Telegram."""
        await self.app.bot.set_webhook(
            url=url,
            allowed_updates=["message", "callback_query"],
            secret_token=self.webhook_secret,
        )
        logger.info("Telegram webhook set: %s", url)

    async def delete_webhook(self) -> None:
        await self.app.bot.delete_webhook()
        logger.info("Telegram webhook deleted")

    async def process_update(self, update: Update) -> None:
        """Feed one incoming update into the application's handler pipeline."""
        await self.app.process_update(update)

    async def aclose(self) -> None:
        if self.app:
            await self.app.shutdown()
            logger.info("Telegram alert channel shut down")

    def set_action_handler(self, handler: ActionHandler) -> None:
        self._on_action = handler

    def set_status_provider(self, provider) -> None:
        """`provider()` returns the text shown by /status."""
        self._status_provider = provider

    # ── Outbound ──────────────────────────────────────────────────────────────

    async def send_alert(self, payload: AlertPayload, alert_id: str) -> str | None:
        if not self.app or not self.chat_id:
            return None
        message = await self.app.bot.send_message(
            chat_id=self.chat_id,
            text=format_alert_message(payload),
            parse_mode="HTML",
            reply_markup=build_alert_keyboard(payload, alert_id, self.frontend_url),
        )
        logger.info("Telegram alert sent: %s", message.message_id)
        return str(message.message_id)

    async def send_notification(self, text: str) -> str | None:
        if not self.app or not self.chat_id:
            return None
        message = await self.app.bot.send_message(chat_id=self.chat_id, text=html.escape(text), parse_mode="HTML")
        return str(message.message_id)

    # ── Inbound ───────────────────────────────────────────────────────────────

    async def handle_callback(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle inline keyboard button presses."""
        query = update.callback_query
        chat = update.effective_chat
        if chat is None or str(chat.id) != str(self.chat_id):
            logger.warning("Ignoring alert action from unknown chat %s", chat.id if chat else None)
            await query.answer("Not authorised")
            return

        data = CallbackData.decode(query.data)

        if data is None or self._on_action is None:
            await query.answer("Unknown action")
            return

        try:
            reply = await self._on_action(data)
        except Exception as exc:
            logger.error("Telegram callback error: %s", exc)
            reply = "Error processing action"
        await query.answer(reply[:200])

    async def cmd_start(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        chat_id = update.effective_chat.id
        await self._reply(
            update,
            "🛡️ <b>Ethos Monitor</b>\n\n"
            f"This chat id: <code>{chat_id}</code>\n"
            "Set it as TELEGRAM_CHAT_ID to receive alerts here.\n\n"
            "/status — session token status",
        )

    async def cmd_status(self, update: Update, ctx: ContextTypes.DEFAULT_TYPE) -> None:
        text = self._status_provider() if self._status_provider else "Status unavailable"
        await self._reply(update, html.escape(text))

    async def _reply(self, update: Update, text: str) -> None:
        try:
            await update.message.reply_text(text, parse_mode="HTML")
        except Exception as exc:
            logger.error("Failed to send reply: %s", exc)
