"""
src/services/alert_dispatcher.py — Fan-out of negative-review alerts to notification channels.

Every enabled channel is sent to concurrently; a channel that raises or
returns no delivery id is simply absent from the result, it never blocks or
fails the others.

Interactive channels (Telegram) call back into handle_action() when the
operator presses Confirm / Edit / Ignore under an alert.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from database import AsyncSessionLocal
from models import AlertChannel, AlertStatus, AlertType
from src.services import store
from src.services.defense import DefenseError, DefenseService

logger = logging.getLogger(__name__)

# Telegram rejects callback_data longer than this
CALLBACK_DATA_MAX_BYTES = 64


# ─────────────────────────────────────────────
# Payload
# ─────────────────────────────────────────────

@dataclass
class PartyInfo:
    name: str | None
    address: str | None
    profile_id: int | None = None
    profile_url: str | None = None


@dataclass
class AutoDefenseProposal:
    require_confirm: bool
    suggested_score: int
    suggested_comment: str


@dataclass
class AlertPayload:
    type: AlertType
    target: PartyInfo
    attacker: PartyInfo
    score: int
    comment: str | None
    timestamp: datetime
    review_id: str
    relation_id: str
    auto_defense: AutoDefenseProposal | None = None

    @property
    def is_slash(self) -> bool:
        return self.type == AlertType.SLASH


def truncate_address(address: str | None) -> str:
    """0x1234567890abcdef → 0x1234...cdef"""
    if not address:
        return "unknown"
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def truncate_text(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def defend_url(frontend_url: str, review_id: str) -> str:
    return f"{frontend_url.rstrip('/')}/defend/{review_id}"


# ─────────────────────────────────────────────
# Operator actions
# ─────────────────────────────────────────────

class AlertAction(str, Enum):
    CONFIRM = "c"
    EDIT = "e"
    IGNORE = "i"


@dataclass(frozen=True)
class CallbackData:
    """Correlation data carried by an interactive alert button.

    Wire form: `<action>|<alertId>|<reviewId>`. The review id is dropped when
    the whole string would exceed Telegram's 64-byte limit; it is then
    recovered from the stored alert.
    """

    action: AlertAction
    alert_id: str
    review_id: str = ""

    def encode(self) -> str:
        raw = f"{self.action.value}|{self.alert_id}|{self.review_id}"
        if len(raw.encode()) > CALLBACK_DATA_MAX_BYTES:
            raw = f"{self.action.value}|{self.alert_id}|"
        return raw

    @classmethod
    def decode(cls, raw: str | None) -> "CallbackData | None":
        """Parse button data; anything unrecognised yields None."""
        if not raw:
            return None
        parts = raw.split("|")
        if len(parts) != 3 or not parts[1]:
            return None
        try:
            action = AlertAction(parts[0])
        except ValueError:
            return None
        return cls(action=action, alert_id=parts[1], review_id=parts[2])


ActionHandler = Callable[[CallbackData], Awaitable[str]]


# ─────────────────────────────────────────────
# Channel interface
# ─────────────────────────────────────────────

class NotificationChannel(ABC):
    """One alert transport. Implementations may raise; the dispatcher isolates them."""

    channel: AlertChannel
    interactive: bool = False

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @property
    def configured(self) -> bool:
        """Whether the channel has the credentials it needs to deliver."""
        return True

    @abstractmethod
    async def send_alert(self, payload: AlertPayload, alert_id: str) -> str | None:
        """Deliver an alert and return the channel's message id."""

    @abstractmethod
    async def send_notification(self, text: str) -> str | None:
        """Deliver a plain operator notice."""

    def set_action_handler(self, handler: ActionHandler) -> None:
        """Interactive channels route button presses to `handler`."""

    async def aclose(self) -> None:
        pass


# ─────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────

class AlertDispatcher:
    def __init__(
        self,
        channels: list[NotificationChannel],
        defense_service: DefenseService,
        session_factory=AsyncSessionLocal,
    ):
        self.channels = channels
        self.defense_service = defense_service
        self._session_factory = session_factory
        for ch in channels:
            if ch.interactive:
                ch.set_action_handler(self.handle_action)

    def get_channel(self, name: AlertChannel | str) -> NotificationChannel | None:
        name = AlertChannel(name.upper()) if isinstance(name, str) else name
        return next((ch for ch in self.channels if ch.channel == name), None)

    def enabled_channels(self) -> list[NotificationChannel]:
        return [ch for ch in self.channels if ch.enabled]

    def new_alert_ids(self) -> dict[str, str]:
        """Pre-generate one alert id per enabled channel."""
        return {ch.channel.value: str(uuid.uuid4()) for ch in self.enabled_channels()}

    async def _settle(self, label: str, calls: dict[str, Awaitable[str | None]]) -> dict[str, str]:
        names = list(calls)
        outcomes = await asyncio.gather(*calls.values(), return_exceptions=True)

        delivered: dict[str, str] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("%s delivery to %s failed: %s", label, name, outcome)
            elif outcome:
                delivered[name] = str(outcome)
            else:
                logger.warning("%s delivery to %s returned no message id", label, name)
        return delivered

    async def send_alert(
        self, payload: AlertPayload, alert_ids: dict[str, str] | None = None
    ) -> dict[str, str]:
        """Send `payload` to every enabled channel.

        Returns channel name → delivery id for the channels that succeeded.
        `alert_ids` (from new_alert_ids) lets buttons carry the stored alert id.
        """
        alert_ids = alert_ids or self.new_alert_ids()
        calls = {
            ch.channel.value: ch.send_alert(payload, alert_ids.get(ch.channel.value) or str(uuid.uuid4()))
            for ch in self.enabled_channels()
        }
        if not calls:
            logger.info("No alert channel enabled — alert for %s not delivered", payload.review_id)
            return {}

        delivered = await self._settle("Alert", calls)
        logger.info("Alert for %s delivered to %s", payload.review_id, ", ".join(delivered) or "no channel")
        return delivered

    async def send_notification(self, text: str, channel: AlertChannel | None = None) -> dict[str, str]:
        """Send a plain notice to one channel, or to every enabled channel."""
        targets = self.enabled_channels()
        if channel is not None:
            targets = [ch for ch in targets if ch.channel == channel]
        calls = {ch.channel.value: ch.send_notification(text) for ch in targets}
        return await self._settle("Notification", calls) if calls else {}

    async def handle_action(self, data: CallbackData) -> str:
        """Apply an operator's button press and return a short acknowledgement."""
        if data.action == AlertAction.EDIT:
            logger.info("Edit requested for alert %s", data.alert_id)
            return "Open the dashboard to edit this defense"

        if data.action == AlertAction.IGNORE:
            async with self._session_factory() as db:
                alert = await store.get_alert(db, data.alert_id)
                if alert is None:
                    return "Alert not found"
                if alert.status != AlertStatus.PENDING.value:
                    return f"Alert already {alert.status.lower()}"
                await store.set_alert_status(db, alert, AlertStatus.IGNORED)
                await db.commit()
            logger.info("Alert %s ignored", data.alert_id)
            return "Alert ignored"

        if data.action == AlertAction.CONFIRM:
            review_id = data.review_id
            if not review_id:
                async with self._session_factory() as db:
                    alert = await store.get_alert(db, data.alert_id)
                if alert is None:
                    return "Alert not found"
                review_id = alert.review_id

            logger.info("Defense confirmed for review %s", review_id)
            outcome = await self.defense_service.execute_defense(data.alert_id, review_id)
            if outcome.success:
                return "Defense posted"
            if outcome.error == DefenseError.CREDENTIAL_EXPIRED:
                return "Session token expired — update it before confirming"
            return f"Defense not posted: {outcome.detail}"

        return "Unknown action"

    async def aclose(self) -> None:
        for ch in self.channels:
            try:
                await ch.aclose()
            except Exception as exc:
                logger.warning("Failed to close %s channel: %s", ch.channel.value, exc)
