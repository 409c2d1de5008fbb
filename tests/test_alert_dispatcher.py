"""
tests/test_alert_dispatcher.py — Unit tests for alert fan-out and operator actions.

Run:
    pytest tests/test_alert_dispatcher.py -v
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_channel, seed_negative_review
from models import Alert, AlertChannel, AlertStatus, AlertType
from src.services.alert_dispatcher import (
    AlertAction,
    AlertDispatcher,
    AlertPayload,
    CallbackData,
    PartyInfo,
    truncate_address,
)
from src.services.defense import DefenseError, DefenseOutcome


def _payload(review_id: str = "review_101") -> AlertPayload:
    return AlertPayload(
        type=AlertType.NEGATIVE_REVIEW,
        target=PartyInfo(name="Alice", address="0xabc0000000000000000000000000000000000def", profile_id=42),
        attacker=PartyInfo(name="Mallory", address="0xbad"),
        score=-1,
        comment="scam",
        timestamp=datetime.now(timezone.utc),
        review_id=review_id,
        relation_id="vouch-1",
    )


def _defense_service(outcome: DefenseOutcome | None = None) -> MagicMock:
    svc = MagicMock()
    svc.execute_defense = AsyncMock(return_value=outcome or DefenseOutcome(success=True))
    return svc


def test_truncate_address():
    assert truncate_address("0x1234567890abcdef") == "0x1234...cdef"
    assert truncate_address("0x12") == "0x12"
    assert truncate_address(None) == "unknown"


# ─────────────────────────────────────────────────────────────────────────────
# Callback data
# ─────────────────────────────────────────────────────────────────────────────

def test_callback_data_encode_decode():
    data = CallbackData(AlertAction.IGNORE, "alert-1", "review_101")
    encoded = data.encode()

    assert encoded == "i|alert-1|review_101"
    assert CallbackData.decode(encoded) == data


def test_callback_data_drops_long_review_id():
    alert_id = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
    data = CallbackData(AlertAction.CONFIRM, alert_id, "review_" + "9" * 40)
    encoded = data.encode()

    assert len(encoded.encode()) <= 64
    decoded = CallbackData.decode(encoded)
    assert decoded.alert_id == alert_id
    assert decoded.review_id == ""


@pytest.mark.parametrize("raw", [None, "", "x|a|b", "c||b", "c|a", "confirm_a_b"])
def test_callback_data_rejects_garbage(raw):
    assert CallbackData.decode(raw) is None


# ─────────────────────────────────────────────────────────────────────────────
# Fan-out
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failing_channel_does_not_block_others(session_factory):
    telegram = make_channel("TELEGRAM", fail=True)
    discord = make_channel("DISCORD")
    dispatcher = AlertDispatcher([telegram, discord], _defense_service(), session_factory=session_factory)

    alert_ids = dispatcher.new_alert_ids()
    delivered = await dispatcher.send_alert(_payload(), alert_ids)

    assert delivered == {"DISCORD": "discord-msg-1"}
    assert discord.alerts[0][1] == alert_ids["DISCORD"]


@pytest.mark.asyncio
async def test_disabled_channels_are_skipped(session_factory):
    telegram = make_channel("TELEGRAM")
    telegram.enabled = False
    dispatcher = AlertDispatcher([telegram], _defense_service(), session_factory=session_factory)

    assert dispatcher.new_alert_ids() == {}
    assert await dispatcher.send_alert(_payload()) == {}
    assert telegram.alerts == []


@pytest.mark.asyncio
async def test_notification_to_single_channel(session_factory):
    telegram = make_channel("TELEGRAM")
    discord = make_channel("DISCORD")
    dispatcher = AlertDispatcher([telegram, discord], _defense_service(), session_factory=session_factory)

    delivered = await dispatcher.send_notification("hello", channel=AlertChannel.DISCORD)

    assert delivered == {"DISCORD": "discord-notice-1"}
    assert telegram.notices == []


def test_interactive_channels_get_action_handler(session_factory):
    telegram = make_channel("TELEGRAM", interactive=True)
    discord = make_channel("DISCORD")
    dispatcher = AlertDispatcher([telegram, discord], _defense_service(), session_factory=session_factory)

    assert telegram.handler == dispatcher.handle_action
    assert discord.handler is None


# ─────────────────────────────────────────────────────────────────────────────
# Operator actions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ignore_marks_pending_alert(session_factory):
    await seed_negative_review(session_factory)
    dispatcher = AlertDispatcher([], _defense_service(), session_factory=session_factory)

    reply = await dispatcher.handle_action(CallbackData(AlertAction.IGNORE, "alert-1", "review_101"))
    again = await dispatcher.handle_action(CallbackData(AlertAction.IGNORE, "alert-1", "review_101"))

    assert reply == "Alert ignored"
    assert again == "Alert already ignored"
    async with session_factory() as db:
        alert = await db.get(Alert, "alert-1")
    assert alert.status == AlertStatus.IGNORED.value
    assert alert.responded_at is not None


@pytest.mark.asyncio
async def test_confirm_recovers_review_id_from_alert(session_factory):
    await seed_negative_review(session_factory)
    defense = _defense_service()
    dispatcher = AlertDispatcher([], defense, session_factory=session_factory)

    reply = await dispatcher.handle_action(CallbackData(AlertAction.CONFIRM, "alert-1", ""))

    assert reply == "Defense posted"
    defense.execute_defense.assert_awaited_once_with("alert-1", "review_101")


@pytest.mark.asyncio
async def test_confirm_with_expired_token(session_factory):
    defense = _defense_service(DefenseOutcome.failed(DefenseError.CREDENTIAL_EXPIRED, "expired"))
    dispatcher = AlertDispatcher([], defense, session_factory=session_factory)

    reply = await dispatcher.handle_action(CallbackData(AlertAction.CONFIRM, "alert-1", "review_101"))

    assert "expired" in reply.lower()


@pytest.mark.asyncio
async def test_edit_changes_nothing(session_factory):
    defense = _defense_service()
    dispatcher = AlertDispatcher([], defense, session_factory=session_factory)

    reply = await dispatcher.handle_action(CallbackData(AlertAction.EDIT, "alert-1", "review_101"))

    assert "dashboard" in reply.lower()
    defense.execute_defense.assert_not_awaited()
