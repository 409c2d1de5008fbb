"""
tests/test_credential_watchdog.py — Unit tests for session-token tracking.

Run:
    pytest tests/test_credential_watchdog.py -v
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import make_token
from src.services import store
from src.services.credential_watchdog import (
    TOKEN_CONFIG_KEY,
    CredentialWatchdog,
    TokenUpdateError,
)


# ─────────────────────────────────────────────────────────────────────────────
# Status
# ─────────────────────────────────────────────────────────────────────────────

def test_status_without_token_is_expired():
    watchdog = CredentialWatchdog(token=None)
    status = watchdog.get_status()

    assert not status.valid
    assert status.is_expired
    assert status.expires_at is None
    assert watchdog.format_status() == "Token: EXPIRED or INVALID"


def test_status_of_valid_token():
    watchdog = CredentialWatchdog(token=make_token(expires_in=3 * 3600 + 120, sub="did:privy:u1", sid="s9"))
    status = watchdog.get_status()

    assert status.valid
    assert not status.is_expiring_soon
    assert status.user_id == "did:privy:u1"
    assert status.session_id == "s9"
    assert watchdog.format_status().startswith("Token: Valid (expires in 3h")


def test_token_close_to_expiry_is_flagged():
    watchdog = CredentialWatchdog(token=make_token(expires_in=600))
    status = watchdog.get_status()

    assert status.valid
    assert status.is_expiring_soon


def test_expired_token_reports_zero_remaining():
    watchdog = CredentialWatchdog(token=make_token(expires_in=-60))
    status = watchdog.get_status()

    assert status.is_expired
    assert status.expires_in == 0
    assert watchdog.is_expired()


def test_undecodable_token_is_ignored():
    watchdog = CredentialWatchdog(token="not-a-jwt")
    assert watchdog.token is None
    assert watchdog.is_expired()


# ─────────────────────────────────────────────────────────────────────────────
# Updates
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_token_notifies_listeners_and_persists(session_factory):
    watchdog = CredentialWatchdog(token=None, session_factory=session_factory)
    listener = MagicMock()
    watchdog.add_listener(listener)
    token = make_token()

    with patch("src.services.credential_watchdog.encryption_configured", return_value=False):
        result = await watchdog.update_token(token)

    assert result.success
    assert result.status.valid
    assert watchdog.token == token
    listener.assert_called_once_with(token)

    async with session_factory() as db:
        assert await store.get_config_value(db, TOKEN_CONFIG_KEY) == token


@pytest.mark.asyncio
async def test_update_rejects_invalid_format(session_factory):
    original = make_token()
    watchdog = CredentialWatchdog(token=original, session_factory=session_factory)

    result = await watchdog.update_token("x" * 60)

    assert not result.success
    assert result.error == TokenUpdateError.INVALID_FORMAT
    assert watchdog.token == original


@pytest.mark.asyncio
async def test_update_rejects_expired_token(session_factory):
    watchdog = CredentialWatchdog(token=None, session_factory=session_factory)
    listener = MagicMock()
    watchdog.add_listener(listener)

    result = await watchdog.update_token(make_token(expires_in=-5))

    assert not result.success
    assert result.error == TokenUpdateError.ALREADY_EXPIRED
    listener.assert_not_called()


@pytest.mark.asyncio
async def test_load_persisted_prefers_later_expiry(session_factory):
    stored = make_token(expires_in=7200)
    async with session_factory() as db:
        await store.set_config_value(db, TOKEN_CONFIG_KEY, stored)
        await db.commit()

    watchdog = CredentialWatchdog(token=make_token(expires_in=600), session_factory=session_factory)
    listener = MagicMock()
    watchdog.add_listener(listener)

    assert await watchdog.load_persisted() is True
    assert watchdog.token == stored
    listener.assert_called_once_with(stored)


@pytest.mark.asyncio
async def test_load_persisted_keeps_fresher_configured_token(session_factory):
    async with session_factory() as db:
        await store.set_config_value(db, TOKEN_CONFIG_KEY, make_token(expires_in=600))
        await db.commit()

    configured = make_token(expires_in=7200)
    watchdog = CredentialWatchdog(token=configured, session_factory=session_factory)

    assert await watchdog.load_persisted() is False
    assert watchdog.token == configured


# ─────────────────────────────────────────────────────────────────────────────
# Monitoring
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_check_once_fires_callback_only_when_attention_needed():
    callback = AsyncMock()

    healthy = CredentialWatchdog(token=make_token(expires_in=7200))
    await healthy.check_once(callback)
    callback.assert_not_awaited()

    expiring = CredentialWatchdog(token=make_token(expires_in=300))
    await expiring.check_once(callback)
    callback.assert_awaited_once()


@pytest.mark.asyncio
async def test_check_once_survives_failing_callback():
    watchdog = CredentialWatchdog(token=None)
    status = await watchdog.check_once(AsyncMock(side_effect=RuntimeError("telegram down")))
    assert status.is_expired
