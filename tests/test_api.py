"""
tests/test_api.py — HTTP-level tests for the REST API.

The lifespan is not run: components are placed on app.state directly and
get_db is overridden with a throwaway SQLite database.

Run:
    pytest tests/test_api.py -v
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from conftest import make_channel, make_token, seed_negative_review
from src.integrations.ethos_client import SubmitResult
from src.services.credential_watchdog import CredentialWatchdog

_COMPONENTS = ("ethos_client", "watchdog", "defense_service", "dispatcher", "monitor", "scheduler", "telegram")


@pytest_asyncio.fixture
async def api(session_factory):
    from database import get_db
    from main import app
    from src.services.alert_dispatcher import AlertDispatcher
    from src.services.defense import DefenseService
    from src.services.monitor import AutoDefenseConfig, MonitorService
    from src.services.scheduler import CycleScheduler

    ethos = MagicMock()
    ethos.health_check = AsyncMock(return_value=True)
    ethos.get_vouches = AsyncMock(return_value=[])
    ethos.get_score = AsyncMock(return_value={"score": 1400})
    ethos.submit_review = AsyncMock(return_value=SubmitResult(success=True, review_id="900", tx_hash="0xtx"))

    watchdog = CredentialWatchdog(token=make_token(), session_factory=session_factory)
    channel = make_channel("TELEGRAM")
    defense = DefenseService(ethos, watchdog, session_factory=session_factory)
    dispatcher = AlertDispatcher([channel], defense, session_factory=session_factory)
    monitor = MonitorService(
        ethos, dispatcher, user_key="profileId:1", session_factory=session_factory,
        auto_defense=AutoDefenseConfig(),
    )
    scheduler = CycleScheduler(monitor, interval_minutes=5, session_factory=session_factory)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.ethos_client = ethos
    app.state.watchdog = watchdog
    app.state.defense_service = defense
    app.state.dispatcher = dispatcher
    app.state.monitor = monitor
    app.state.scheduler = scheduler
    app.state.telegram = None

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
        yield SimpleNamespace(
            http=http, ethos=ethos, watchdog=watchdog, channel=channel,
            defense=defense, monitor=monitor, session_factory=session_factory,
        )

    app.dependency_overrides.clear()
    for name in _COMPONENTS:
        setattr(app.state, name, None)


# ─────────────────────────────────────────────────────────────────────────────
# Root & health
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_root_and_health(api):
    root = await api.http.get("/")
    assert root.json()["status"] == "healthy"

    health = (await api.http.get("/health")).json()
    assert health["status"] == "healthy"
    assert health["services"]["ethos"]["status"] == "healthy"
    assert health["data"]["notifications"] == {"telegram": True}


@pytest.mark.asyncio
async def test_security_headers_present(api):
    resp = await api.http.get("/")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Response-Time" in resp.headers


# ─────────────────────────────────────────────────────────────────────────────
# Monitor
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_manual_run_returns_counts_and_logs(api):
    resp = await api.http.post("/api/monitor/run")
    assert resp.status_code == 200
    assert resp.json()["data"]["relations_checked"] == 0

    logs = (await api.http.get("/api/monitor/logs")).json()["data"]
    assert len(logs) == 1


# ─────────────────────────────────────────────────────────────────────────────
# Reviews & alerts
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_review_stats_and_listing(api):
    await seed_negative_review(api.session_factory)

    stats = (await api.http.get("/api/reviews/stats")).json()["data"]
    assert stats == {"total": 1, "negative": 1, "positive": 0, "negative_percentage": 100.0}

    negative = (await api.http.get("/api/reviews/negative")).json()
    assert negative["total"] == 1
    assert negative["data"][0]["id"] == "review_101"


@pytest.mark.asyncio
async def test_alert_detail_and_status_update(api):
    await seed_negative_review(api.session_factory)

    detail = (await api.http.get("/api/alerts/alert-1")).json()["data"]
    assert detail["pending_defense"]["status"] == "PENDING"
    assert detail["review"]["id"] == "review_101"

    resp = await api.http.patch("/api/alerts/alert-1", json={"status": "IGNORED"})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "IGNORED"

    pending = (await api.http.get("/api/alerts/pending")).json()
    assert pending["total"] == 0


@pytest.mark.asyncio
async def test_unknown_alert_is_404(api):
    assert (await api.http.get("/api/alerts/nope")).status_code == 404


@pytest.mark.asyncio
async def test_relation_detail_includes_live_score(api):
    await seed_negative_review(api.session_factory)

    data = (await api.http.get("/api/relations/vouch-1")).json()["data"]

    assert data["ethos_score"] == {"score": 1400}
    assert len(data["reviews"]) == 1
    api.ethos.get_score.assert_awaited_once_with("profileId:42")


# ─────────────────────────────────────────────────────────────────────────────
# Defense
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_pending_then_confirm_defense(api):
    await seed_negative_review(api.session_factory)

    pending = (await api.http.get("/api/defend/pending")).json()
    assert pending["total"] == 1

    resp = await api.http.post("/api/defend/confirm/alert-1")
    assert resp.status_code == 200
    assert resp.json()["data"]["ethos_review_id"] == "900"

    again = await api.http.post("/api/defend/confirm/alert-1")
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_confirm_unknown_alert_is_404(api):
    resp = await api.http.post("/api/defend/confirm/missing")
    assert resp.status_code == 404
    api.ethos.submit_review.assert_not_awaited()


@pytest.mark.asyncio
async def test_custom_defense_with_expired_token_is_401(api):
    api.defense.watchdog = CredentialWatchdog(token=None, session_factory=api.session_factory)

    resp = await api.http.post(
        "/api/defend",
        json={"target_userkey": "profileId:42", "score": 3, "comment": "Trusted"},
    )

    assert resp.status_code == 401
    api.ethos.submit_review.assert_not_awaited()


@pytest.mark.asyncio
async def test_custom_defense_validation(api):
    resp = await api.http.post(
        "/api/defend",
        json={"target_userkey": "profileId:42", "score": 9, "comment": "   "},
    )

    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "Validation failed"
    assert {d["field"] for d in body["details"]} == {"body.score", "body.comment"}


@pytest.mark.asyncio
async def test_suggest_defense(api):
    data = (await api.http.get("/api/defend/suggest", params={"score": 2})).json()["data"]
    assert data["score"] == 2
    assert data["comment"]


# ─────────────────────────────────────────────────────────────────────────────
# Token
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_token_update_rejects_garbage(api):
    resp = await api.http.post("/api/token/update", json={"token": "x" * 60})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid token format"


@pytest.mark.asyncio
async def test_token_update_and_status(api):
    token = make_token(expires_in=5400, sid="sess-new")

    resp = await api.http.post("/api/token/update", json={"token": token})
    assert resp.status_code == 200

    status = (await api.http.get("/api/token/status")).json()["data"]
    assert status["valid"] is True
    assert status["session_id"] == "sess-new"
    assert status["formatted"].startswith("Token: Valid")


# ─────────────────────────────────────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_settings_patch_applies_and_persists(api):
    from src.services import store
    from src.services.runtime_config import AUTO_DEFENSE_ENABLED

    resp = await api.http.patch("/api/settings", json={"auto_defense": {"enabled": False, "default_score": 2}})

    assert resp.status_code == 200
    assert resp.json()["data"]["auto_defense"]["enabled"] is False
    assert api.monitor.auto_defense.enabled is False
    assert api.monitor.auto_defense.default_score == 2
    async with api.session_factory() as db:
        assert await store.get_config_value(db, AUTO_DEFENSE_ENABLED) == "false"


@pytest.mark.asyncio
async def test_settings_test_channel(api):
    resp = await api.http.post("/api/settings/test/telegram")
    assert resp.status_code == 200
    assert len(api.channel.notices) == 1

    assert (await api.http.post("/api/settings/test/slack")).status_code == 404
    assert (await api.http.post("/api/settings/test/discord")).status_code == 400


# ─────────────────────────────────────────────────────────────────────────────
# Telegram webhook
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_telegram_webhook_without_bot_is_accepted(api):
    resp = await api.http.post("/webhooks/telegram", json={"update_id": 1})
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_telegram_webhook_feeds_update_to_channel(api):
    from main import app

    bot = SimpleNamespace(app=SimpleNamespace(bot=None), process_update=AsyncMock(), webhook_secret=None)
    app.state.telegram = bot

    resp = await api.http.post("/webhooks/telegram", json={"update_id": 77})

    assert resp.status_code == 200
    update = bot.process_update.await_args.args[0]
    assert update.update_id == 77


@pytest.mark.asyncio
async def test_telegram_webhook_requires_secret_when_configured(api):
    from main import app

    bot = SimpleNamespace(app=SimpleNamespace(bot=None), process_update=AsyncMock(), webhook_secret="s3cret")
    app.state.telegram = bot

    forged = await api.http.post("/webhooks/telegram", json={"update_id": 5})
    wrong = await api.http.post(
        "/webhooks/telegram", json={"update_id": 5},
        headers={"X-Telegram-Bot-Api-Secret-Token": "guess"},
    )
    good = await api.http.post(
        "/webhooks/telegram", json={"update_id": 5},
        headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
    )

    assert forged.status_code == 403
    assert wrong.status_code == 403
    assert good.status_code == 200
    bot.process_update.assert_awaited_once()
