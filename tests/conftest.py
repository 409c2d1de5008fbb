"""
tests/conftest.py — Shared pytest configuration and fixtures.

Unit tests run offline: Ethos is faked with AsyncMock or httpx.MockTransport,
alert channels with an in-memory NotificationChannel, and the database is a
throwaway SQLite file per test.

Run:
    pytest tests/ -v
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# ─── Path setup ──────────────────────────────────────────────────────────────
# Ensure the project root is on sys.path so imports resolve correctly
ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

# Load .env.test if present, else fall back to .env
_env_test = ROOT / ".env.test"
_env_main = ROOT / ".env"
_env_file = _env_test if _env_test.exists() else _env_main

from dotenv import load_dotenv
load_dotenv(_env_file, override=False)

os.environ.setdefault("ENVIRONMENT", "test")


# ─── Database ────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh SQLite database with all tables created."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from database import create_tables, make_session_factory

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


# ─── Session tokens ──────────────────────────────────────────────────────────
def make_token(expires_in: int = 7200, sub: str = "did:privy:test-user", sid: str = "sess-1") -> str:
    """Signed JWT with the claims a Privy session token carries."""
    from jose import jwt

    exp = int((datetime.now(timezone.utc) + timedelta(seconds=expires_in)).timestamp())
    return jwt.encode({"exp": exp, "sub": sub, "sid": sid}, "test-secret", algorithm="HS256")


# ─── Alert channels ──────────────────────────────────────────────────────────
def make_channel(name: str = "TELEGRAM", interactive: bool = False, fail: bool = False):
    """In-memory NotificationChannel that records what it was asked to send."""
    from models import AlertChannel
    from src.services.alert_dispatcher import NotificationChannel

    class RecordingChannel(NotificationChannel):
        channel = AlertChannel(name)

        def __init__(self):
            super().__init__(enabled=True)
            self.interactive = interactive
            self.alerts: list[tuple] = []
            self.notices: list[str] = []
            self.handler = None

        async def send_alert(self, payload, alert_id):
            if fail:
                raise RuntimeError(f"{name} down")
            self.alerts.append((payload, alert_id))
            return f"{name.lower()}-msg-{len(self.alerts)}"

        async def send_notification(self, text):
            if fail:
                raise RuntimeError(f"{name} down")
            self.notices.append(text)
            return f"{name.lower()}-notice-{len(self.notices)}"

        def set_action_handler(self, handler):
            self.handler = handler

    return RecordingChannel()


# ─── Seed data ───────────────────────────────────────────────────────────────
async def seed_negative_review(
    session_factory,
    review_id: str = "review_101",
    relation_id: str = "vouch-1",
    with_defense: bool = True,
    alert_id: str = "alert-1",
):
    """Insert a relation, a negative review, one PENDING alert and optionally a PENDING defense."""
    from models import Alert, AlertStatus, Defense, DefenseStatus, Relation, Review

    async with session_factory() as db:
        db.add(Relation(id=relation_id, userkey="profileId:42", address="0xabc0000000000000000000000000000000000def",
                        name="Alice", is_active=True, score=0))
        db.add(Review(id=review_id, relation_id=relation_id, activity_type="review",
                      activity_id=review_id.split("_", 1)[1], author_key="profileId:7",
                      author_name="Mallory", score=-1, comment="scam", is_negative=True,
                      alerted=True, created_at=datetime.now(timezone.utc)))
        db.add(Alert(id=alert_id, review_id=review_id, relation_id=relation_id, type="NEGATIVE_REVIEW",
                     channel="TELEGRAM", status=AlertStatus.PENDING.value, message_id="m1"))
        if with_defense:
            db.add(Defense(review_id=review_id, target_key="profileId:42", score=3,
                           comment="Trusted member.", status=DefenseStatus.PENDING.value))
        await db.commit()


# ─── Settings override for tests ─────────────────────────────────────────────
@pytest.fixture(autouse=True)
def reload_settings():
    """Force settings to reload from env on each test (avoids cached stale values)."""
    from config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
