"""
src/services/credential_watchdog.py — Tracks the Ethos session token and its expiry.

The token is a Privy-issued JWT read without signature verification. The
watchdog holds the current token and its claims, swaps both together on
update, pushes the new token to registered listeners (the Ethos client), and
persists it to app_config so a restart keeps the refreshed credential.

A background task re-checks expiry every few minutes and fires the
operator callback while the token is expired or about to expire.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from cryptography.fernet import InvalidToken
from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import AsyncSessionLocal
from security import decode_session_token, decrypt_field, encrypt_field, encryption_configured
from src.services import store

logger = logging.getLogger(__name__)

EXPIRING_SOON_SECONDS = 3600
TOKEN_CONFIG_KEY = "ethos_session_token"
_ENCRYPTED_PREFIX = "fernet:"


# ─────────────────────────────────────────────
# Status types
# ─────────────────────────────────────────────

@dataclass
class CredentialStatus:
    valid: bool
    expires_at: datetime | None
    expires_in: int | None  # seconds, never negative
    is_expired: bool
    is_expiring_soon: bool
    user_id: str | None
    session_id: str | None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expires_in": self.expires_in,
            "is_expired": self.is_expired,
            "is_expiring_soon": self.is_expiring_soon,
            "user_id": self.user_id,
            "session_id": self.session_id,
        }


class TokenUpdateError(str, Enum):
    INVALID_FORMAT = "Invalid token format"
    ALREADY_EXPIRED = "Token is already expired"


@dataclass
class TokenUpdateResult:
    success: bool
    status: CredentialStatus
    error: TokenUpdateError | None = None


StatusCallback = Callable[[CredentialStatus], Awaitable[None]]
TokenListener = Callable[[str], None]


# ─────────────────────────────────────────────
# Watchdog
# ─────────────────────────────────────────────

class CredentialWatchdog:
    """Holds the bearer token used for Ethos writes."""

    def __init__(
        self,
        token: str | None = None,
        session_factory=AsyncSessionLocal,
        check_interval_seconds: float | None = None,
    ):
        self._session_factory = session_factory
        self._check_interval = check_interval_seconds or settings.token_check_interval_seconds
        self._listeners: list[TokenListener] = []
        self._task: asyncio.Task | None = None
        self._token: str | None = None
        self._claims: dict | None = None
        if token:
            claims = decode_session_token(token)
            if claims:
                self._token, self._claims = token, claims
                logger.info("Session token loaded — expires at %s", _expiry(claims).isoformat())
            else:
                logger.warning("Configured session token could not be decoded")

    # ── Accessors ─────────────────────────────────────────────────────────────

    @property
    def token(self) -> str | None:
        return self._token

    def add_listener(self, listener: TokenListener) -> None:
        """Register a callable that receives every newly accepted token."""
        self._listeners.append(listener)

    def get_status(self, now: datetime | None = None) -> CredentialStatus:
        if not self._token or not self._claims:
            return CredentialStatus(
                valid=False,
                expires_at=None,
                expires_in=None,
                is_expired=True,
                is_expiring_soon=True,
                user_id=None,
                session_id=None,
            )

        now = now or datetime.now(timezone.utc)
        exp = int(self._claims["exp"])
        expires_in = exp - int(now.timestamp())
        is_expired = expires_in <= 0
        return CredentialStatus(
            valid=not is_expired,
            expires_at=_expiry(self._claims),
            expires_in=max(0, expires_in),
            is_expired=is_expired,
            is_expiring_soon=expires_in < EXPIRING_SOON_SECONDS,
            user_id=self._claims.get("sub"),
            session_id=self._claims.get("sid"),
        )

    def is_expired(self) -> bool:
        return self.get_status().is_expired

    def format_status(self) -> str:
        """One-line human summary, e.g. "Token: Valid (expires in 3h 12m)"."""
        status = self.get_status()
        if not status.valid:
            return "Token: EXPIRED or INVALID"
        hours, rem = divmod(status.expires_in or 0, 3600)
        return f"Token: Valid (expires in {hours}h {rem // 60}m)"

    # ── Updates ───────────────────────────────────────────────────────────────

    async def update_token(self, token: str) -> TokenUpdateResult:
        """Validate and swap in a new token.

        A token that cannot be decoded or is already expired is rejected and
        the current token stays in place.
        """
        claims = decode_session_token(token)
        if claims is None:
            return TokenUpdateResult(False, self.get_status(), TokenUpdateError.INVALID_FORMAT)

        if int(claims["exp"]) <= int(datetime.now(timezone.utc).timestamp()):
            return TokenUpdateResult(False, self.get_status(), TokenUpdateError.ALREADY_EXPIRED)

        self._token, self._claims = token, claims
        for listener in self._listeners:
            listener(token)

        await self._persist(token)
        logger.info("Session token updated — expires at %s", _expiry(claims).isoformat())
        return TokenUpdateResult(True, self.get_status())

    async def _persist(self, token: str) -> None:
        value = token
        if encryption_configured():
            value = _ENCRYPTED_PREFIX + encrypt_field(token)
        try:
            async with self._session_factory() as db:
                await store.set_config_value(db, TOKEN_CONFIG_KEY, value)
                await db.commit()
        except SQLAlchemyError as exc:
            # The in-memory swap already happened; a restart falls back to .env
            logger.warning("Failed to persist session token: %s", exc)

    async def load_persisted(self) -> bool:
        """Adopt a token saved by a previous update if it outlives the current one.

        Returns True when a stored token was adopted.
        """
        async with self._session_factory() as db:
            stored = await store.get_config_value(db, TOKEN_CONFIG_KEY)
        if not stored:
            return False

        if stored.startswith(_ENCRYPTED_PREFIX):
            try:
                stored = decrypt_field(stored[len(_ENCRYPTED_PREFIX):])
            except (InvalidToken, ValueError):
                logger.warning("Stored session token could not be decrypted — ignoring it")
                return False

        claims = decode_session_token(stored)
        if claims is None or stored == self._token:
            return False
        if self._claims and int(claims["exp"]) <= int(self._claims["exp"]):
            return False

        self._token, self._claims = stored, claims
        for listener in self._listeners:
            listener(stored)
        logger.info("Restored persisted session token — expires at %s", _expiry(claims).isoformat())
        return True

    # ── Monitoring ────────────────────────────────────────────────────────────

    async def check_once(self, callback: StatusCallback | None = None) -> CredentialStatus:
        """Evaluate the token once and fire `callback` if it needs attention."""
        status = self.get_status()
        if status.is_expired:
            logger.error("SESSION TOKEN EXPIRED — update it via POST /api/token/update")
        elif status.is_expiring_soon:
            hours, rem = divmod(status.expires_in or 0, 3600)
            logger.warning("Session token expiring soon: %dh %dm remaining", hours, rem // 60)
        else:
            return status

        if callback is not None:
            try:
                await callback(status)
            except Exception as exc:
                logger.error("Token expiry callback failed: %s", exc)
        return status

    async def _monitor_loop(self, callback: StatusCallback | None) -> None:
        while True:
            await self.check_once(callback)
            try:
                await asyncio.sleep(self._check_interval)
            except asyncio.CancelledError:
                return

    def start_monitoring(self, callback: StatusCallback | None = None) -> None:
        """Check now, then every check interval, until stop_monitoring()."""
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._monitor_loop(callback), name="token_watchdog")
        logger.info("Token expiry monitoring started (every %ss)", self._check_interval)

    def stop_monitoring(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None
        logger.info("Token expiry monitoring stopped")


def _expiry(claims: dict) -> datetime:
    return datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc)
