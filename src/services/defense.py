"""
src/services/defense.py — Counter-review suggestions and the defense lifecycle.

A defense is a positive review posted back to Ethos in response to a
negative one. Lifecycle:

    PENDING ──► CONFIRMED ──► POSTED
       │            └───────► FAILED
       ├──────────────────────► POSTED   (operator-authored custom defense)
       └──────────────────────► FAILED

POSTED and FAILED are terminal. Failed submissions are recorded and never
retried automatically.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from database import AsyncSessionLocal
from models import AlertStatus, Defense, DefenseStatus
from src.integrations.ethos_client import EthosClient, SubmitResult
from src.services import store
from src.services.credential_watchdog import CredentialWatchdog

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Templates
# ─────────────────────────────────────────────

DEFENSE_TEMPLATES: dict[int, tuple[str, ...]] = {
    3: (
        "Trusted and reliable community member. I vouch for their credibility.",
        "Known for integrity and positive contributions to the ecosystem.",
        "Solid reputation backed by consistent positive interactions.",
        "A valued member of the community with proven trustworthiness.",
    ),
    2: (
        "Positive experience with this community member.",
        "Reliable and trustworthy in my interactions.",
        "Good standing member of the community.",
    ),
}
DEFAULT_BUCKET = 3


@dataclass(frozen=True)
class DefenseSuggestion:
    score: int
    message: str


def suggest_defense(requested_score: int | None = None) -> DefenseSuggestion:
    """Pick a random message from the bucket for `requested_score`.

    Scores without a bucket fall back to the default bucket, and the returned
    score is always the bucket's own score.
    """
    bucket = requested_score if requested_score in DEFENSE_TEMPLATES else DEFAULT_BUCKET
    return DefenseSuggestion(score=bucket, message=random.choice(DEFENSE_TEMPLATES[bucket]))


# ─────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────

_TRANSITIONS: dict[DefenseStatus, set[DefenseStatus]] = {
    DefenseStatus.PENDING: {DefenseStatus.CONFIRMED, DefenseStatus.POSTED, DefenseStatus.FAILED},
    DefenseStatus.CONFIRMED: {DefenseStatus.POSTED, DefenseStatus.FAILED},
    DefenseStatus.POSTED: set(),
    DefenseStatus.FAILED: set(),
}


class InvalidDefenseTransition(Exception):
    def __init__(self, current: str, target: DefenseStatus):
        super().__init__(f"Cannot move defense from {current} to {target.value}")
        self.current = current
        self.target = target


def can_transition(current: str, target: DefenseStatus) -> bool:
    try:
        return target in _TRANSITIONS[DefenseStatus(current)]
    except ValueError:
        return False


def transition(
    defense: Defense,
    target: DefenseStatus,
    *,
    ethos_review_id: str | None = None,
    tx_hash: str | None = None,
    error: str | None = None,
) -> Defense:
    """Move `defense` to `target`, or raise before touching any field."""
    if not can_transition(defense.status, target):
        raise InvalidDefenseTransition(defense.status, target)

    defense.status = target.value
    if target is DefenseStatus.POSTED:
        defense.posted_at = datetime.now(timezone.utc)
        defense.ethos_review_id = ethos_review_id
        defense.tx_hash = tx_hash
    elif target is DefenseStatus.FAILED:
        defense.error = error
    return defense


# ─────────────────────────────────────────────
# Outcomes
# ─────────────────────────────────────────────

class DefenseError(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
    SUBMISSION_FAILED = "SUBMISSION_FAILED"


@dataclass
class DefenseOutcome:
    success: bool
    error: DefenseError | None = None
    detail: str | None = None
    defense_id: str | None = None
    ethos_review_id: str | None = None
    tx_hash: str | None = None

    @classmethod
    def failed(cls, error: DefenseError, detail: str, defense_id: str | None = None) -> "DefenseOutcome":
        return cls(success=False, error=error, detail=detail, defense_id=defense_id)


CREDENTIAL_EXPIRED_DETAIL = (
    "Ethos session token is expired — refresh it via POST /api/token/update before posting a defense"
)


# ─────────────────────────────────────────────
# Service
# ─────────────────────────────────────────────

class DefenseService:
    """Executes defenses against Ethos and records every state change."""

    def __init__(
        self,
        client: EthosClient,
        watchdog: CredentialWatchdog,
        session_factory=AsyncSessionLocal,
    ):
        self.client = client
        self.watchdog = watchdog
        self._session_factory = session_factory
        self._in_flight: set[str] = set()

    async def execute_defense(self, alert_id: str, review_id: str) -> DefenseOutcome:
        """Confirm and submit the active defense for `review_id`.

        The defense is committed as CONFIRMED before the network call, so an
        interrupted submission stays visible rather than silently lost.
        """
        if review_id in self._in_flight:
            return DefenseOutcome.failed(
                DefenseError.INVALID_STATE, f"Defense for {review_id} is already being submitted"
            )
        self._in_flight.add(review_id)
        try:
            return await self._execute(alert_id, review_id)
        finally:
            self._in_flight.discard(review_id)

    async def _execute(self, alert_id: str, review_id: str) -> DefenseOutcome:
        async with self._session_factory() as db:
            alert = await store.get_alert(db, alert_id)
            if alert is None:
                logger.error("Alert not found: %s", alert_id)
                return DefenseOutcome.failed(DefenseError.NOT_FOUND, f"Alert {alert_id} not found")

            defense = await store.get_active_defense(db, review_id)
            if defense is None:
                logger.error("No pending defense for review: %s", review_id)
                return DefenseOutcome.failed(
                    DefenseError.NOT_FOUND, f"No pending defense for review {review_id}"
                )

            if self.watchdog.is_expired():
                logger.warning("Defense for %s blocked — session token expired", review_id)
                return DefenseOutcome.failed(
                    DefenseError.CREDENTIAL_EXPIRED, CREDENTIAL_EXPIRED_DETAIL, defense.id
                )

            # A CONFIRMED defense left by an interrupted attempt is resubmitted as is
            if defense.status == DefenseStatus.PENDING.value:
                transition(defense, DefenseStatus.CONFIRMED)
                await db.commit()

            try:
                result = await self.client.submit_review(defense.target_key, defense.score, defense.comment)
            except Exception as exc:
                logger.exception("Defense submission raised for %s", defense.target_key)
                result = SubmitResult(success=False, error=str(exc) or type(exc).__name__)

            if result.success:
                transition(
                    defense,
                    DefenseStatus.POSTED,
                    ethos_review_id=result.review_id,
                    tx_hash=result.tx_hash,
                )
                await store.set_alert_status(db, alert, AlertStatus.CONFIRMED)
                await db.commit()
                logger.info("Defense posted for %s (review %s)", defense.target_key, review_id)
                return _posted(defense.id, result)

            transition(defense, DefenseStatus.FAILED, error=result.error)
            await db.commit()
            logger.error("Defense failed for %s: %s", defense.target_key, result.error)
            return DefenseOutcome.failed(
                DefenseError.SUBMISSION_FAILED, result.error or "Submission failed", defense.id
            )

    async def post_custom_defense(
        self,
        target_key: str,
        score: int,
        comment: str,
        review_id: str | None = None,
    ) -> DefenseOutcome:
        """Submit an operator-written review.

        When `review_id` has an active defense, that row becomes POSTED; no
        new defense row is created.
        """
        if self.watchdog.is_expired():
            return DefenseOutcome.failed(DefenseError.CREDENTIAL_EXPIRED, CREDENTIAL_EXPIRED_DETAIL)

        result = await self.client.submit_review(target_key, score, comment)
        if not result.success:
            logger.error("Custom defense failed for %s: %s", target_key, result.error)
            return DefenseOutcome.failed(DefenseError.SUBMISSION_FAILED, result.error or "Submission failed")

        defense_id = None
        if review_id:
            async with self._session_factory() as db:
                defense = await store.get_active_defense(db, review_id)
                if defense is not None:
                    transition(
                        defense,
                        DefenseStatus.POSTED,
                        ethos_review_id=result.review_id,
                        tx_hash=result.tx_hash,
                    )
                    await db.commit()
                    defense_id = defense.id

        logger.info("Custom defense posted for %s: score=%d", target_key, score)
        return _posted(defense_id, result)


def _posted(defense_id: str | None, result: SubmitResult) -> DefenseOutcome:
    return DefenseOutcome(
        success=True,
        defense_id=defense_id,
        ethos_review_id=result.review_id,
        tx_hash=result.tx_hash,
    )
