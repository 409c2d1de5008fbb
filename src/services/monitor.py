"""
src/services/monitor.py — The monitor cycle: vouches → activities → reviews → alerts.

run_cycle() walks every vouched relation, ingests the reviews and slashes it
has received, and raises an alert (plus a pending defense) for each new
negative one. Ingestion is idempotent on the Ethos activity id, so
re-listing the same activities in later cycles is harmless.

Only one cycle runs at a time; a trigger that arrives while a cycle is in
flight returns immediately with "Cycle already running".
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from config import settings
from database import AsyncSessionLocal
from models import AlertType, Relation
from src.integrations.ethos_client import EthosClient, profile_id_to_userkey
from src.services import store
from src.services.activity_normalizer import SLASH, NormalizedActivity, normalize_activity
from src.services.alert_dispatcher import (
    AlertDispatcher,
    AlertPayload,
    AutoDefenseProposal,
    PartyInfo,
)
from src.services.defense import suggest_defense

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "Cycle already running"


# ─────────────────────────────────────────────
# Result types
# ─────────────────────────────────────────────

@dataclass
class CycleResult:
    relations_checked: int = 0
    reviews_found: int = 0
    new_negative: int = 0
    alerts_sent: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AutoDefenseConfig:
    enabled: bool = True
    require_confirm: bool = True
    default_score: int = 3

    @classmethod
    def from_settings(cls) -> "AutoDefenseConfig":
        return cls(
            enabled=settings.auto_defense_enabled,
            require_confirm=settings.auto_defense_require_confirm,
            default_score=settings.auto_defense_default_score,
        )


# ─────────────────────────────────────────────
# Monitor
# ─────────────────────────────────────────────

class MonitorService:
    """Runs monitor cycles for the operator identified by `user_key`."""

    def __init__(
        self,
        client: EthosClient,
        dispatcher: AlertDispatcher,
        user_key: str | None = None,
        session_factory=AsyncSessionLocal,
        auto_defense: AutoDefenseConfig | None = None,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.user_key = user_key or settings.ethos_user_key
        self.auto_defense = auto_defense or AutoDefenseConfig.from_settings()
        self._session_factory = session_factory
        self._running = False
        self.last_run_at: datetime | None = None
        self.last_result: CycleResult | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "auto_defense_enabled": self.auto_defense.enabled,
            "auto_defense_require_confirm": self.auto_defense.require_confirm,
            "auto_defense_default_score": self.auto_defense.default_score,
        }

    # ── Cycle ─────────────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleResult:
        """Run one full monitor cycle. Never raises.

        A call made while another cycle is running returns at once with the
        ALREADY_RUNNING error.
        """
        if self._running:
            logger.warning("Monitor cycle already running, skipping")
            return CycleResult(errors=[ALREADY_RUNNING])
        self._running = True

        t0 = time.perf_counter()
        cycle_start = datetime.now(timezone.utc)
        result = CycleResult()
        try:
            logger.info("Starting monitor cycle")
            try:
                vouches = await self.client.get_vouches(self.user_key)
                logger.info("Found %d relations to monitor", len(vouches))

                for vouch in vouches:
                    try:
                        await self._process_relation(vouch, result, cycle_start)
                    except Exception as exc:
                        msg = f"Error processing relation {vouch.get('subjectProfileId')}: {exc}"
                        logger.error(msg)
                        result.errors.append(msg)
            except Exception as exc:
                logger.error("Monitor cycle failed: %s", exc)
                result.errors.append(f"Cycle failed: {exc}")

            result.duration_ms = int((time.perf_counter() - t0) * 1000)
            self.last_run_at = datetime.now(timezone.utc)
            self.last_result = result

            try:
                async with self._session_factory() as db:
                    await store.log_monitor_run(
                        db,
                        relations_checked=result.relations_checked,
                        reviews_found=result.reviews_found,
                        new_negative=result.new_negative,
                        alerts_sent=result.alerts_sent,
                        errors=result.errors,
                        duration_ms=result.duration_ms,
                    )
                    await db.commit()
            except SQLAlchemyError as exc:
                logger.error("Failed to write monitor log: %s", exc)

            logger.info(
                "Monitor cycle completed in %dms: %d relations, %d new negative, %d alerts, %d errors",
                result.duration_ms, result.relations_checked, result.new_negative,
                result.alerts_sent, len(result.errors),
            )
        finally:
            self._running = False

        return result

    # ── Relations ─────────────────────────────────────────────────────────────

    async def _resolve_profile(self, vouch: dict, userkey: str) -> dict | None:
        """Name / address / avatar for a vouch subject, or None without an address."""
        profile: dict = {}
        subject = vouch.get("subjectUser")
        if isinstance(subject, dict):
            address_key = next(
                (k for k in subject.get("userkeys") or [] if isinstance(k, str) and k.startswith("address:")),
                None,
            )
            profile = {
                "name": subject.get("displayName") or subject.get("username"),
                "address": subject.get("primaryAddress") or (address_key[len("address:"):] if address_key else None),
                "avatar": subject.get("avatarUrl"),
            }

        if not profile.get("address"):
            fetched = await self.client.get_profile(userkey)
            if not fetched:
                return None
            profile = {
                "name": fetched.get("name") or fetched.get("displayName") or fetched.get("username"),
                "address": fetched.get("primaryAddress"),
                "avatar": fetched.get("avatar") or fetched.get("avatarUrl"),
            }

        return profile if profile.get("address") else None

    async def _save_relation(self, vouch: dict, userkey: str, profile: dict) -> Relation:
        async with self._session_factory() as db:
            relation = await store.upsert_relation(
                db,
                relation_id=str(vouch.get("id") or vouch["subjectProfileId"]),
                userkey=userkey,
                address=profile["address"],
                name=profile.get("name"),
                avatar_url=profile.get("avatar"),
            )
            await db.commit()
        return relation

    async def refresh_relations(self) -> dict:
        """Re-sync relation profiles from Ethos without ingesting activities."""
        vouches = await self.client.get_vouches(self.user_key)
        updated = 0
        for vouch in vouches:
            userkey = profile_id_to_userkey(vouch["subjectProfileId"])
            profile = await self._resolve_profile(vouch, userkey)
            if profile is None:
                continue
            await self._save_relation(vouch, userkey, profile)
            updated += 1
        logger.info("Relations refreshed: %d of %d updated", updated, len(vouches))
        return {"total": len(vouches), "updated": updated}

    async def _process_relation(self, vouch: dict, result: CycleResult, cycle_start: datetime) -> None:
        subject_profile_id = vouch["subjectProfileId"]
        userkey = profile_id_to_userkey(subject_profile_id)
        result.relations_checked += 1

        profile = await self._resolve_profile(vouch, userkey)
        if profile is None:
            logger.info("Skipping relation %s — no address resolved", userkey)
            return

        relation = await self._save_relation(vouch, userkey, profile)

        activities = await self.client.list_received_activities(userkey, types=("review", SLASH))
        result.reviews_found += len(activities)

        for activity in activities:
            if not isinstance(activity, dict):
                continue
            try:
                await self._process_activity(activity, relation, subject_profile_id, result, cycle_start)
            except Exception as exc:
                msg = f"Error processing activity for {userkey}: {exc}"
                logger.error(msg)
                result.errors.append(msg)

    # ── Activities ────────────────────────────────────────────────────────────

    async def _process_activity(
        self,
        raw: dict,
        relation: Relation,
        subject_profile_id: int,
        result: CycleResult,
        cycle_start: datetime,
    ) -> None:
        activity = normalize_activity(raw, now=cycle_start)

        async with self._session_factory() as db:
            if await store.review_exists(db, activity.activity_id):
                return

            review = await store.create_review(db, relation.id, activity)
            await db.commit()

            if not activity.is_negative:
                return

            result.new_negative += 1
            payload = self._build_payload(activity, relation, subject_profile_id)

            alert_ids = self.dispatcher.new_alert_ids()
            delivered = await self.dispatcher.send_alert(payload, alert_ids)
            stored_alert_ids = []
            for channel, message_id in delivered.items():
                await store.create_alert(
                    db,
                    alert_id=alert_ids[channel],
                    review_id=review.id,
                    relation_id=relation.id,
                    alert_type=payload.type.value,
                    channel=channel,
                    message_id=message_id,
                )
                stored_alert_ids.append(alert_ids[channel])
                result.alerts_sent += 1

            if payload.auto_defense is not None:
                await store.create_defense(
                    db,
                    review_id=review.id,
                    target_key=relation.userkey,
                    score=payload.auto_defense.suggested_score,
                    comment=payload.auto_defense.suggested_comment,
                )

            await store.mark_review_alerted(db, review.id)
            await db.commit()

        # Without required confirmation the defense is posted right away,
        # correlated to the first stored alert
        proposal = payload.auto_defense
        if proposal is not None and not proposal.require_confirm and stored_alert_ids:
            outcome = await self.dispatcher.defense_service.execute_defense(stored_alert_ids[0], review.id)
            if not outcome.success:
                msg = f"Auto-defense for {review.id} failed: {outcome.detail}"
                logger.error(msg)
                result.errors.append(msg)

    def _build_payload(
        self, activity: NormalizedActivity, relation: Relation, subject_profile_id: int
    ) -> AlertPayload:
        proposal = None
        if self.auto_defense.enabled:
            suggestion = suggest_defense(self.auto_defense.default_score)
            proposal = AutoDefenseProposal(
                require_confirm=self.auto_defense.require_confirm,
                suggested_score=suggestion.score,
                suggested_comment=suggestion.message,
            )

        return AlertPayload(
            type=AlertType.SLASH if activity.activity_type == SLASH else AlertType.NEGATIVE_REVIEW,
            target=PartyInfo(
                name=relation.name,
                address=relation.address,
                profile_id=int(subject_profile_id),
                profile_url=self.client.profile_url(relation.address),
            ),
            attacker=PartyInfo(
                name=activity.author_name,
                address=activity.author_address,
                profile_id=activity.author_profile_id,
            ),
            score=activity.score,
            comment=activity.comment or None,
            timestamp=datetime.now(timezone.utc),
            review_id=activity.review_id,
            relation_id=relation.id,
            auto_defense=proposal,
        )
