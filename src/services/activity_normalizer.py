"""
src/services/activity_normalizer.py — Turn raw Ethos activity payloads into typed records.

Ethos reports the same fields in several shapes (score as a number or as
"negative" / "neutral" / "positive", the event time in one of three optional
fields). Everything downstream works on NormalizedActivity only.

Pure functions, no I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

# Values below this are Unix seconds, otherwise milliseconds
_SECONDS_THRESHOLD = 10_000_000_000

_SCORE_WORDS = {
    "negative": -1,
    "neutral": 0,
    "positive": 1,
}

SLASH = "slash"
REVIEW = "review"


@dataclass(frozen=True)
class NormalizedActivity:
    activity_type: str
    activity_id: str
    review_id: str
    score: int
    is_negative: bool
    comment: str
    author_key: str
    author_name: str
    author_address: str | None
    author_profile_id: int | None
    created_at: datetime


# ─────────────────────────────────────────────
# Field rules
# ─────────────────────────────────────────────

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_score(raw: Any) -> int:
    """Unify a score to a signed int. Unknown strings and missing values are 0."""
    if _is_number(raw):
        return int(raw)
    if isinstance(raw, str):
        return _SCORE_WORDS.get(raw.strip().lower(), 0)
    return 0


def is_negative(score: int, activity_type: str) -> bool:
    """A slash is always negative, whatever score it carries."""
    return score < 0 or activity_type == SLASH


def _from_epoch(value: float) -> datetime:
    ms = value * 1000 if value < _SECONDS_THRESHOLD else value
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_timestamp(activity: dict, data: dict, now: datetime) -> datetime:
    """Resolve the event time.

    Order: numeric `timestamp`, ISO `createdAt`, numeric `data.createdAt`,
    then `now`.
    """
    ts = activity.get("timestamp")
    if _is_number(ts) and ts > 0:
        try:
            return _from_epoch(ts)
        except (OverflowError, OSError, ValueError):
            pass

    created = activity.get("createdAt")
    if isinstance(created, str) and created:
        parsed = _parse_iso(created)
        if parsed is not None:
            return parsed

    embedded = data.get("createdAt")
    if isinstance(embedded, str):
        try:
            embedded = float(embedded)
        except ValueError:
            embedded = None
    if _is_number(embedded) and embedded > 0:
        try:
            return _from_epoch(embedded)
        except (OverflowError, OSError, ValueError):
            pass

    return now


def resolve_activity_id(activity: dict, data: dict, now: datetime) -> str:
    activity_id = data.get("id")
    if activity_id is None or activity_id == "":
        activity_id = activity.get("id")
    if activity_id is None or activity_id == "":
        return f"{activity.get('type') or REVIEW}_{int(now.timestamp() * 1000)}"
    return str(activity_id)


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

def normalize_activity(activity: dict, now: datetime | None = None) -> NormalizedActivity:
    """Normalise one received-activity payload. Never raises on odd shapes.

    `now` is the ingestion instant used for every fallback; pass the cycle
    start so fallbacks stay consistent within a cycle.
    """
    now = now or datetime.now(timezone.utc)
    data = activity.get("data") if isinstance(activity.get("data"), dict) else {}
    author = activity.get("author") if isinstance(activity.get("author"), dict) else {}

    activity_type = str(activity.get("type") or REVIEW)
    activity_id = resolve_activity_id(activity, data, now)
    score = normalize_score(data.get("score"))

    author_profile_id = author.get("profileId")
    if _is_number(author_profile_id):
        author_key = f"profileId:{int(author_profile_id)}"
    else:
        author_profile_id = None
        author_key = author.get("userkey") or author.get("primaryAddress") or "unknown"
    author_name = author.get("name") or author.get("username") or "Unknown"

    return NormalizedActivity(
        activity_type=activity_type,
        activity_id=activity_id,
        review_id=f"{activity_type}_{activity_id}",
        score=score,
        is_negative=is_negative(score, activity_type),
        comment=str(data.get("comment") or ""),
        author_key=str(author_key),
        author_name=str(author_name),
        author_address=author.get("primaryAddress"),
        author_profile_id=int(author_profile_id) if author_profile_id is not None else None,
        created_at=normalize_timestamp(activity, data, now),
    )
