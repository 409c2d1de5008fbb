"""
tests/test_activity_normalizer.py — Unit tests for raw Ethos activity normalisation.

Run:
    pytest tests/test_activity_normalizer.py -v
"""

from datetime import datetime, timezone

import pytest

from src.services.activity_normalizer import (
    is_negative,
    normalize_activity,
    normalize_score,
    normalize_timestamp,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ─────────────────────────────────────────────────────────────────────────────
# Scores
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw, expected", [
    (-1, -1),
    (2, 2),
    (1.0, 1),
    ("negative", -1),
    ("Neutral", 0),
    (" positive ", 1),
    ("excellent", 0),
    (None, 0),
    (True, 0),
])
def test_normalize_score(raw, expected):
    assert normalize_score(raw) == expected


def test_slash_is_negative_even_with_positive_score():
    assert is_negative(0, "slash")
    assert is_negative(1, "slash")
    assert is_negative(-1, "review")
    assert not is_negative(0, "review")


# ─────────────────────────────────────────────────────────────────────────────
# Timestamps
# ─────────────────────────────────────────────────────────────────────────────

def test_timestamp_seconds_and_millis_agree():
    secs = normalize_timestamp({"timestamp": 1_700_000_000}, {}, NOW)
    millis = normalize_timestamp({"timestamp": 1_700_000_000_000}, {}, NOW)
    assert secs == millis == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_timestamp_falls_back_to_iso_created_at():
    ts = normalize_timestamp({"createdAt": "2024-05-01T10:00:00Z"}, {}, NOW)
    assert ts == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_timestamp_uses_embedded_numeric_string():
    ts = normalize_timestamp({}, {"createdAt": "1700000000"}, NOW)
    assert ts == datetime.fromtimestamp(1_700_000_000, tz=timezone.utc)


def test_timestamp_defaults_to_now_on_garbage():
    assert normalize_timestamp({"createdAt": "yesterday"}, {"createdAt": "soon"}, NOW) == NOW


# ─────────────────────────────────────────────────────────────────────────────
# Whole activities
# ─────────────────────────────────────────────────────────────────────────────

def test_normalize_review_with_profile_author():
    activity = {
        "type": "review",
        "timestamp": 1_700_000_000,
        "data": {"id": 991, "score": "negative", "comment": "rugged me"},
        "author": {"profileId": 7, "name": "Mallory", "primaryAddress": "0xbad"},
    }
    result = normalize_activity(activity, now=NOW)

    assert result.activity_id == "991"
    assert result.review_id == "review_991"
    assert result.score == -1
    assert result.is_negative
    assert result.comment == "rugged me"
    assert result.author_key == "profileId:7"
    assert result.author_profile_id == 7
    assert result.author_address == "0xbad"


def test_normalize_slash_without_author_profile():
    activity = {
        "type": "slash",
        "id": "s-5",
        "data": {"score": 0},
        "author": {"userkey": "address:0xfeed", "username": "anon"},
    }
    result = normalize_activity(activity, now=NOW)

    assert result.activity_id == "s-5"
    assert result.review_id == "slash_s-5"
    assert result.is_negative
    assert result.author_key == "address:0xfeed"
    assert result.author_name == "anon"
    assert result.author_profile_id is None
    assert result.created_at == NOW


def test_normalize_tolerates_missing_sections():
    result = normalize_activity({}, now=NOW)

    assert result.activity_type == "review"
    assert result.activity_id == f"review_{int(NOW.timestamp() * 1000)}"
    assert result.score == 0
    assert not result.is_negative
    assert result.author_key == "unknown"
    assert result.author_name == "Unknown"
    assert result.comment == ""
