"""
src/integrations/ethos_client.py — Ethos network REST client.

Read endpoints (vouches, activities, profiles, scores) retry transient
failures with exponential backoff. Review submission is a write and is never
retried; it returns a SubmitResult instead of raising.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────
# Retry helper
# ─────────────────────────────────────────────

_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds


async def _with_retry(coro_fn, *args, **kwargs) -> Any:
    """Execute an async callable with exponential backoff on transient errors.

    Retries on: httpx.TimeoutException, httpx.NetworkError, HTTP 429 / 5xx.
    """
    for attempt in range(1, _MAX_RETRIES + 1):
        try:
            return await coro_fn(*args, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            if attempt == _MAX_RETRIES:
                raise
            delay = _RETRY_BASE_DELAY * (2 ** (attempt - 1))
            logger.warning("Network error on attempt %d/%d — retry in %.1fs: %s", attempt, _MAX_RETRIES, delay, exc)
            await asyncio.sleep(delay)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code in {429, 500, 502, 503, 504}:
                if attempt == _MAX_RETRIES:
                    raise
                delay = _RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning("HTTP %d on attempt %d/%d — retry in %.1fs", exc.response.status_code, attempt, _MAX_RETRIES, delay)
                await asyncio.sleep(delay)
            else:
                raise


# ─────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────

@dataclass
class SubmitResult:
    """Outcome of a review submission."""

    success: bool
    review_id: str | None = None
    tx_hash: str | None = None
    error: str | None = None


# ─────────────────────────────────────────────
# Userkey helpers
# ─────────────────────────────────────────────

def profile_id_to_userkey(profile_id: int | str) -> str:
    return f"profileId:{profile_id}"


def address_to_userkey(address: str) -> str:
    return f"address:{address}"


def extract_profile_id(userkey: str) -> int | None:
    """Return the numeric id of a `profileId:<n>` userkey, else None."""
    if not userkey.startswith("profileId:"):
        return None
    try:
        return int(userkey.split(":", 1)[1])
    except ValueError:
        return None


# ─────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────

class EthosClient:
    """Async client for the Ethos v2 API.

    Docs: https://developers.ethos.network/
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        client_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.ethos_api_url
        headers = {
            "Content-Type": "application/json",
            "X-Ethos-Client": client_id or settings.ethos_client_id,
        }
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or settings.ethos_timeout_seconds,
            transport=transport,
        )
        if token:
            self.set_token(token)

    def set_token(self, token: str) -> None:
        """Swap the bearer credential used for every subsequent request."""
        self._http.headers["Authorization"] = f"Bearer {token}"
        logger.info("Ethos client credential updated")

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Low-level ─────────────────────────────────────────────────────────────

    async def _get(self, path: str, **kwargs) -> Any:
        resp = await self._http.get(path, **kwargs)
        resp.raise_for_status()
        return resp.json()

    async def _post(self, path: str, body: dict) -> Any:
        resp = await self._http.post(path, json=body)
        resp.raise_for_status()
        return resp.json()

    # ── Relationships ────────────────────────────────────────────────────────

    async def get_vouches(self, userkey: str, limit: int = 100) -> list[dict]:
        """Return the vouches authored by `userkey` (the monitored relations).

        Only `profileId:<n>` userkeys are supported by the vouches endpoint;
        any other format yields an empty list.
        """
        profile_id = extract_profile_id(userkey)
        if profile_id is None:
            logger.warning("Userkey format not supported for vouches: %s", userkey)
            return []

        data = await _with_retry(
            self._post, "/api/v2/vouches",
            {"authorProfileIds": [profile_id], "limit": limit},
        )
        vouches = _values(data)
        logger.info("Found %d vouches for profileId %s", len(vouches), profile_id)
        return [v for v in vouches if isinstance(v, dict) and v.get("subjectProfileId") is not None]

    # ── Activities ───────────────────────────────────────────────────────────

    async def get_received_activities(
        self,
        userkey: str,
        types: tuple[str, ...] = ("review", "slash"),
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        """Return one page of activities received by `userkey`."""
        data = await _with_retry(
            self._post, "/api/v2/activities/profile/received",
            {
                "userkey": userkey,
                "types": list(types),
                "pagination": {"limit": limit, "offset": offset},
            },
        )
        activities = _values(data, "activities")
        if not isinstance(activities, list):
            logger.warning("Unexpected activities response for %s: %s", userkey, type(activities).__name__)
            return []
        return activities

    async def list_received_activities(
        self,
        userkey: str,
        types: tuple[str, ...] = ("review", "slash"),
        page_size: int | None = None,
        max_pages: int | None = None,
    ) -> list[dict]:
        """Collect received activities across pages until a short page."""
        page_size = page_size or settings.ethos_activity_page_size
        max_pages = max_pages or settings.ethos_max_activity_pages

        collected: list[dict] = []
        for page in range(max_pages):
            batch = await self.get_received_activities(
                userkey, types, limit=page_size, offset=page * page_size
            )
            collected.extend(batch)
            if len(batch) < page_size:
                break
        return collected

    # ── Profiles & scores ────────────────────────────────────────────────────

    async def get_profile(self, userkey: str) -> dict | None:
        """Look up a profile; returns None when Ethos reports 404."""
        if userkey.startswith("address:") or userkey.startswith("0x"):
            address = userkey.replace("address:", "", 1)
            try:
                return await _with_retry(
                    self._get, f"/api/v2/user/by/ethos-everywhere-wallet/{address}"
                )
            except httpx.HTTPError as exc:
                logger.warning("Wallet lookup failed for %s, trying profiles endpoint: %s", address, exc)

        try:
            return await _with_retry(self._get, f"/api/v2/profiles/{quote(userkey, safe='')}")
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                return None
            raise

    async def get_score(self, userkey: str) -> dict | None:
        try:
            return await _with_retry(self._get, f"/api/v2/score/{quote(userkey, safe='')}")
        except httpx.HTTPError as exc:
            logger.error("Failed to get score for %s: %s", userkey, exc)
            return None

    # ── Writes ───────────────────────────────────────────────────────────────

    async def submit_review(self, target_userkey: str, score: int, comment: str) -> SubmitResult:
        """Post a review. Never retried; failures come back as SubmitResult(success=False)."""
        try:
            data = await self._post(
                "/api/v2/reviews",
                {"target": target_userkey, "score": score, "comment": comment},
            )
        except httpx.HTTPStatusError as exc:
            message = exc.response.text or str(exc)
            logger.error("Failed to post review for %s: HTTP %d %s",
                         target_userkey, exc.response.status_code, message[:200])
            return SubmitResult(success=False, error=message)
        except httpx.HTTPError as exc:
            logger.error("Failed to post review for %s: %s", target_userkey, exc)
            return SubmitResult(success=False, error=str(exc) or type(exc).__name__)
        except ValueError:
            # 2xx with an empty or non-JSON body: accepted, ids unknown
            logger.warning("Review posted for %s but the response had no JSON body", target_userkey)
            return SubmitResult(success=True)

        data = data if isinstance(data, dict) else {}
        review_id = data.get("id") or data.get("reviewId")
        logger.info("Review posted for %s: score=%d", target_userkey, score)
        return SubmitResult(
            success=True,
            review_id=str(review_id) if review_id is not None else None,
            tx_hash=data.get("txHash"),
        )

    # ── Misc ─────────────────────────────────────────────────────────────────

    def profile_url(self, address_or_profile_id: str | int) -> str:
        return f"{settings.ethos_app_url}/profile/{address_or_profile_id}"

    async def health_check(self) -> bool:
        try:
            resp = await self._http.get("/api/v2/apps", timeout=5.0)
            return resp.status_code == 200
        except httpx.HTTPError:
            return False


def _values(data: Any, fallback_key: str | None = None) -> Any:
    """Unwrap the `values` envelope Ethos uses for list endpoints."""
    if isinstance(data, dict):
        if "values" in data:
            return data["values"]
        if fallback_key and fallback_key in data:
            return data[fallback_key]
        return []
    return data or []
