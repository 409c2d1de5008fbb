"""
routers/token.py — Ethos session token status and rotation.

Endpoints:
    GET  /api/token/status        — Expiry and identity of the current token
    POST /api/token/update        — Swap in a new token
    GET  /api/token/instructions  — How to obtain a fresh token
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from config import settings
from routers.deps import get_watchdog
from schemas import TokenUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/token", tags=["Token"])


@router.get("/status")
async def token_status(watchdog=Depends(get_watchdog)):
    return {
        "status": "success",
        "data": {**watchdog.get_status().to_dict(), "formatted": watchdog.format_status()},
    }


@router.post("/update")
async def update_token(body: TokenUpdateRequest, watchdog=Depends(get_watchdog)):
    """Validate and install a new session token. The old one stays on failure."""
    result = await watchdog.update_token(body.token.strip())
    if not result.success:
        logger.warning("Token update rejected: %s", result.error.value)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error.value)

    return {
        "status": "success",
        "message": "Token updated",
        "data": {**result.status.to_dict(), "formatted": watchdog.format_status()},
    }


@router.get("/instructions")
async def token_instructions():
    return {
        "status": "success",
        "data": {
            "steps": [
                f"Open {settings.ethos_app_url} and sign in.",
                "Open the browser developer tools (F12).",
                "Go to Application → Cookies and select the Ethos site.",
                "Copy the value of the 'privy-token' cookie.",
                "Send it as {\"token\": \"...\"} to POST /api/token/update.",
            ],
            "note": "Session tokens last about one hour; alerts warn before expiry.",
        },
    }
