"""
routers/deps.py — Shared router dependencies.

Pipeline components are built once in main.py's lifespan and stored on
app.state; these helpers hand them to endpoints via Depends().
"""

from fastapi import HTTPException, Request, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from config import settings
from src.integrations.ethos_client import EthosClient
from src.services.alert_dispatcher import AlertDispatcher
from src.services.credential_watchdog import CredentialWatchdog
from src.services.defense import DefenseService
from src.services.monitor import MonitorService
from src.services.scheduler import CycleScheduler

# ─────────────────────────────────────────────
# Rate Limiter
# ─────────────────────────────────────────────

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit_general])


# ─────────────────────────────────────────────
# Components
# ─────────────────────────────────────────────

def _component(request: Request, name: str):
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up — try again shortly",
        )
    return component


def get_ethos_client(request: Request) -> EthosClient:
    return _component(request, "ethos_client")


def get_watchdog(request: Request) -> CredentialWatchdog:
    return _component(request, "watchdog")


def get_defense_service(request: Request) -> DefenseService:
    return _component(request, "defense_service")


def get_dispatcher(request: Request) -> AlertDispatcher:
    return _component(request, "dispatcher")


def get_monitor(request: Request) -> MonitorService:
    return _component(request, "monitor")


def get_scheduler(request: Request) -> CycleScheduler:
    return _component(request, "scheduler")
