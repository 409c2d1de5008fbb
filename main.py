"""
main.py — FastAPI application entry point for Ethos Monitor.

Wires together all middleware, routers, error handlers, and the monitoring
pipeline (Ethos client → monitor → alert channels → defenses).
Run with:  python -m uvicorn main:app --reload
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import sentry_sdk
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from config import settings
from database import AsyncSessionLocal, create_tables, dispose_engine
from routers import alerts, defend, health, monitor, relations, reviews, token
from routers import settings as settings_router
from routers.deps import limiter
from routers.telegram_webhooks import webhook_router as telegram_webhook_router
from src.integrations.discord_webhook import DiscordWebhookChannel
from src.integrations.ethos_client import EthosClient
from src.integrations.telegram_bot import TelegramAlertChannel
from src.services.alert_dispatcher import AlertDispatcher, NotificationChannel
from src.services.credential_watchdog import CredentialStatus, CredentialWatchdog
from src.services.defense import DefenseService
from src.services.monitor import MonitorService
from src.services.runtime_config import restore_toggles
from src.services.scheduler import CycleScheduler

# ─────────────────────────────────────────────
# Logging
# ─────────────────────────────────────────────

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
# httpx logs every Ethos poll at INFO
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Sentry
# ─────────────────────────────────────────────

def _init_sentry() -> None:
    dsn = settings.sentry_dsn
    if not dsn or dsn.startswith("https://your-sentry") or "project-id" in dsn:
        logger.info("Sentry not configured, monitor errors are only logged")
        return
    try:
        sentry_sdk.init(dsn=dsn, environment=settings.environment, traces_sample_rate=0.1)
    except Exception as exc:
        logger.warning("Sentry init failed (skipping): %s", exc)
        return
    logger.info("Sentry initialised for %s", settings.environment)


_init_sentry()


# ─────────────────────────────────────────────
# Middleware classes
# ─────────────────────────────────────────────

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Responses carry review data and credential status, so none are cacheable."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.update(_SECURITY_HEADERS)
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    # Polled by uptime checks and Telegram; logged at DEBUG only
    QUIET_PATHS = ("/health", "/webhooks/telegram")

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        path = request.url.path
        level = logging.DEBUG if path.startswith(self.QUIET_PATHS) else logging.INFO
        logger.log(
            level, "%s %s → %d (%.1fms)",
            request.method, path, response.status_code, elapsed_ms,
        )
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        return response


# ─────────────────────────────────────────────
# Pipeline wiring
# ─────────────────────────────────────────────

async def _build_telegram() -> TelegramAlertChannel | None:
    if not settings.telegram_enabled:
        logger.info("Telegram alerts disabled (TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID not set)")
        return None
    try:
        channel = TelegramAlertChannel(
            token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            frontend_url=settings.frontend_url,
            webhook_secret=settings.telegram_webhook_secret,
        )
        await channel.initialize()
        await channel.set_webhook(f"{settings.api_base_url}/webhooks/telegram")
        return channel
    except Exception as exc:
        logger.error("Telegram bot failed to start: %s", exc)
        return None


def _token_alert_callback(dispatcher: AlertDispatcher):
    async def notify(token_status: CredentialStatus) -> None:
        if token_status.is_expired:
            text = "🔴 Ethos session token EXPIRED. Defenses cannot be posted until it is updated."
        else:
            minutes = (token_status.expires_in or 0) // 60
            text = f"⚠️ Ethos session token expires in {minutes} minutes. Update it soon."
        await dispatcher.send_notification(text)

    return notify


# ─────────────────────────────────────────────
# Lifespan (startup / shutdown)
# ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run startup tasks before serving, cleanup after shutdown."""
    logger.info("Starting %s v%s (%s)", settings.app_name, settings.app_version, settings.environment)

    # 1. Initialise database tables
    await create_tables()

    # 2. Ethos client and session token
    if not settings.ethos_user_key:
        logger.warning("ETHOS_USER_KEY not set — monitor cycles will find no relations")
    client = EthosClient(token=settings.ethos_privy_token or None)
    watchdog = CredentialWatchdog(token=settings.ethos_privy_token or None, session_factory=AsyncSessionLocal)
    watchdog.add_listener(client.set_token)
    await watchdog.load_persisted()
    logger.info(watchdog.format_status())

    # 3. Alert channels
    telegram = await _build_telegram()
    channels: list[NotificationChannel] = []
    if telegram:
        channels.append(telegram)
    channels.append(
        DiscordWebhookChannel(
            webhook_url=settings.discord_webhook_url,
            frontend_url=settings.frontend_url,
            enabled=settings.discord_enabled,
        )
    )

    # 4. Defense, dispatch, monitor, scheduler
    defense_service = DefenseService(client, watchdog, session_factory=AsyncSessionLocal)
    dispatcher = AlertDispatcher(channels, defense_service, session_factory=AsyncSessionLocal)
    monitor_service = MonitorService(client, dispatcher, session_factory=AsyncSessionLocal)
    await restore_toggles(AsyncSessionLocal, monitor_service, dispatcher)
    scheduler = CycleScheduler(monitor_service, session_factory=AsyncSessionLocal)

    if telegram:
        telegram.set_status_provider(watchdog.format_status)

    app.state.ethos_client = client
    app.state.watchdog = watchdog
    app.state.defense_service = defense_service
    app.state.dispatcher = dispatcher
    app.state.monitor = monitor_service
    app.state.scheduler = scheduler
    app.state.telegram = telegram

    # 5. Background timers
    scheduler.start()
    watchdog.start_monitoring(_token_alert_callback(dispatcher))

    yield

    # ── Cleanup ──────────────────────────────────────────────────────────────

    scheduler.stop()
    watchdog.stop_monitoring()

    if telegram:
        try:
            await telegram.delete_webhook()
        except Exception as exc:
            logger.warning("Failed to delete Telegram webhook: %s", exc)

    await dispatcher.aclose()
    await client.aclose()
    await dispose_engine()
    logger.info("Shutting down %s", settings.app_name)


# ─────────────────────────────────────────────
# App Initialisation
# ─────────────────────────────────────────────

app = FastAPI(
    title="Ethos Monitor API",
    description="Reputation monitoring and defense for Ethos Network vouches",
    version=settings.app_version,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
    lifespan=lifespan,
)
app.state.limiter = limiter

# Starlette wraps in reverse order: the last one added runs first
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────
# Error Handlers
# ─────────────────────────────────────────────

def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "error": message, **extra})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    logger.warning("Rate limit hit on %s (%s)", request.url.path, exc.detail)
    return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Too many requests. Please slow down.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation failed", details=details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An internal server error occurred")


# ─────────────────────────────────────────────
# Routers
# ─────────────────────────────────────────────

for _module in (health, monitor, relations, reviews, alerts, defend, token, settings_router):
    app.include_router(_module.router)
app.include_router(telegram_webhook_router)


@app.get("/", include_in_schema=False)
async def root():
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
