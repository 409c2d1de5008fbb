"""
config.py — Application configuration.

Every setting comes from the environment (or .env). Only the database URL
and the frontend URL have working defaults for local runs; Ethos, Telegram
and Discord credentials are optional and simply disable their feature when
left empty.
"""

import logging
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central configuration for Ethos Monitor.

    All fields map 1-to-1 to environment variables (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ─────────────────────────────────────────────
    # Application
    # ─────────────────────────────────────────────
    app_name: str = "Ethos Monitor"
    app_version: str = "1.0.0"
    environment: str = "development"
    debug: bool = False
    frontend_url: str = "http://localhost:3000"  # dashboard links in alerts
    # Public HTTPS URL used for the Telegram webhook.
    # Development: ngrok http 8000 → copy the https URL
    api_base_url: str = "http://localhost:8000"

    # ─────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./ethos_monitor.db"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800  # recycle connections every 30 min

    # ─────────────────────────────────────────────
    # Ethos network
    # ─────────────────────────────────────────────
    ethos_api_url: str = "https://api.ethos.network"
    ethos_app_url: str = "https://app.ethos.network"
    ethos_user_key: str = ""          # profileId:<n> of the operator
    ethos_privy_token: str = ""       # bearer session token (privy-token cookie)
    ethos_client_id: str = "ethos-monitor@1.0.0"
    ethos_timeout_seconds: float = 30.0
    ethos_activity_page_size: int = 50
    ethos_max_activity_pages: int = 4

    # ─────────────────────────────────────────────
    # Telegram
    # ─────────────────────────────────────────────
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_webhook_secret: str = ""  # echoed by Telegram in X-Telegram-Bot-Api-Secret-Token

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id)

    # ─────────────────────────────────────────────
    # Discord
    # ─────────────────────────────────────────────
    discord_webhook_url: str = ""

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_webhook_url)

    # ─────────────────────────────────────────────
    # Scheduler
    # ─────────────────────────────────────────────
    monitor_interval_minutes: int = 5
    monitor_warmup_seconds: float = 5.0
    alert_expiry_hours: int = 72      # PENDING alerts older than this become EXPIRED
    token_check_interval_seconds: int = 300

    # ─────────────────────────────────────────────
    # Auto-defense
    # ─────────────────────────────────────────────
    auto_defense_enabled: bool = True
    auto_defense_require_confirm: bool = True
    auto_defense_default_score: int = 3

    # ─────────────────────────────────────────────
    # Encryption
    # ─────────────────────────────────────────────
    field_encryption_key: str = ""  # Fernet key for the persisted session token

    # ─────────────────────────────────────────────
    # Monitoring
    # ─────────────────────────────────────────────
    sentry_dsn: str = ""

    # ─────────────────────────────────────────────
    # CORS
    # ─────────────────────────────────────────────
    allowed_origins: str = "http://localhost:3000"

    # ─────────────────────────────────────────────
    # Rate Limiting
    # ─────────────────────────────────────────────
    rate_limit_general: str = "120/minute"
    rate_limit_monitor_run: str = "6/minute"
    rate_limit_defend: str = "10/minute"

    # ─────────────────────────────────────────────
    # Validators
    # ─────────────────────────────────────────────

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("monitor_interval_minutes")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("monitor_interval_minutes must be at least 1")
        return v

    @field_validator("auto_defense_default_score")
    @classmethod
    def validate_default_score(cls, v: int) -> int:
        if not -5 <= v <= 5:
            raise ValueError("auto_defense_default_score must be between -5 and 5")
        return v

    # ─────────────────────────────────────────────
    # Computed properties
    # ─────────────────────────────────────────────

    @property
    def allowed_origins_list(self) -> List[str]:
        """Return CORS origins as a list."""
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Return a cached singleton Settings instance."""
    _settings = Settings()
    logger.info(
        "Config loaded — env=%s debug=%s", _settings.environment, _settings.debug
    )
    return _settings


settings = get_settings()
