"""
src/services/runtime_config.py — Operator toggles that survive restarts.

PATCH /api/settings changes auto-defense behaviour and channel switches at
runtime. The values are written to app_config so the next start picks them
up over the .env defaults.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.services import store
from src.services.alert_dispatcher import AlertDispatcher
from src.services.monitor import MonitorService

logger = logging.getLogger(__name__)

AUTO_DEFENSE_ENABLED = "auto_defense.enabled"
AUTO_DEFENSE_REQUIRE_CONFIRM = "auto_defense.require_confirm"
AUTO_DEFENSE_DEFAULT_SCORE = "auto_defense.default_score"
CHANNEL_PREFIX = "notifications."


def _to_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


async def save_toggles(
    db: AsyncSession,
    monitor: MonitorService,
    dispatcher: AlertDispatcher,
    auto_defense: dict | None = None,
    notifications: dict | None = None,
) -> None:
    """Apply the non-None values in place and persist them."""
    keys = {
        "enabled": AUTO_DEFENSE_ENABLED,
        "require_confirm": AUTO_DEFENSE_REQUIRE_CONFIRM,
        "default_score": AUTO_DEFENSE_DEFAULT_SCORE,
    }
    for field, value in (auto_defense or {}).items():
        if value is None or field not in keys:
            continue
        setattr(monitor.auto_defense, field, value)
        await store.set_config_value(db, keys[field], str(value).lower())

    for name, enabled in (notifications or {}).items():
        if enabled is None:
            continue
        channel = dispatcher.get_channel(name)
        if channel is None:
            continue
        channel.enabled = enabled
        await store.set_config_value(db, CHANNEL_PREFIX + name.lower(), str(enabled).lower())

    logger.info("Runtime settings updated: auto_defense=%s notifications=%s", auto_defense, notifications)


async def restore_toggles(session_factory, monitor: MonitorService, dispatcher: AlertDispatcher) -> None:
    """Overlay persisted toggles onto the freshly built components."""
    try:
        async with session_factory() as db:
            enabled = await store.get_config_value(db, AUTO_DEFENSE_ENABLED)
            require_confirm = await store.get_config_value(db, AUTO_DEFENSE_REQUIRE_CONFIRM)
            default_score = await store.get_config_value(db, AUTO_DEFENSE_DEFAULT_SCORE)
            channels = {
                ch: await store.get_config_value(db, CHANNEL_PREFIX + ch.channel.value.lower())
                for ch in dispatcher.channels
            }
    except SQLAlchemyError as exc:
        logger.warning("Could not load persisted settings: %s", exc)
        return

    if enabled is not None:
        monitor.auto_defense.enabled = _to_bool(enabled)
    if require_confirm is not None:
        monitor.auto_defense.require_confirm = _to_bool(require_confirm)
    if default_score is not None:
        try:
            monitor.auto_defense.default_score = int(default_score)
        except ValueError:
            logger.warning("Ignoring invalid persisted default score: %r", default_score)

    for channel, value in channels.items():
        # A channel without credentials stays off whatever was stored
        if value is not None and channel.configured:
            channel.enabled = _to_bool(value)
