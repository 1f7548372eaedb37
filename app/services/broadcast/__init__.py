"""
Broadcaster Factory

Provides a single entry point for obtaining the realtime broadcaster.

Usage:
    from app.services.broadcast import get_broadcaster

    broadcaster = get_broadcaster()
    await broadcaster.publish({"event": "order_update", "data": {...}})

Environment Switching:
    - ENV_MODE=development → MemoryBroadcaster (single instance)
    - ENV_MODE=staging     → RedisBroadcaster
    - ENV_MODE=production  → RedisBroadcaster
    BROADCAST_BACKEND=memory|redis overrides the mode-based choice.
"""

import logging
from functools import lru_cache

from app.core.config import get_settings
from app.services.broadcast.base import BaseBroadcaster, Deliver, Envelope
from app.services.broadcast.memory import MemoryBroadcaster
from app.services.broadcast.redis_pubsub import RedisBroadcaster

logger = logging.getLogger(__name__)


@lru_cache()
def get_broadcaster() -> BaseBroadcaster:
    """
    Get the configured broadcaster instance.

    The instance is cached so every publisher and the startup hook share
    the same backend.
    """
    settings = get_settings()

    if settings.use_redis_broadcast:
        logger.info(f"Broadcaster: Using RedisBroadcaster ({settings.env_mode.value} mode)")
        return RedisBroadcaster()

    logger.info("Broadcaster: Using MemoryBroadcaster (single instance)")
    return MemoryBroadcaster()


def reset_broadcaster() -> None:
    """Clear the cached broadcaster. The next call builds a new one."""
    get_broadcaster.cache_clear()
    logger.debug("Broadcaster cache cleared")


__all__ = [
    "get_broadcaster",
    "reset_broadcaster",
    "BaseBroadcaster",
    "Deliver",
    "Envelope",
    "MemoryBroadcaster",
    "RedisBroadcaster",
]
