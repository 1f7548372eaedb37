"""
In-Process Broadcaster

Used in development (ENV_MODE=development): a single instance serves
every connection, so publishing is a direct call into the local session
manager.
"""

import logging
from typing import Optional

from app.services.broadcast.base import BaseBroadcaster, Deliver, Envelope

logger = logging.getLogger(__name__)


class MemoryBroadcaster(BaseBroadcaster):
    """Delivers envelopes to the local session manager only."""

    def __init__(self):
        self._deliver: Optional[Deliver] = None

    @property
    def provider_name(self) -> str:
        return "memory"

    async def start(self, deliver: Deliver) -> None:
        self._deliver = deliver
        logger.info("Memory broadcaster started")

    async def publish(self, envelope: Envelope) -> None:
        if self._deliver is None:
            logger.debug(f"Broadcaster not started, dropping {envelope.get('event')}")
            return
        await self._deliver(envelope)

    async def stop(self) -> None:
        self._deliver = None

    async def health_check(self) -> bool:
        return self._deliver is not None
