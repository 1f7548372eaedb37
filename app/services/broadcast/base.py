"""
Broadcaster Abstract Base Class

A broadcaster carries realtime envelopes to every running instance of the
service. Each instance hands its local session manager to ``start`` as
the ``deliver`` callback; ``publish`` then reaches the ``deliver`` of
every instance, the publishing one included.

Envelope shape::

    {
        "event": "order_update",
        "data": {...},
        "rooms": ["Waiter", "Admin"] | None,   # None = every connection
        "orderId": "...",                      # optional, for ordering
        "version": 3,                          # optional, for ordering
    }
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

Envelope = dict[str, Any]
Deliver = Callable[[Envelope], Awaitable[None]]


class BaseBroadcaster(ABC):
    """Interface shared by the in-process and Redis backends."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Backend name reported by the health check."""
        pass

    @abstractmethod
    async def start(self, deliver: Deliver) -> None:
        """Begin delivering published envelopes to ``deliver``."""
        pass

    @abstractmethod
    async def publish(self, envelope: Envelope) -> None:
        """
        Send ``envelope`` to every instance.

        Raises whatever the transport raises; callers decide whether a
        failed publish matters.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass
