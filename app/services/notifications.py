"""
Notification Dispatcher

Secondary, role-targeted events derived from order transitions. The only
one today: when an order becomes Ready, floor staff (Waiter and Admin
rooms) get ``order_ready_notification`` so someone walks it out.
"""

import logging

from app.core.security import Actor, Role
from app.models import Order, OrderStatus
from app.schemas import ReadyNotification
from app.services.realtime import RealtimeHub

logger = logging.getLogger(__name__)

READY_ROOMS = (Role.WAITER, Role.ADMIN)


class NotificationDispatcher:
    def __init__(self, hub: RealtimeHub):
        self.hub = hub

    async def order_transitioned(self, order: Order, actor: Actor) -> bool:
        """Emit follow-up notifications for ``order``'s new status. Returns whether one was sent."""
        if order.status != OrderStatus.READY:
            return False

        note = ReadyNotification(
            order_number=order.order_number,
            order_id=order.id,
            triggered_by=actor.actor_id,
        )
        await self.hub.emit_to_rooms(
            "order_ready_notification",
            note.to_wire(),
            rooms=[role.value for role in READY_ROOMS],
        )
        logger.info(f"Ready notification for {order.order_number} (by {actor.actor_id})")
        return True
