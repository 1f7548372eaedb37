"""
                        Services Module

Business logic of the order relay, leaves first:

Services:
    - sequence: monthly order number counter
    - order_store: order persistence with optimistic versioning
    - policy: role-based authorization rules
    - lifecycle: order state machine and mutations
    - broadcast: cross-instance fan-out (memory / Redis)
    - realtime: per-instance connection registry and publishing hub
    - notifications: role-targeted follow-up events
    - realtime_handler: socket message dispatch
"""

from app.services.errors import OrderError
from app.services.lifecycle import OrderLifecycleEngine
from app.services.order_store import OrderStore
from app.services.sequence import SequenceGenerator

__all__ = ["OrderError", "OrderLifecycleEngine", "OrderStore", "SequenceGenerator"]
