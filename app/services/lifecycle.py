"""
Order Lifecycle Engine

Owns the order state graph and every mutation of an order:

    New ──► Preparing ──► Ready ──► Collected
     │
     └────► Cancelled

Collected and Cancelled are terminal. The engine checks authorization
through ``app.services.policy``, stamps first-entry timestamps, and
persists through ``OrderStore`` whose version check turns lost updates
into ``ConflictError``. It never broadcasts; callers publish the returned
orders once the mutation is committed.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from app.core.security import Actor
from app.models import Order, OrderStatus, new_id, utcnow
from app.schemas import OrderCreate, OrderLineIn, OrderOut, SettleTabRequest
from app.services import policy
from app.services.errors import (
    ConflictError,
    EmptyOrderError,
    ForbiddenError,
    ImmutableOrderError,
    InvalidItemsError,
    InvalidTransitionError,
    NotFoundError,
    OrderBeingPreparedError,
)
from app.services.order_store import OrderStore
from app.services.sequence import SequenceGenerator

logger = logging.getLogger(__name__)


# =============================================================================
# STATE GRAPH
# =============================================================================

TRANSITIONS: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.NEW: (OrderStatus.PREPARING, OrderStatus.CANCELLED),
    OrderStatus.PREPARING: (OrderStatus.READY,),
    OrderStatus.READY: (OrderStatus.COLLECTED,),
    OrderStatus.COLLECTED: (),
    OrderStatus.CANCELLED: (),
}

# Timestamp stamped the first time an order enters a status
FIRST_ENTRY_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.PREPARING: "preparing_started_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.COLLECTED: "collected_at",
    OrderStatus.CANCELLED: "cancelled_at",
}

_SCALAR_EDIT_FIELDS = ("table_number", "customer_name", "delivery_address")
_FLAG_EDIT_FIELDS = ("is_pre_order", "is_paid")


def is_valid_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, ())


def new_tab_id() -> str:
    return uuid.uuid4().hex


class OrderLifecycleEngine:
    """
    Applies order mutations on behalf of an explicit ``Actor``.

    One engine wraps one ``OrderStore`` and therefore one database
    session; build a fresh engine per request or socket message.
    """

    def __init__(
        self,
        store: OrderStore,
        sequence: Optional[SequenceGenerator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.sequence = sequence
        self.clock = clock

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _load(self, order_id: str) -> Order:
        order = await self.store.get(order_id)
        if order is None or not order.is_active:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def _save(self, *orders: Order) -> None:
        try:
            await self.store.save(*orders)
        except ConflictError:
            ids = ", ".join(o.id for o in orders)
            logger.warning(f"Concurrent update rejected for order(s) {ids}")
            raise

    async def _validate_items(
        self,
        event_id: str,
        lines: Optional[list[OrderLineIn]],
    ) -> list[dict[str, Any]]:
        """Check every line against the event's live menu and return stored lines."""
        if not lines:
            raise EmptyOrderError()

        menu = await self.store.menu_items(line.menu_item for line in lines)
        invalid = []
        for line in lines:
            item = menu.get(line.menu_item)
            if item is None or item.is_deleted or item.event_id != event_id:
                invalid.append(line.menu_item)
        if invalid:
            raise InvalidItemsError(f"Unknown menu items for event {event_id}: {', '.join(invalid)}")

        return [
            {"menuItem": line.menu_item, "quantity": line.quantity, "remarks": line.remarks}
            for line in lines
        ]

    async def render(self, orders: Iterable[Order], prep_only: bool = False) -> list[OrderOut]:
        """Denormalize orders with their menu items, ready for the wire."""
        orders = list(orders)
        menu = await self.store.menu_items(
            line.get("menuItem") for order in orders for line in order.items or []
        )
        return [OrderOut.build(order, menu, prep_only=prep_only) for order in orders]

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def create_order(self, data: OrderCreate, actor: Actor, public: bool = False) -> Order:
        """
        Create a ``New`` order.

        ``public`` marks the guest-facing path: the order is never paid
        and always belongs to a tab, generated here when the caller has
        none.

        Raises:
            ForbiddenError: role may not create through this path
            EmptyOrderError: no line items
            InvalidItemsError: a line references a menu item outside the event
            SequenceExhaustionError: no order number could be allocated
        """
        if not policy.may_create(actor.role, public=public):
            raise ForbiddenError(f"Role {actor.role.value} cannot create orders")

        items = await self._validate_items(data.event_id, data.items)

        tab_id = data.tab_id
        is_paid = data.is_paid
        if public:
            tab_id = tab_id or actor.tab_id or new_tab_id()
            is_paid = False

        order_number = await self.sequence.next_order_number()
        now = self.clock()

        order = Order(
            id=new_id(),
            order_number=order_number,
            event_id=data.event_id,
            tab_id=tab_id,
            table_number=data.table_number,
            customer_name=data.customer_name,
            is_pre_order=data.is_pre_order,
            is_paid=is_paid,
            delivery_address=data.delivery_address,
            items=items,
            status=OrderStatus.NEW,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        await self.store.add(order)

        logger.info(
            f"Order {order.order_number} created by {actor.role.value} {actor.actor_id} "
            f"({len(items)} lines, event={order.event_id}, tab={order.tab_id})"
        )
        return order

    async def transition_status(self, order_id: str, target: OrderStatus, actor: Actor) -> Order:
        """
        Move an order one step along the state graph.

        Raises:
            NotFoundError: unknown or deleted order
            ForbiddenError: role may not move orders into ``target``
            InvalidTransitionError: ``target`` is not adjacent to the current status
            ConflictError: another writer changed the order meanwhile
        """
        order = await self._load(order_id)

        if not policy.may_transition(actor.role, target):
            raise ForbiddenError(f"Role {actor.role.value} cannot set status {target.value}")

        previous = order.status
        if not is_valid_transition(previous, target):
            raise InvalidTransitionError(
                f"Cannot move order {order.order_number} from {previous.value} to {target.value}"
            )

        now = self.clock()
        order.status = target
        field = FIRST_ENTRY_FIELDS[target]
        if getattr(order, field) is None:
            setattr(order, field, now)
        order.updated_at = now
        await self._save(order)

        logger.info(
            f"Order {order.order_number}: {previous.value} -> {target.value} "
            f"by {actor.role.value} {actor.actor_id}"
        )
        return order

    async def edit_order(self, order_id: str, changes: dict[str, Any], actor: Actor) -> Order:
        """
        Apply a partial edit. Only keys present in ``changes`` are touched.

        Raises:
            NotFoundError: unknown or deleted order
            ImmutableOrderError: the order was already collected
            OrderBeingPreparedError: a guest's own order left ``New``
            ForbiddenError: any other denied edit
            EmptyOrderError / InvalidItemsError: bad replacement items
        """
        order = await self._load(order_id)

        if order.status == OrderStatus.COLLECTED:
            raise ImmutableOrderError()

        decision = policy.edit_decision(actor, order.status, order.tab_id)
        if decision == policy.EditDecision.LOCKED:
            raise OrderBeingPreparedError()
        if decision != policy.EditDecision.ALLOW:
            raise ForbiddenError("Not authorized to edit this order")

        if actor.is_guest and changes.get("is_paid"):
            raise ForbiddenError("Guests cannot mark orders as paid")

        if not changes:
            return order

        if "items" in changes:
            order.items = await self._validate_items(order.event_id, changes["items"])
        for field in _SCALAR_EDIT_FIELDS:
            if field in changes:
                setattr(order, field, changes[field])
        for field in _FLAG_EDIT_FIELDS:
            if changes.get(field) is not None:
                setattr(order, field, changes[field])

        order.updated_at = self.clock()
        await self._save(order)

        logger.info(
            f"Order {order.order_number} edited by {actor.role.value} {actor.actor_id}: "
            f"{sorted(changes)}"
        )
        return order

    async def soft_delete(self, order_id: str, actor: Actor) -> Order:
        """Hide an order from every view. Status is left as it was."""
        order = await self._load(order_id)

        if not policy.may_soft_delete(actor.role):
            raise ForbiddenError(f"Role {actor.role.value} cannot delete orders")

        order.is_active = False
        order.updated_at = self.clock()
        await self._save(order)

        logger.info(f"Order {order.order_number} deleted by {actor.actor_id}")
        return order

    async def settle_tab(self, request: SettleTabRequest, actor: Actor) -> list[Order]:
        """
        Collect and mark paid every open order of a tab in one transaction.

        Bypasses the single-step graph: New and Preparing orders go straight
        to ``Collected``. Cancelled and already collected orders are left alone.
        """
        if not policy.may_settle_tab(actor.role):
            raise ForbiddenError(f"Role {actor.role.value} cannot settle tabs")

        orders = await self.store.list_open_tab(
            request.event_id,
            tab_id=request.tab_id,
            customer_name=request.customer_name,
        )
        if not orders:
            return []

        now = self.clock()
        for order in orders:
            order.status = OrderStatus.COLLECTED
            order.is_paid = True
            if order.collected_at is None:
                order.collected_at = now
            order.updated_at = now
        await self._save(*orders)

        who = request.tab_id or request.customer_name or "walk-in"
        logger.info(f"Tab {who} settled by {actor.actor_id}: {len(orders)} orders")
        return orders
