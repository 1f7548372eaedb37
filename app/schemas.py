"""
Pydantic Schemas for Request/Response Validation

Shared by the HTTP routes and the realtime socket. Field names are
snake_case in Python and camelCase on the wire (``orderNumber``,
``eventId``...), which is what the browser clients speak.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from app.models import MenuItem, Order, OrderStatus


class WireModel(BaseModel):
    """Base model accepting either field names or camelCase aliases."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


def _as_text(v: Any) -> Any:
    # Staff clients send table numbers as numbers
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return str(v)
    return v


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderLineIn(WireModel):
    """Single line of an order as sent by a client."""
    menu_item: str = Field(..., min_length=1, examples=["3f0c9a52-..."])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    remarks: Optional[str] = Field(None, max_length=200)


class OrderCreate(WireModel):
    """Payload of ``new_order``, ``new_public_order`` and ``POST /api/orders``."""
    event_id: str = Field(..., min_length=1, max_length=64)
    tab_id: Optional[str] = Field(None, max_length=64)
    table_number: Optional[str] = Field(None, max_length=20, examples=["12"])
    customer_name: Optional[str] = Field(None, max_length=100, examples=["Jane"])
    is_pre_order: bool = False
    is_paid: bool = False
    delivery_address: Optional[str] = Field(None, max_length=255)
    # Emptiness is an engine rule (EmptyOrder), not a schema rule
    items: list[OrderLineIn] = Field(default_factory=list)

    coerce_table_number = field_validator("table_number", mode="before")(_as_text)


class OrderPatch(WireModel):
    """Payload of ``edit_order``: the order id plus any editable fields."""

    EDITABLE_FIELDS: ClassVar[tuple[str, ...]] = (
        "table_number",
        "customer_name",
        "items",
        "is_pre_order",
        "is_paid",
        "delivery_address",
    )

    order_id: str = Field(..., min_length=1)
    table_number: Optional[str] = Field(None, max_length=20)
    customer_name: Optional[str] = Field(None, max_length=100)
    items: Optional[list[OrderLineIn]] = None
    is_pre_order: Optional[bool] = None
    is_paid: Optional[bool] = None
    delivery_address: Optional[str] = Field(None, max_length=255)
    # Guests prove tab ownership by presenting the tab id
    tab_id: Optional[str] = Field(None, max_length=64)

    coerce_table_number = field_validator("table_number", mode="before")(_as_text)

    def changes(self) -> dict[str, Any]:
        """Editable fields the client actually sent."""
        return {
            name: getattr(self, name)
            for name in self.EDITABLE_FIELDS
            if name in self.model_fields_set
        }


class StatusUpdate(WireModel):
    """Payload of ``update_order_status``."""
    order_id: str = Field(..., min_length=1)
    status: OrderStatus


class OrderRef(WireModel):
    """Payload of ``delete_order``."""
    order_id: str = Field(..., min_length=1)


class SettleTabRequest(WireModel):
    """Close a customer's tab: every open order becomes Collected and paid."""
    event_id: str = Field(..., min_length=1)
    tab_id: Optional[str] = None
    customer_name: Optional[str] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class MenuItemOut(WireModel):
    id: str
    name: str
    price: float
    category: str
    requires_prep: bool

    @classmethod
    def from_model(cls, item: MenuItem) -> "MenuItemOut":
        return cls(
            id=item.id,
            name=item.name,
            price=item.price,
            category=item.category,
            requires_prep=item.requires_prep,
        )


class OrderLineOut(WireModel):
    # None when the menu item was removed from the store
    menu_item: Optional[MenuItemOut]
    quantity: int
    remarks: Optional[str] = None


class OrderOut(WireModel):
    """
    Fully denormalized order: line items carry the resolved menu item so
    a recipient never needs a follow-up fetch.
    """
    id: str
    order_number: str
    event_id: str
    tab_id: Optional[str]
    table_number: Optional[str]
    customer_name: Optional[str]
    is_pre_order: bool
    is_paid: bool
    delivery_address: Optional[str]
    items: list[OrderLineOut]
    status: OrderStatus
    is_active: bool
    created_at: datetime
    updated_at: datetime
    preparing_started_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int

    @field_validator(
        "created_at",
        "updated_at",
        "preparing_started_at",
        "ready_at",
        "collected_at",
        "cancelled_at",
    )
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Drivers without timezone support hand back naive UTC values."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def build(
        cls,
        order: Order,
        menu: dict[str, MenuItem],
        prep_only: bool = False,
    ) -> "OrderOut":
        """Render ``order`` with its lines resolved against ``menu``."""
        lines = []
        for line in order.items or []:
            item = menu.get(line.get("menuItem"))
            if prep_only and (item is None or not item.requires_prep):
                continue
            lines.append(OrderLineOut(
                menu_item=MenuItemOut.from_model(item) if item else None,
                quantity=line["quantity"],
                remarks=line.get("remarks"),
            ))

        return cls(
            id=order.id,
            order_number=order.order_number,
            event_id=order.event_id,
            tab_id=order.tab_id,
            table_number=order.table_number,
            customer_name=order.customer_name,
            is_pre_order=order.is_pre_order,
            is_paid=order.is_paid,
            delivery_address=order.delivery_address,
            items=lines,
            status=order.status,
            is_active=order.is_active,
            created_at=order.created_at,
            updated_at=order.updated_at,
            preparing_started_at=order.preparing_started_at,
            ready_at=order.ready_at,
            collected_at=order.collected_at,
            cancelled_at=order.cancelled_at,
            version=order.version,
        )


class Ack(WireModel):
    """Acknowledgement returned to the caller of a socket message."""
    status: Literal["ok", "error"]
    order: Optional[OrderOut] = None
    message: Optional[str] = None
    code: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ReadyNotification(WireModel):
    """Sent to Waiter and Admin rooms when an order becomes Ready."""
    order_number: str
    order_id: str
    # Recipients hide the alert when this is their own actor id
    triggered_by: str


class SettleTabResponse(WireModel):
    success: bool = True
    settled: int
    orders: list[OrderOut]


class LastOrderNumberResponse(WireModel):
    order_number: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    broadcaster: str
    connections: int
    timestamp: datetime
