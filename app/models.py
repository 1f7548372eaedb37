"""
SQLAlchemy Database Models

Orders are stored document-style: line items live in a JSON column next
to the order row, mirroring the document store the service was designed
against. Menu items are a read-mostly collaborator owned by the menu
management tooling; the per-month order counter backs the order number
sequence.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Float, DateTime, Enum, Boolean, JSON

from app.database import Base


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    NEW = "New"
    PREPARING = "Preparing"
    READY = "Ready"
    COLLECTED = "Collected"
    CANCELLED = "Cancelled"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    Main Order table - one row per customer order.

    Tracks the lifecycle from creation through collection or cancellation.
    ``version`` is SQLAlchemy's optimistic concurrency counter: every
    UPDATE carries ``WHERE version = <seen>`` and a lost race raises
    ``StaleDataError``.
    """
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String(32), nullable=False, unique=True, index=True)

    # =========================================================================
    # SCOPE
    # =========================================================================
    event_id = Column(String(64), nullable=False, index=True)
    tab_id = Column(String(64), nullable=True, index=True)

    # =========================================================================
    # DESCRIPTIVE
    # =========================================================================
    table_number = Column(String(20), nullable=True)
    customer_name = Column(String(100), nullable=True)
    is_pre_order = Column(Boolean, default=False, nullable=False)
    is_paid = Column(Boolean, default=False, nullable=False)
    delivery_address = Column(String(255), nullable=True)

    # =========================================================================
    # CONTENT
    # =========================================================================
    # [{"menuItem": "<id>", "quantity": 2, "remarks": "no onions"}, ...]
    items = Column(JSON, nullable=False, default=list)

    # =========================================================================
    # STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.NEW,
        nullable=False,
        index=True
    )
    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    preparing_started_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    collected_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def total_quantity(self) -> int:
        return sum(line["quantity"] for line in self.items or [])

    def __repr__(self):
        return f"<Order {self.order_number} - {self.status.value} - v{self.version}>"


class MenuItem(Base):
    """Menu entry of an event. Referenced, not owned, by order lines."""
    __tablename__ = "menu_items"

    id = Column(String(36), primary_key=True, default=new_id)
    event_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    price = Column(Float, nullable=False)
    category = Column(String(50), nullable=False, default="Main")
    requires_prep = Column(Boolean, default=True, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<MenuItem {self.name} ({self.category}) - {self.price}>"


class OrderCounter(Base):
    """
    Durable per-month sequence row, keyed by the order number prefix
    and month bucket (e.g. ``CN202610``).
    """
    __tablename__ = "order_counters"

    id = Column(String(32), primary_key=True)
    seq = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<OrderCounter {self.id}={self.seq}>"
