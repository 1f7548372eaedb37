"""
Order Store

Thin persistence layer over SQLAlchemy for orders and the menu items they
reference. Every call is bounded by ``STORE_TIMEOUT_SECONDS`` so a stuck
database surfaces as an error instead of a hung request, and every write
goes through the mapper's version check so a lost update becomes a
``ConflictError``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Iterable, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import get_settings
from app.models import MenuItem, Order, OrderStatus
from app.services.errors import ConflictError, StoreUnavailableError

logger = logging.getLogger(__name__)

OPEN_STATUSES = (OrderStatus.NEW, OrderStatus.PREPARING, OrderStatus.READY)


class OrderStore:
    """Order persistence bound to one database session."""

    def __init__(self, session: AsyncSession, timeout: Optional[float] = None):
        self.session = session
        self.timeout = timeout or get_settings().store_timeout_seconds

    async def _run(self, awaitable: Awaitable[Any], operation: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Store {operation} timed out after {self.timeout}s")
            raise StoreUnavailableError() from e
        except StaleDataError:
            raise
        except SQLAlchemyError as e:
            logger.error(f"Store {operation} failed: {e}")
            raise StoreUnavailableError() from e

    async def _commit(self, operation: str) -> None:
        try:
            await self._run(self.session.commit(), operation)
        except StaleDataError as e:
            await self.session.rollback()
            raise ConflictError() from e
        except StoreUnavailableError:
            await self.session.rollback()
            raise

    # =========================================================================
    # WRITES
    # =========================================================================

    async def add(self, order: Order) -> Order:
        """Insert a new order."""
        self.session.add(order)
        await self._commit("insert")
        return order

    async def save(self, *orders: Order) -> None:
        """
        Persist in-place changes of already loaded orders in one transaction.

        Raises:
            ConflictError: another writer updated one of the orders since it
                was loaded
        """
        self.session.add_all(orders)
        await self._commit("update")

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, order_id: str) -> Optional[Order]:
        return await self._run(self.session.get(Order, order_id), "get")

    async def _all(self, stmt, operation: str) -> list[Order]:
        result = await self._run(self.session.execute(stmt), operation)
        return list(result.scalars().all())

    async def list_active(self) -> list[Order]:
        """All active orders, oldest first."""
        stmt = select(Order).where(Order.is_active.is_(True)).order_by(Order.created_at)
        return await self._all(stmt, "list_active")

    async def list_by_event(
        self,
        event_id: str,
        statuses: Optional[Sequence[OrderStatus]] = None,
        newest_first: bool = True,
    ) -> list[Order]:
        """Active orders of an event, optionally limited to some statuses."""
        stmt = select(Order).where(Order.event_id == event_id, Order.is_active.is_(True))
        if statuses:
            stmt = stmt.where(Order.status.in_(statuses))
        order_by = Order.created_at.desc() if newest_first else Order.created_at
        return await self._all(stmt.order_by(order_by), "list_by_event")

    async def list_by_tab(self, tab_id: str) -> list[Order]:
        stmt = (
            select(Order)
            .where(Order.tab_id == tab_id, Order.is_active.is_(True))
            .order_by(Order.created_at.desc())
        )
        return await self._all(stmt, "list_by_tab")

    async def list_open_tab(
        self,
        event_id: str,
        tab_id: Optional[str] = None,
        customer_name: Optional[str] = None,
    ) -> list[Order]:
        """
        Active, not yet collected or cancelled orders of one tab.

        A tab is identified by ``tab_id`` when given, otherwise by
        ``customer_name``; without either it is the walk-in tab of orders
        carrying no customer name.
        """
        stmt = select(Order).where(
            Order.event_id == event_id,
            Order.is_active.is_(True),
            Order.status.in_(OPEN_STATUSES),
        )
        if tab_id:
            stmt = stmt.where(Order.tab_id == tab_id)
        elif customer_name:
            stmt = stmt.where(Order.customer_name == customer_name)
        else:
            stmt = stmt.where(or_(Order.customer_name.is_(None), Order.customer_name == ""))
        return await self._all(stmt.order_by(Order.created_at), "list_open_tab")

    async def last_order_number(self) -> Optional[str]:
        stmt = select(Order.order_number).order_by(Order.created_at.desc()).limit(1)
        result = await self._run(self.session.execute(stmt), "last_order_number")
        return result.scalar_one_or_none()

    async def menu_items(self, ids: Iterable[str]) -> dict[str, MenuItem]:
        """Menu items by id. Unknown ids are simply absent from the result."""
        wanted = {i for i in ids if i}
        if not wanted:
            return {}
        stmt = select(MenuItem).where(MenuItem.id.in_(wanted))
        result = await self._run(self.session.execute(stmt), "menu_items")
        return {item.id: item for item in result.scalars().all()}
