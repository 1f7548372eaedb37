"""
Realtime Message Handler

Handles the client → server messages of the ``/ws`` socket. Frames are
JSON envelopes::

    {"event": "new_order", "data": {...}, "ack": 7}

Each inbound frame runs as its own task with its own database session.
When the frame carries an ``ack`` id the outcome is returned as::

    {"event": "ack", "ack": 7, "data": {"status": "ok", "order": {...}}}

otherwise failures are reported with an ``error`` event.

Supported events:
    - new_order: staff create (Admin, Waiter)
    - new_public_order: guest-facing create, never paid
    - edit_order: partial edit
    - update_order_status: one step along the status graph
    - delete_order: soft delete (Admin)
"""

import json
import logging
from datetime import datetime
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional

from fastapi import WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import async_session_maker
from app.models import utcnow
from app.schemas import Ack, OrderCreate, OrderOut, OrderPatch, OrderRef, StatusUpdate
from app.services.errors import OrderError
from app.services.lifecycle import OrderLifecycleEngine
from app.services.notifications import NotificationDispatcher
from app.services.order_store import OrderStore
from app.services.realtime import Connection, RealtimeHub, get_hub
from app.services.sequence import SequenceGenerator, get_sequence_generator

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[Optional[OrderOut]]]


class RealtimeMessageHandler:
    """Dispatches socket messages to the lifecycle engine and publishes results."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
        hub: Optional[RealtimeHub] = None,
        sequence: Optional[SequenceGenerator] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_maker = session_maker or async_session_maker
        self.hub = hub or get_hub()
        self.notifier = NotificationDispatcher(self.hub)
        self.sequence = sequence or get_sequence_generator()
        self.clock = clock

        self.handlers: dict[str, Handler] = {
            "new_order": self._new_order,
            "new_public_order": self._new_public_order,
            "edit_order": self._edit_order,
            "update_order_status": self._update_order_status,
            "delete_order": self._delete_order,
        }

    def _engine(self, session: AsyncSession) -> OrderLifecycleEngine:
        return OrderLifecycleEngine(OrderStore(session), self.sequence, clock=self.clock)

    # =========================================================================
    # CONNECTION LIFECYCLE
    # =========================================================================

    async def send_initial_orders(self, conn: Connection) -> None:
        """
        Unicast every active order to a freshly connected client.

        Releases the connection afterwards, so broadcasts parked while the
        snapshot was read follow it unless the snapshot already covers them.
        """
        try:
            async with self.session_maker() as session:
                engine = self._engine(session)
                orders = await engine.render(await engine.store.list_active())
        except OrderError as e:
            self._reply_error(conn, None, e.code, e.message)
            conn.release(None, {})
            return
        conn.release(
            {"event": "initial_orders", "data": [o.to_wire() for o in orders]},
            {o.id: o.version for o in orders},
        )

    async def serve(self, conn: Connection) -> None:
        """Read frames until the client goes away, one task per frame."""
        try:
            while True:
                raw = await conn.websocket.receive_text()
                conn.spawn(self.handle(conn, raw))
        except WebSocketDisconnect:
            pass

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def handle(self, conn: Connection, raw: str) -> None:
        """Process one inbound frame. Never raises."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self._reply_error(conn, None, "InvalidPayload", "Frames must be JSON")
            return
        if not isinstance(message, dict):
            self._reply_error(conn, None, "InvalidPayload", "Frames must be JSON objects")
            return

        event = message.get("event")
        ack = message.get("ack")
        handler = self.handlers.get(event)
        if handler is None:
            self._reply_error(conn, ack, "UnknownEvent", f"Unknown event: {event}")
            return

        try:
            order = await handler(conn, message.get("data"))
        except OrderError as e:
            logger.info(f"{event} from {conn!r} rejected: {e.code} ({e.message})")
            self._reply_error(conn, ack, e.code, e.message)
            return
        except ValidationError as e:
            self._reply_error(conn, ack, "InvalidPayload", _first_error(e))
            return
        except Exception:
            logger.exception(f"Unexpected failure handling {event} from {conn!r}")
            self._reply_error(conn, ack, "InternalError", "Something went wrong")
            return

        if ack is not None:
            conn.offer(_ack_frame(ack, Ack(status="ok", order=order)))

    def _reply_error(self, conn: Connection, ack: Any, code: str, message: str) -> None:
        if ack is not None:
            conn.offer(_ack_frame(ack, Ack(status="error", code=code, message=message)))
        else:
            conn.offer({"event": "error", "data": {"code": code, "message": message}})

    # =========================================================================
    # EVENTS
    # =========================================================================

    async def _new_order(self, conn: Connection, data: Any) -> OrderOut:
        payload = OrderCreate.model_validate(data or {})
        async with self.session_maker() as session:
            engine = self._engine(session)
            order = await engine.create_order(payload, conn.actor)
            rendered = (await engine.render([order]))[0]
        await self.hub.order_updated(rendered)
        return rendered

    async def _new_public_order(self, conn: Connection, data: Any) -> OrderOut:
        payload = OrderCreate.model_validate(data or {})
        actor = conn.actor.with_tab(payload.tab_id) if conn.actor.is_guest else conn.actor
        async with self.session_maker() as session:
            engine = self._engine(session)
            order = await engine.create_order(payload, actor, public=True)
            rendered = (await engine.render([order]))[0]

        # A guest session adopts the tab of its first order
        if conn.actor.is_guest and not conn.actor.tab_id:
            conn.actor = conn.actor.with_tab(order.tab_id)

        await self.hub.order_updated(rendered)
        return rendered

    async def _edit_order(self, conn: Connection, data: Any) -> OrderOut:
        patch = OrderPatch.model_validate(data or {})
        changes = patch.changes()
        actor = conn.actor.with_tab(patch.tab_id) if conn.actor.is_guest else conn.actor
        async with self.session_maker() as session:
            engine = self._engine(session)
            order = await engine.edit_order(patch.order_id, changes, actor)
            rendered = (await engine.render([order]))[0]
        # Nothing was written, so there is nothing to announce
        if changes:
            await self.hub.order_updated(rendered)
        return rendered

    async def _update_order_status(self, conn: Connection, data: Any) -> OrderOut:
        update = StatusUpdate.model_validate(data or {})
        async with self.session_maker() as session:
            engine = self._engine(session)
            order = await engine.transition_status(update.order_id, update.status, conn.actor)
            rendered = (await engine.render([order]))[0]
        await self.hub.order_updated(rendered)
        await self.notifier.order_transitioned(order, conn.actor)
        return rendered

    async def _delete_order(self, conn: Connection, data: Any) -> None:
        # Older clients send the bare order id
        if isinstance(data, str):
            data = {"orderId": data}
        ref = OrderRef.model_validate(data or {})
        async with self.session_maker() as session:
            order = await self._engine(session).soft_delete(ref.order_id, conn.actor)
        await self.hub.order_deleted(order)
        return None


def _ack_frame(ack: Any, body: Ack) -> dict[str, Any]:
    return {"event": "ack", "ack": ack, "data": body.to_wire()}


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ()))
    return f"{where}: {err.get('msg')}" if where else err.get("msg", "Invalid payload")


@lru_cache()
def get_realtime_handler() -> RealtimeMessageHandler:
    return RealtimeMessageHandler()
