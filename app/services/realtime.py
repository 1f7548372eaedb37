"""
Realtime Session Manager

Tracks the WebSocket connections of this instance and fans envelopes out
to them. Each connection owns a bounded outbound queue drained by its own
sender task, so a broadcast only ever enqueues and a slow client cannot
stall anybody else; a client that falls ``REALTIME_QUEUE_MAX`` messages
behind is disconnected with "try again later".

Ordering: ``order_update`` envelopes carry the order's version. The
manager remembers the newest version it delivered per order and drops
anything older, so a client never sees an order step backwards even when
two writers' broadcasts race each other.

A new connection is held while its initial snapshot is read: broadcasts
are parked and replayed after the snapshot, minus updates it already shows.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from functools import lru_cache
from typing import Any, Iterable, Optional

from fastapi import WebSocket, WebSocketDisconnect, status

from app.core.config import get_settings
from app.core.security import Actor
from app.models import Order, utcnow
from app.schemas import OrderOut
from app.services.broadcast import BaseBroadcaster, Envelope, get_broadcaster

logger = logging.getLogger(__name__)


class Connection:
    """One accepted WebSocket plus its outbound queue."""

    def __init__(self, websocket: WebSocket, actor: Actor, queue_max: Optional[int] = None):
        self.id = uuid.uuid4().hex[:12]
        self.websocket = websocket
        self.actor = actor
        self.queue: asyncio.Queue[Optional[dict]] = asyncio.Queue(
            maxsize=queue_max or get_settings().realtime_queue_max
        )
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason = ""
        self.tasks: set[asyncio.Task] = set()
        # Broadcasts parked until the initial snapshot is queued
        self.held: Optional[list[tuple[dict, Optional[str], Optional[int]]]] = None

    @property
    def room(self) -> Optional[str]:
        """Role room of a staff connection. Guests join no room."""
        return None if self.actor.is_guest else self.actor.role.value

    def offer(self, message: dict[str, Any]) -> bool:
        """Queue ``message`` for sending. ``False`` when closed or full."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def hold(self) -> None:
        """Park broadcasts until ``release``; call before registering."""
        self.held = []

    def push(self, message: dict[str, Any], order_id: Optional[str] = None, version: Optional[int] = None) -> bool:
        """Deliver a broadcast, parking it while the connection is held."""
        if self.held is None or self.closed:
            return self.offer(message)
        if len(self.held) >= self.queue.maxsize:
            return False
        self.held.append((message, order_id, version))
        return True

    def release(self, snapshot: Optional[dict[str, Any]], versions: dict[str, int]) -> None:
        """
        Queue ``snapshot``, then the broadcasts parked while it was read.

        A parked ``order_update`` at or below the version the snapshot
        already shows for that order is dropped.
        """
        held, self.held = self.held or [], None
        if snapshot is not None:
            self.offer(snapshot)
        for message, order_id, version in held:
            if (
                message.get("event") == "order_update"
                and order_id in versions
                and version is not None
                and version <= versions[order_id]
            ):
                continue
            if not self.offer(message):
                logger.warning(f"Outbound queue full for {self!r} after initial sync, disconnecting")
                self.abort(status.WS_1013_TRY_AGAIN_LATER, "RETRY")
                return

    def abort(self, code: int, reason: str = "") -> None:
        """Stop sending; the sender task closes the socket with ``code``."""
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self.held = None
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    def spawn(self, coro) -> asyncio.Task:
        """Run ``coro`` as a task owned by this connection."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def run_sender(self) -> None:
        """Drain the queue into the socket until aborted or disconnected."""
        try:
            while True:
                message = await self.queue.get()
                if message is None:
                    break
                await self.websocket.send_json(message)
            if self.close_code is not None:
                await self.websocket.close(code=self.close_code, reason=self.close_reason)
        except (WebSocketDisconnect, RuntimeError) as e:
            # Peer already gone
            logger.debug(f"Sender for {self.id} stopped: {e!r}")
        finally:
            self.closed = True

    async def run_heartbeat(self, interval: Optional[float] = None) -> None:
        interval = interval or get_settings().realtime_heartbeat_seconds
        while not self.closed:
            await asyncio.sleep(interval)
            self.offer({"event": "ping", "data": {"ts": utcnow().isoformat()}})

    def __repr__(self):
        return f"<Connection {self.id} {self.actor.role.value}:{self.actor.actor_id}>"


class SessionManager:
    """Connections of this instance, grouped into role rooms."""

    def __init__(self, version_cache: Optional[int] = None):
        self.connections: dict[str, Connection] = {}
        self.version_cache = version_cache or get_settings().realtime_version_cache
        self._versions: OrderedDict[str, int] = OrderedDict()

    def register(self, conn: Connection) -> None:
        self.connections[conn.id] = conn
        logger.info(f"Connected {conn!r} ({len(self.connections)} open)")

    def unregister(self, conn: Connection) -> None:
        if self.connections.pop(conn.id, None) is not None:
            logger.info(f"Disconnected {conn!r} ({len(self.connections)} open)")

    def room_members(self, room: str) -> list[Connection]:
        return [c for c in self.connections.values() if c.room == room]

    def _is_current(self, order_id: str, version: int) -> bool:
        """Record ``version`` for ``order_id`` unless a newer one was delivered."""
        seen = self._versions.get(order_id)
        if seen is not None and version < seen:
            return False
        self._versions[order_id] = version
        self._versions.move_to_end(order_id)
        while len(self._versions) > self.version_cache:
            self._versions.popitem(last=False)
        return True

    async def deliver(self, envelope: Envelope) -> None:
        """Enqueue ``envelope`` on every targeted local connection."""
        event = envelope.get("event")
        order_id = envelope.get("orderId")
        version = envelope.get("version")

        if order_id is not None and version is not None:
            current = self._is_current(order_id, version)
            if not current and event == "order_update":
                logger.debug(f"Dropped stale {event} for {order_id} v{version}")
                return

        rooms = envelope.get("rooms")
        message = {"event": event, "data": envelope.get("data")}

        for conn in list(self.connections.values()):
            if rooms is not None and conn.room not in rooms:
                continue
            if not conn.push(message, order_id, version) and not conn.closed:
                logger.warning(f"Outbound queue full for {conn!r}, disconnecting")
                conn.abort(status.WS_1013_TRY_AGAIN_LATER, "RETRY")


class RealtimeHub:
    """
    Publishing side of the realtime layer.

    Every method is best effort: the mutation being announced is already
    committed, so a failed publish is logged and otherwise ignored.
    """

    def __init__(self, broadcaster: BaseBroadcaster, manager: SessionManager):
        self.broadcaster = broadcaster
        self.manager = manager

    async def emit(
        self,
        event: str,
        data: Any,
        rooms: Optional[Iterable[str]] = None,
        order_id: Optional[str] = None,
        version: Optional[int] = None,
    ) -> None:
        envelope = {
            "event": event,
            "data": data,
            "rooms": list(rooms) if rooms is not None else None,
            "orderId": order_id,
            "version": version,
        }
        try:
            await self.broadcaster.publish(envelope)
        except Exception as e:
            logger.error(f"Broadcast of {event} via {self.broadcaster.provider_name} failed: {e}")

    async def order_updated(self, order: OrderOut) -> None:
        await self.emit("order_update", order.to_wire(), order_id=order.id, version=order.version)

    async def order_deleted(self, order: Order) -> None:
        await self.emit("order_deleted", order.id, order_id=order.id, version=order.version)

    async def emit_to_rooms(self, event: str, data: Any, rooms: Iterable[str]) -> None:
        await self.emit(event, data, rooms=rooms)


@lru_cache()
def get_session_manager() -> SessionManager:
    return SessionManager()


@lru_cache()
def get_hub() -> RealtimeHub:
    return RealtimeHub(get_broadcaster(), get_session_manager())


def reset_realtime() -> None:
    """Forget the cached manager and hub (tests, config reloads)."""
    get_hub.cache_clear()
    get_session_manager.cache_clear()
