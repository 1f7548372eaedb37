"""
FastAPI Application Entry Point

Kitchen Order Relay - realtime order lifecycle service.
Staff (Admin, Waiter, Kitchen) and anonymous guests share one live view
of every order through the ``/ws`` socket; the HTTP API covers reads,
staff order entry and tab settlement.

Endpoints:
    - GET  /health: System health check
    - GET  /api/orders: Active orders (staff)
    - GET  /api/orders/last: Last issued order number (Admin, Waiter)
    - POST /api/orders: Create order (Admin, Waiter)
    - GET  /api/orders/event/{event_id}: Active orders of an event (staff)
    - GET  /api/orders/kitchen/{event_id}: Kitchen queue (staff)
    - GET  /api/orders/public/status/{event_id}: Pickup board (anonymous)
    - GET  /api/orders/public/tab/{tab_id}: Orders of a tab (anonymous)
    - POST /api/orders/tab/settle: Settle a tab (Admin, Waiter)
    - WS   /ws?token=&tabId=: Realtime socket
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from app.core.config import get_settings, setup_logging
from app.core.security import Actor, AuthenticationError, Role, resolve_actor, role_required
from app.database import engine, get_db, init_db
from app.models import OrderStatus
from app.schemas import (
    ErrorResponse,
    HealthResponse,
    LastOrderNumberResponse,
    OrderCreate,
    OrderOut,
    SettleTabRequest,
    SettleTabResponse,
)
from app.services.broadcast import get_broadcaster
from app.services.errors import OrderError
from app.services.lifecycle import OrderLifecycleEngine
from app.services.order_store import OrderStore
from app.services.realtime import Connection, get_hub, get_session_manager
from app.services.realtime_handler import get_realtime_handler
from app.services.sequence import get_sequence_generator

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

STAFF = (Role.ADMIN, Role.WAITER, Role.KITCHEN)
FLOOR = (Role.ADMIN, Role.WAITER)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    if settings.auto_create_tables:
        await init_db()

    broadcaster = get_broadcaster()
    await broadcaster.start(get_session_manager().deliver)
    logger.info(f"Broadcaster: {broadcaster.provider_name}")

    missing = settings.validate_production_config()
    if missing:
        logger.warning(f"Missing production config: {missing}")

    logger.info("Application ready")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await broadcaster.stop()
    await engine.dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Realtime order lifecycle service: order entry, kitchen workflow, "
        "pickup notifications and tab settlement over HTTP and WebSocket."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_engine(db: AsyncSession = Depends(get_db)) -> OrderLifecycleEngine:
    """Lifecycle engine bound to the request's database session."""
    return OrderLifecycleEngine(OrderStore(db), get_sequence_generator())


# =============================================================================
# HEALTH
# =============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Verify the order store and the broadcaster are reachable."""

    db_status = "healthy"
    try:
        await db.execute(select(1))
    except Exception as e:
        db_status = f"unhealthy: {e}"
        logger.error(f"Database health check failed: {e}")

    broadcaster = get_broadcaster()
    broadcaster_status = "healthy" if await broadcaster.health_check() else "unhealthy"

    overall = "operational" if (
        db_status == "healthy" and broadcaster_status == "healthy"
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        broadcaster=f"{broadcaster.provider_name}: {broadcaster_status}",
        connections=len(get_session_manager().connections),
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.get(
    "/api/orders",
    response_model=list[OrderOut],
    tags=["Orders"],
    summary="List Active Orders",
)
async def list_orders(
    actor: Actor = Depends(role_required(*STAFF)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> list[OrderOut]:
    """All active orders, oldest first."""
    return await orders.render(await orders.store.list_active())


@app.get(
    "/api/orders/last",
    response_model=LastOrderNumberResponse,
    tags=["Orders"],
)
async def last_order_number(
    actor: Actor = Depends(role_required(*FLOOR)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> LastOrderNumberResponse:
    """Most recently issued order number, empty when there is none yet."""
    number = await orders.store.last_order_number()
    return LastOrderNumberResponse(order_number=number or "")


@app.post(
    "/api/orders",
    response_model=OrderOut,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Orders"],
    summary="Create Order",
)
async def create_order(
    order_data: OrderCreate,
    actor: Actor = Depends(role_required(*FLOOR)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> OrderOut:
    """Staff order entry. Broadcast to every connected client like ``new_order``."""
    order = await orders.create_order(order_data, actor)
    rendered = (await orders.render([order]))[0]
    await get_hub().order_updated(rendered)
    return rendered


@app.get(
    "/api/orders/event/{event_id}",
    response_model=list[OrderOut],
    tags=["Orders"],
)
async def event_orders(
    event_id: str,
    actor: Actor = Depends(role_required(*STAFF)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> list[OrderOut]:
    """Active orders of an event, newest first."""
    return await orders.render(await orders.store.list_by_event(event_id))


@app.get(
    "/api/orders/kitchen/{event_id}",
    response_model=list[OrderOut],
    tags=["Orders"],
)
async def kitchen_queue(
    event_id: str,
    actor: Actor = Depends(role_required(*STAFF)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> list[OrderOut]:
    """
    What the kitchen still has to cook: New and Preparing orders, oldest
    first, showing only lines that need preparation.
    """
    pending = await orders.store.list_by_event(
        event_id,
        statuses=(OrderStatus.NEW, OrderStatus.PREPARING),
        newest_first=False,
    )
    rendered = await orders.render(pending, prep_only=True)
    return [order for order in rendered if order.items]


@app.get(
    "/api/orders/public/status/{event_id}",
    response_model=list[OrderOut],
    tags=["Public"],
)
async def public_status(
    event_id: str,
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> list[OrderOut]:
    """Pickup board: orders being prepared or ready for collection."""
    current = await orders.store.list_by_event(
        event_id,
        statuses=(OrderStatus.PREPARING, OrderStatus.READY),
    )
    return await orders.render(current)


@app.get(
    "/api/orders/public/tab/{tab_id}",
    response_model=list[OrderOut],
    tags=["Public"],
)
async def public_tab(
    tab_id: str,
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> list[OrderOut]:
    """Orders placed on a guest tab, newest first."""
    return await orders.render(await orders.store.list_by_tab(tab_id))


@app.post(
    "/api/orders/tab/settle",
    response_model=SettleTabResponse,
    tags=["Orders"],
    summary="Settle Tab",
)
async def settle_tab(
    request: SettleTabRequest,
    actor: Actor = Depends(role_required(*FLOOR)),
    orders: OrderLifecycleEngine = Depends(get_engine),
) -> SettleTabResponse:
    """Collect and mark paid every open order of a tab, then broadcast each."""
    settled = await orders.settle_tab(request, actor)
    rendered = await orders.render(settled)

    hub = get_hub()
    for order in rendered:
        await hub.order_updated(order)

    return SettleTabResponse(settled=len(rendered), orders=rendered)


# =============================================================================
# REALTIME SOCKET
# =============================================================================

@app.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    tab_id: Optional[str] = Query(None, alias="tabId"),
) -> None:
    """
    Live order feed.

    Staff connect with ``?token=<JWT>`` and join the room of their role;
    without a token the connection is a Guest. The client first receives
    ``initial_orders`` and then every ``order_update`` as it happens.
    """
    await websocket.accept()

    try:
        actor = resolve_actor(token, tab_id)
    except AuthenticationError as e:
        logger.warning(f"Rejected socket credential: {e}")
        await websocket.send_json({"event": "auth_error", "data": {"message": str(e)}})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = get_session_manager()
    handler = get_realtime_handler()
    conn = Connection(websocket, actor)
    conn.hold()
    manager.register(conn)

    sender = asyncio.create_task(conn.run_sender())
    heartbeat = asyncio.create_task(conn.run_heartbeat())
    receiver = asyncio.create_task(handler.serve(conn))
    try:
        await handler.send_initial_orders(conn)
        await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        manager.unregister(conn)
        conn.closed = True
        for task in (sender, heartbeat, receiver):
            task.cancel()


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
    """Engine failures carry their own status code."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} ({exc.message})")
    return JSONResponse(
        status_code=exc.http_status,
        content=ErrorResponse(error=exc.code, detail=exc.message).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )
