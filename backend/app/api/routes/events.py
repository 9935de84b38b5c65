"""
WebSocket /ws?shop=&token=: per-shop event room for the operator UI.

Server -> client: active_drop, scheduled_drops, completed_drops, settings, status_change,
refresh_needed, heartbeat, error, pong_response, collections, queued_products. Client -> server:
get_active_drop, get_scheduled_drops {page, limit}, get_completed_drops {page, limit}, get_settings,
get_collections, get_queued_products (collection GID or {collection_id}), ping_server.
All frames are {"event": name, "data": payload}.

Broadcasts come from shop actor threads; each connection's subscriber hands them to the
connection's event loop with call_soon_threadsafe.
"""
import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from app.api.deps import validate_shop_domain
from app.config import settings
from app.core.constants import BROADCAST_PAGE_SIZE
from app.core.errors import DropSchedulerError
from app.scheduler.engine import DropEngine
from app.services import broadcast

router = APIRouter()
logger = logging.getLogger(__name__)

# Policy violation: used when the handshake carries a bad shop or token
_WS_POLICY_VIOLATION = 1008


class SocketSubscriber:
    """Thread-safe sink feeding one websocket's outbox."""

    def __init__(self, loop: asyncio.AbstractEventLoop, outbox: asyncio.Queue) -> None:
        self._loop = loop
        self._outbox = outbox

    def send(self, message: dict[str, Any]) -> None:
        self._loop.call_soon_threadsafe(self._outbox.put_nowait, message)


def _page_args(data: Any) -> tuple[Any, Any]:
    if not isinstance(data, dict):
        return 1, BROADCAST_PAGE_SIZE
    return data.get("page", 1), data.get("limit", BROADCAST_PAGE_SIZE)


def _collection_arg(data: Any) -> Any:
    if isinstance(data, dict):
        return data.get("collection_id") or data.get("collectionId")
    return data


def _catalog_reply(engine: DropEngine, shop: str, event: str, data: Any) -> dict[str, Any]:
    """Collections and collection products come from the catalog with the cached shop session."""
    session = engine.session_for(shop)
    if session is None:
        return broadcast.message(broadcast.EVENT_ERROR, {"event": event, "message": "Authentication required."})
    if event == "get_collections":
        return broadcast.message(broadcast.EVENT_COLLECTIONS, broadcast.collections_payload(engine.catalog, session))
    products = broadcast.queued_products_payload(engine.catalog, session, _collection_arg(data))
    return broadcast.message(broadcast.EVENT_QUEUED_PRODUCTS, products)


def handle_client_message(engine: DropEngine, shop: str, raw: str) -> dict[str, Any] | None:
    """Answer one client frame. Runs in the threadpool (store reads block)."""
    try:
        frame = json.loads(raw)
    except ValueError:
        return broadcast.message(broadcast.EVENT_ERROR, {"event": None, "message": "Invalid JSON frame"})
    if not isinstance(frame, dict):
        return broadcast.message(broadcast.EVENT_ERROR, {"event": None, "message": "Frame must be an object"})
    event = frame.get("event")
    data = frame.get("data")
    if event == "ping_server":
        return broadcast.message(broadcast.EVENT_PONG, {"status": "ok", "timestamp": broadcast.now_iso()})
    if event in ("get_collections", "get_queued_products"):
        try:
            return _catalog_reply(engine, shop, event, data)
        except DropSchedulerError as e:
            logger.warning("Socket %s for %s failed: %s", event, shop, e)
            return broadcast.message(broadcast.EVENT_ERROR, {"event": event, "message": e.message})

    db = engine.session_factory()
    try:
        if event == "get_active_drop":
            return broadcast.message(broadcast.EVENT_ACTIVE_DROP, broadcast.active_drop_payload(db, shop))
        if event == "get_scheduled_drops":
            page, limit = _page_args(data)
            return broadcast.message(
                broadcast.EVENT_SCHEDULED_DROPS, broadcast.scheduled_drops_payload(db, shop, page, limit)
            )
        if event == "get_completed_drops":
            page, limit = _page_args(data)
            return broadcast.message(
                broadcast.EVENT_COMPLETED_DROPS, broadcast.completed_drops_payload(db, shop, page, limit)
            )
        if event == "get_settings":
            return broadcast.message(broadcast.EVENT_SETTINGS, broadcast.settings_payload(db, shop))
    except DropSchedulerError as e:
        logger.warning("Socket %s for %s failed: %s", event, shop, e)
        return broadcast.message(broadcast.EVENT_ERROR, {"event": event, "message": e.message})
    finally:
        db.close()
    return broadcast.message(broadcast.EVENT_ERROR, {"event": event, "message": f"Unknown event: {event}"})


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        msg = await outbox.get()
        await websocket.send_json(msg)


async def _heartbeat(outbox: asyncio.Queue, every: float) -> None:
    while True:
        await asyncio.sleep(every)
        outbox.put_nowait(broadcast.message(broadcast.EVENT_HEARTBEAT, {"timestamp": broadcast.now_iso()}))


@router.websocket("/ws")
async def drop_events(
    websocket: WebSocket,
    shop: str | None = Query(None),
    token: str | None = Query(None),
):
    engine: DropEngine = websocket.app.state.engine
    try:
        shop = validate_shop_domain(shop)
        await run_in_threadpool(engine.authenticate, shop, token)
    except DropSchedulerError as e:
        logger.warning("Socket auth failed for shop %s: %s", shop, e.message)
        await websocket.close(code=_WS_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    logger.info("Client connected for shop %s", shop)
    outbox: asyncio.Queue = asyncio.Queue()
    subscriber = SocketSubscriber(asyncio.get_running_loop(), outbox)
    await run_in_threadpool(engine.subscribe, shop, subscriber)
    tasks = [
        asyncio.create_task(_pump(websocket, outbox)),
        asyncio.create_task(_heartbeat(outbox, settings.heartbeat_seconds)),
    ]
    try:
        while True:
            raw = await websocket.receive_text()
            reply = await run_in_threadpool(handle_client_message, engine, shop, raw)
            if reply is not None:
                outbox.put_nowait(reply)
    except WebSocketDisconnect:
        logger.info("Client disconnected for shop %s", shop)
    finally:
        for task in tasks:
            task.cancel()
        await run_in_threadpool(engine.unsubscribe, shop, subscriber)
