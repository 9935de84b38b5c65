"""
Per-shop subscriber rooms and the event payloads pushed to them.

Events are {"event": name, "data": payload}. Subscribers are thread-safe sinks (the websocket
route hands the message to its event loop); a failing sink is dropped from its room and never
affects other subscribers or the pass that emitted the event.
"""
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.orm import Session

from app.core.constants import (
    BROADCAST_PAGE_SIZE,
    CATALOG_PRODUCTS_LIMIT,
    COMPLETED_PAGE_MAX,
    QUEUED_PAGE_MAX,
    STATUS_COMPLETED,
    STATUS_QUEUED,
)
from app.core.errors import BadInput
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import ShopSession, to_gid
from app.services.store import get_active, get_settings, list_drops

logger = logging.getLogger(__name__)

EVENT_ACTIVE_DROP = "active_drop"
EVENT_SCHEDULED_DROPS = "scheduled_drops"
EVENT_COMPLETED_DROPS = "completed_drops"
EVENT_SETTINGS = "settings"
EVENT_STATUS_CHANGE = "status_change"
EVENT_REFRESH_NEEDED = "refresh_needed"
EVENT_HEARTBEAT = "heartbeat"
EVENT_ERROR = "error"
EVENT_PONG = "pong_response"
EVENT_COLLECTIONS = "collections"
EVENT_QUEUED_PRODUCTS = "queued_products"


class Subscriber(Protocol):
    def send(self, message: dict[str, Any]) -> None:
        """Queue one message for delivery. Must not block."""
        ...


def message(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Payloads ---


def active_drop_payload(db: Session, shop: str) -> dict[str, Any] | None:
    active = get_active(db, shop)
    return active.to_dict() if active else None


def scheduled_drops_payload(db: Session, shop: str, page: Any = 1, limit: Any = BROADCAST_PAGE_SIZE) -> dict[str, Any]:
    rows, total = list_drops(db, shop, STATUS_QUEUED, page=page, limit=limit, max_limit=QUEUED_PAGE_MAX)
    return {"drops": [r.to_dict() for r in rows], "totalCount": total}


def completed_drops_payload(db: Session, shop: str, page: Any = 1, limit: Any = BROADCAST_PAGE_SIZE) -> dict[str, Any]:
    rows, total = list_drops(db, shop, STATUS_COMPLETED, page=page, limit=limit, max_limit=COMPLETED_PAGE_MAX)
    return {"drops": [r.to_dict() for r in rows], "totalCount": total}


def settings_payload(db: Session, shop: str) -> dict[str, Any]:
    return get_settings(db, shop)


def collections_payload(catalog: CatalogGateway, session: ShopSession) -> list[dict[str, Any]]:
    """Collections as picker options: label is the title, value the collection GID."""
    return [{"label": c.title, "value": c.id} for c in catalog.list_collections(session)]


def queued_products_payload(catalog: CatalogGateway, session: ShopSession, collection_id: Any) -> list[dict[str, Any]]:
    gid = to_gid("Collection", collection_id)
    if not gid:
        raise BadInput("Invalid collection ID format")
    products = catalog.list_active_products(session, gid, limit=CATALOG_PRODUCTS_LIMIT)
    return [{"id": p.id, "title": p.title, "imageUrl": p.image_url} for p in products]


# --- Rooms ---


class Broadcaster:
    """Rooms keyed by shop domain."""

    def __init__(self) -> None:
        self._rooms: dict[str, set[Subscriber]] = {}
        self._lock = threading.Lock()

    def attach(self, shop: str, subscriber: Subscriber) -> int:
        """Add to the shop's room; returns the room size after joining."""
        with self._lock:
            room = self._rooms.setdefault(shop, set())
            room.add(subscriber)
            return len(room)

    def detach(self, shop: str, subscriber: Subscriber) -> int:
        """Remove from the shop's room; returns how many subscribers remain."""
        with self._lock:
            room = self._rooms.get(shop)
            if not room:
                return 0
            room.discard(subscriber)
            if not room:
                del self._rooms[shop]
                return 0
            return len(room)

    def count(self, shop: str) -> int:
        with self._lock:
            return len(self._rooms.get(shop, ()))

    def shops(self) -> list[str]:
        with self._lock:
            return list(self._rooms)

    def emit(self, shop: str, event: str, data: Any) -> int:
        """Send to every subscriber of the shop. Returns how many received it."""
        with self._lock:
            room = list(self._rooms.get(shop, ()))
        delivered = 0
        for sub in room:
            if self.send_to(shop, sub, event, data):
                delivered += 1
        return delivered

    def send_to(self, shop: str, subscriber: Subscriber, event: str, data: Any) -> bool:
        try:
            subscriber.send(message(event, data))
            return True
        except Exception as e:
            logger.warning("Dropping subscriber for %s after failed %s send: %s", shop, event, e, exc_info=True)
            self.detach(shop, subscriber)
            return False
