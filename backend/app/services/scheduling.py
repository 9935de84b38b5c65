"""
Scheduler: turn a collection into a contiguous batch of queued drops.

Both modes read the collection's active products, skip products already queued or live for the shop,
keep catalog order, and lay drops end to end from an anchor:

    start_i = anchor + i * duration,  end_i = start_i + duration

schedule_all anchors at a caller-supplied UTC instant; append anchors at the queue tail (or now).
The batch is inserted in one transaction; a conflict rejects the whole batch.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.constants import DEFAULT_DROP_DURATION_MINUTES
from app.core.errors import BadInput
from app.models.drop import Drop
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import CatalogProduct, ShopSession, to_gid
from app.services.store import (
    build_drop,
    get_settings,
    insert_drop,
    insert_drops,
    queue_tail_end,
    live_product_ids,
    upsert_settings,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def require_utc(value: Any, field: str = "start_time") -> datetime:
    """
    Accept an aware datetime at UTC offset zero, or an ISO-8601 string for one ("Z" or "+00:00").
    Naive or non-UTC instants are BadInput so local-time strings never reach the engine.
    """
    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(raw)
        except ValueError as e:
            raise BadInput(f"Invalid {field}. Expected UTC ISO string.") from e
    if not isinstance(value, datetime):
        raise BadInput(f"Invalid or missing {field}. Expected UTC ISO string.")
    if value.tzinfo is None or value.utcoffset() != timedelta(0):
        raise BadInput(f"{field} must be an absolute UTC instant (e.g. 2025-01-01T10:00:00Z).")
    return value.astimezone(timezone.utc)


def require_duration(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise BadInput("Invalid duration. Must be a positive number.")
    return value


def _collection_gid(collection_id: Any) -> str:
    gid = to_gid("Collection", collection_id) if collection_id else None
    if not gid:
        raise BadInput("Missing or invalid queued_collection_id.")
    return gid


def plan_batch(
    shop: str,
    products: list[CatalogProduct],
    anchor: datetime,
    duration_minutes: int,
) -> list[Drop]:
    """Queued rows laid end to end from anchor, in the order given. Pure; nothing is saved."""
    step = timedelta(minutes=duration_minutes)
    return [
        build_drop(
            shop=shop,
            product_id=p.id,
            title=p.title,
            thumbnail_url=p.image_url,
            start_time=anchor + i * step,
            duration_minutes=duration_minutes,
        )
        for i, p in enumerate(products)
    ]


def _unscheduled_products(
    db: Session,
    catalog: CatalogGateway,
    session: ShopSession,
    shop: str,
    collection_gid: str,
) -> tuple[list[CatalogProduct], str | None]:
    """Active products with no queued or active drop. Second item is the zero-result message, if any."""
    products = catalog.list_active_products(session, collection_gid)
    if not products:
        return [], "No active products found in the specified collection to schedule."
    already = live_product_ids(db, shop)
    fresh = [p for p in products if p.id not in already]
    if not fresh:
        return [], "All active products in the collection are already scheduled."
    return fresh, None


def schedule_all(
    db: Session,
    catalog: CatalogGateway,
    session: ShopSession,
    shop: str,
    collection_id: Any,
    initial_start_time_utc: Any,
    duration_minutes: Any,
) -> dict[str, Any]:
    """Schedule every unqueued active product of the collection starting at initial_start_time_utc."""
    anchor = require_utc(initial_start_time_utc, "initial_start_time_utc")
    duration = require_duration(duration_minutes)
    collection_gid = _collection_gid(collection_id)

    products, empty_message = _unscheduled_products(db, catalog, session, shop, collection_gid)
    if empty_message:
        upsert_settings(db, shop, {"queued_collection_id": collection_gid})
        logger.info("schedule_all for %s (%s): %s", shop, collection_gid, empty_message)
        return {"scheduled_count": 0, "message": empty_message}

    rows = insert_drops(db, plan_batch(shop, products, anchor, duration))
    # After the commit: a rejected batch leaves settings untouched
    upsert_settings(db, shop, {"queued_collection_id": collection_gid})
    logger.info(
        "Scheduled %s drops for %s from %s (%s min each)",
        len(rows),
        shop,
        anchor.isoformat(),
        duration,
    )
    return {
        "scheduled_count": len(rows),
        "message": f"Successfully scheduled {len(rows)} new drops.",
    }


def append(
    db: Session,
    catalog: CatalogGateway,
    session: ShopSession,
    shop: str,
    collection_id: Any,
    now: Callable[[], datetime] = utc_now,
) -> dict[str, Any]:
    """Queue unqueued active products after the current queue tail (or from now when empty)."""
    collection_gid = _collection_gid(collection_id)
    duration = get_settings(db, shop).get("default_drop_duration_minutes") or DEFAULT_DROP_DURATION_MINUTES

    products, empty_message = _unscheduled_products(db, catalog, session, shop, collection_gid)
    if empty_message:
        logger.info("append for %s (%s): %s", shop, collection_gid, empty_message)
        return {"scheduled_count": 0, "message": empty_message}

    anchor = queue_tail_end(db, shop) or now()
    rows = insert_drops(db, plan_batch(shop, products, anchor, duration))
    logger.info("Appended %s drops for %s from %s", len(rows), shop, anchor.isoformat())
    return {
        "scheduled_count": len(rows),
        "message": f"Successfully appended {len(rows)} new drops.",
    }


def create_drop(
    db: Session,
    shop: str,
    *,
    product_id: Any,
    title: Any,
    start_time: Any,
    duration_minutes: Any,
    thumbnail_url: str | None = None,
) -> Drop:
    """Single operator-created drop. A start_time in the past is allowed (promotes on next pass)."""
    product_gid = to_gid("Product", product_id) if product_id else None
    if not product_gid or not title or not str(title).strip():
        raise BadInput("Missing required fields: product_id, title, start_time, duration_minutes.")
    drop = build_drop(
        shop=shop,
        product_id=product_gid,
        title=str(title).strip(),
        thumbnail_url=thumbnail_url,
        start_time=require_utc(start_time),
        duration_minutes=require_duration(duration_minutes),
    )
    row = insert_drop(db, drop)
    logger.info("Created drop %s (%s) for %s at %s", row.id, row.title, shop, row.start_time.isoformat())
    return row
