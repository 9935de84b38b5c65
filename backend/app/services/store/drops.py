"""
Drops table access. Every status transition is a compare-and-set on status so two promoters
racing on the same shop cannot both win.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.constants import (
    DEFAULT_PAGE_SIZE,
    DROPS_PAGE_MAX,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_QUEUED,
)
from app.core.errors import BadInput, Conflict
from app.models.drop import Drop
from app.services.store.errors import store_errors

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = {
    "start_time": Drop.start_time,
    "end_time": Drop.end_time,
    "created_at": Drop.created_at,
}

# Ordering used when the caller does not pass one ("-" prefix = descending)
DEFAULT_ORDERING = {
    STATUS_QUEUED: "start_time",
    STATUS_ACTIVE: "-start_time",
    STATUS_COMPLETED: "-end_time",
    None: "start_time",
}


def _order_clause(ordering: str):
    desc = ordering.startswith("-")
    col = _ORDER_COLUMNS.get(ordering.lstrip("-"))
    if col is None:
        raise BadInput(f"Unknown ordering: {ordering}")
    return col.desc() if desc else col.asc()


def clamp_page(page: Any, limit: Any, max_limit: int = DROPS_PAGE_MAX) -> tuple[int, int]:
    """Parse page/limit the lenient way the UI sends them; page >= 1, 1 <= limit <= max_limit."""
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    if limit <= 0:
        limit = DEFAULT_PAGE_SIZE
    return max(1, page), min(limit, max_limit)


def list_drops(
    db: Session,
    shop: str,
    status: str | None = None,
    *,
    ordering: str | None = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    max_limit: int = DROPS_PAGE_MAX,
) -> tuple[list[Drop], int]:
    """One page of a shop's drops plus the exact total. Empty list (never NotFound) when none."""
    page, limit = clamp_page(page, limit, max_limit)
    order = _order_clause(ordering or DEFAULT_ORDERING.get(status, "start_time"))
    with store_errors(db, "list_drops"):
        q = db.query(Drop).filter(Drop.shop == shop)
        if status:
            q = q.filter(Drop.status == status)
        total = q.count()
        rows = q.order_by(order, Drop.id.asc()).offset((page - 1) * limit).limit(limit).all()
    return rows, total


def list_all_drops(db: Session, shop: str) -> list[Drop]:
    with store_errors(db, "list_all_drops"):
        return db.query(Drop).filter(Drop.shop == shop).order_by(Drop.start_time.asc()).all()


def get_active(db: Session, shop: str) -> Drop | None:
    with store_errors(db, "get_active"):
        return (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_ACTIVE)
            .order_by(Drop.start_time.desc())
            .first()
        )


def due_queued(db: Session, shop: str, now: datetime) -> list[Drop]:
    """Queued drops whose start_time has passed, earliest first."""
    with store_errors(db, "due_queued"):
        return (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_QUEUED, Drop.start_time <= now)
            .order_by(Drop.start_time.asc(), Drop.created_at.asc())
            .all()
        )


def expired_active(db: Session, shop: str, now: datetime) -> list[Drop]:
    with store_errors(db, "expired_active"):
        return (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_ACTIVE, Drop.end_time <= now)
            .all()
        )


def live_product_ids(db: Session, shop: str) -> set[str]:
    """Products with a queued or active drop; the same set the live-product unique index covers."""
    with store_errors(db, "live_product_ids"):
        rows = (
            db.query(Drop.product_id)
            .filter(Drop.shop == shop, Drop.status.in_((STATUS_QUEUED, STATUS_ACTIVE)))
            .all()
        )
    return {r[0] for r in rows}


def queue_tail_end(db: Session, shop: str) -> datetime | None:
    """max(end_time) over the shop's queued drops, or None when the queue is empty."""
    with store_errors(db, "queue_tail_end"):
        tail = (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_QUEUED)
            .order_by(Drop.end_time.desc())
            .first()
        )
    return tail.end_time if tail else None


def build_drop(
    *,
    shop: str,
    product_id: str,
    title: str,
    thumbnail_url: str | None,
    start_time: datetime,
    duration_minutes: int,
) -> Drop:
    """New queued row with end_time derived from start_time + duration."""
    if not isinstance(duration_minutes, int) or isinstance(duration_minutes, bool) or duration_minutes <= 0:
        raise BadInput("Invalid duration. Must be a positive number.")
    return Drop(
        shop=shop,
        product_id=product_id,
        title=title,
        thumbnail_url=thumbnail_url or None,
        start_time=start_time,
        end_time=start_time + timedelta(minutes=duration_minutes),
        duration_minutes=duration_minutes,
        status=STATUS_QUEUED,
    )


def insert_drop(db: Session, drop: Drop) -> Drop:
    """Insert one row. Conflict when the product is already queued/active for the shop."""
    with store_errors(db, "insert_drop"):
        db.add(drop)
        db.commit()
    db.refresh(drop)
    return drop


def insert_drops(db: Session, drops: list[Drop]) -> list[Drop]:
    """Atomic batch: one commit for all rows; any conflict rolls back the whole batch."""
    if not drops:
        return []
    with store_errors(db, "insert_drops"):
        db.add_all(drops)
        db.commit()
    for d in drops:
        db.refresh(d)
    return drops


def update_status(
    db: Session,
    drop_id: str,
    shop: str,
    from_status: str,
    to_status: str,
    *,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> Drop | None:
    """
    Compare-and-set on status. Returns the updated row, or None when the row is no longer in
    from_status (another caller won) or the change would give the shop a second active drop.
    """
    values: dict[Any, Any] = {Drop.status: to_status, Drop.updated_at: func.now()}
    if start_time is not None:
        values[Drop.start_time] = start_time
    if end_time is not None:
        values[Drop.end_time] = end_time
    try:
        with store_errors(db, "update_status"):
            updated = (
                db.query(Drop)
                .filter(Drop.id == drop_id, Drop.shop == shop, Drop.status == from_status)
                .update(values, synchronize_session=False)
            )
            db.commit()
    except Conflict:
        logger.info("update_status: %s -> %s rejected for drop %s (shop %s already has an active drop)", from_status, to_status, drop_id, shop)
        return None
    if not updated:
        return None
    db.expire_all()
    return db.query(Drop).filter(Drop.id == drop_id).first()


def delete_queued(db: Session, shop: str, ids: Iterable[str]) -> int:
    """Delete the given ids that are queued for this shop; other statuses are skipped."""
    ids = [str(i) for i in ids if i]
    if not ids:
        return 0
    with store_errors(db, "delete_queued"):
        deleted = (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.id.in_(ids), Drop.status == STATUS_QUEUED)
            .delete(synchronize_session=False)
        )
        db.commit()
    return deleted


def delete_all_queued(db: Session, shop: str) -> int:
    with store_errors(db, "delete_all_queued"):
        deleted = (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_QUEUED)
            .delete(synchronize_session=False)
        )
        db.commit()
    return deleted


def delete_completed(db: Session, shop: str) -> int:
    with store_errors(db, "delete_completed"):
        deleted = (
            db.query(Drop)
            .filter(Drop.shop == shop, Drop.status == STATUS_COMPLETED)
            .delete(synchronize_session=False)
        )
        db.commit()
    return deleted
