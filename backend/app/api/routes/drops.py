"""
Drops API: list by status, create one, schedule a collection, delete, stop and clear.

Mutations that can change what is live (schedule, append, create, delete) kick an immediate
promote + converge + broadcast pass for the shop instead of waiting for the next tick.
"""
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_engine, get_shop_session
from app.core.constants import COMPLETED_PAGE_MAX, DEFAULT_PAGE_SIZE, QUEUED_PAGE_MAX, STATUS_COMPLETED, STATUS_QUEUED
from app.core.errors import BadInput, DropSchedulerError
from app.db.session import get_db
from app.scheduler.engine import DropEngine
from app.scheduler.shop_actor import Command
from app.services import scheduling
from app.services.catalog.types import ShopSession
from app.services.store import delete_completed, delete_queued, get_active, list_all_drops, list_drops

router = APIRouter()
logger = logging.getLogger(__name__)


def _kick(engine: DropEngine, shop: str, command: Command) -> None:
    """Immediate pass after a committed change. A failure here only delays it to the next tick."""
    try:
        engine.trigger(shop, command)
    except DropSchedulerError as e:
        logger.warning("Immediate %s pass for %s failed; next tick retries: %s", command.value, shop, e, exc_info=True)


def _page(rows: list, total: int) -> dict[str, Any]:
    return {"data": [r.to_dict() for r in rows], "totalCount": total}


# --- Read ---


@router.get("")
def all_drops(
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Every drop of the shop, start_time ascending."""
    return [d.to_dict() for d in list_all_drops(db, session.shop)]


@router.get("/active")
def active_drop(
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
) -> dict[str, Any] | None:
    active = get_active(db, session.shop)
    return active.to_dict() if active else None


@router.get("/queued")
def queued_drops(
    page: str | None = Query(None),
    limit: str | None = Query(None),
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    rows, total = list_drops(
        db, session.shop, STATUS_QUEUED, page=page or 1, limit=limit or DEFAULT_PAGE_SIZE, max_limit=QUEUED_PAGE_MAX
    )
    return _page(rows, total)


@router.get("/completed")
def completed_drops(
    page: str | None = Query(None),
    limit: str | None = Query(None),
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    rows, total = list_drops(
        db, session.shop, STATUS_COMPLETED, page=page or 1, limit=limit or DEFAULT_PAGE_SIZE, max_limit=COMPLETED_PAGE_MAX
    )
    return _page(rows, total)


# --- Create / schedule ---


class CreateDropRequest(BaseModel):
    product_id: str | None = None
    title: str | None = None
    thumbnail_url: str | None = None
    start_time: str | None = None
    duration_minutes: int | None = None


class ScheduleAllRequest(BaseModel):
    queued_collection_id: str | None = None
    initial_start_time_utc: str | None = None
    duration_minutes: int | None = None


class AppendRequest(BaseModel):
    queued_collection_id: str | None = None


@router.post("", status_code=201)
def create_drop(
    body: CreateDropRequest,
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Create one queued drop. start_time must be a UTC ISO instant; past instants promote right away."""
    row = scheduling.create_drop(
        db,
        session.shop,
        product_id=body.product_id,
        title=body.title,
        thumbnail_url=body.thumbnail_url,
        start_time=body.start_time,
        duration_minutes=body.duration_minutes,
    )
    out = row.to_dict()
    _kick(engine, session.shop, Command.CREATED)
    return out


def _scheduled_response(result: dict[str, Any]) -> JSONResponse:
    return JSONResponse(result, status_code=201 if result["scheduled_count"] else 200)


@router.post("/schedule-all")
def schedule_all(
    body: ScheduleAllRequest,
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> JSONResponse:
    """Queue the collection's active products back to back from initial_start_time_utc."""
    result = scheduling.schedule_all(
        db,
        engine.catalog,
        session,
        session.shop,
        body.queued_collection_id,
        body.initial_start_time_utc,
        body.duration_minutes,
    )
    if result["scheduled_count"]:
        _kick(engine, session.shop, Command.SCHEDULED)
    return _scheduled_response(result)


@router.post("/append")
def append(
    body: AppendRequest,
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> JSONResponse:
    """Queue not-yet-queued products after the current queue tail (or from now)."""
    result = scheduling.append(db, engine.catalog, session, session.shop, body.queued_collection_id, now=engine.clock)
    if result["scheduled_count"]:
        _kick(engine, session.shop, Command.SCHEDULED)
    return _scheduled_response(result)


# --- Delete ---


class DeleteDropsRequest(BaseModel):
    dropIds: list[str] | None = None


@router.delete("")
def delete_drops(
    body: DeleteDropsRequest,
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Delete queued drops by id. Active and completed ids in the list are ignored."""
    if not body.dropIds:
        raise BadInput("Missing or invalid dropIds array in request body.")
    count = delete_queued(db, session.shop, body.dropIds)
    _kick(engine, session.shop, Command.DELETED)
    return {"deleted_count": count, "message": f"Successfully deleted {count} queued drops."}


@router.delete("/completed")
def clear_completed(
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    count = delete_completed(db, session.shop)
    _kick(engine, session.shop, Command.DELETED)
    return {"deleted_count": count, "message": f"Successfully cleared {count} completed drops."}


@router.post("/stop-and-clear-queue")
def stop_and_clear_queue(
    session: ShopSession = Depends(get_shop_session),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    """End the active drop now, delete the queue, forget the queued collection, clear the metafield."""
    return engine.trigger(session.shop, Command.STOP_AND_CLEAR)
