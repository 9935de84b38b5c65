"""Settings API: per-shop defaults for the scheduler UI (upsert on shop)."""
import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_engine, get_shop_session
from app.db.session import get_db
from app.scheduler.engine import DropEngine
from app.services.broadcast import EVENT_SETTINGS
from app.services.catalog.types import ShopSession
from app.services.store import get_settings, upsert_settings

router = APIRouter()
logger = logging.getLogger(__name__)


class SettingsPatch(BaseModel):
    """Only fields present in the request body are written."""

    queued_collection_id: str | None = None
    drop_time: str | None = None
    default_drop_duration_minutes: int | None = None
    default_drop_date: date | None = None


@router.get("")
def read_settings(
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Saved settings, or defaults when the shop has never saved any."""
    return get_settings(db, session.shop)


@router.post("")
def save_settings(
    body: SettingsPatch,
    session: ShopSession = Depends(get_shop_session),
    db: Session = Depends(get_db),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    saved = upsert_settings(db, session.shop, body.model_dump(exclude_unset=True))
    engine.broadcaster.emit(session.shop, EVENT_SETTINGS, saved)
    return saved
