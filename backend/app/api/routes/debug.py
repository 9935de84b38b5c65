"""Debug API for the published metafield: live value vs. publisher cache, and a forced publish."""
import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_engine, get_shop_session
from app.core.constants import METAFIELD_KEY, METAFIELD_NAMESPACE
from app.scheduler.engine import DropEngine
from app.scheduler.shop_actor import Command
from app.services.catalog.types import ShopSession

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/metafield")
def metafield(
    session: ShopSession = Depends(get_shop_session),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    key = engine.catalog.get_shop_key(session, METAFIELD_NAMESPACE, METAFIELD_KEY)
    return {
        "success": True,
        "current_metafield": {"id": key.instance_id, "value": key.value} if key.instance_id else None,
        "cache_state": engine.actor(session.shop).publisher.snapshot(),
    }


class MetafieldUpdateRequest(BaseModel):
    reset_cache: bool = False


@router.post("/metafield/update")
def metafield_update(
    body: MetafieldUpdateRequest | None = None,
    session: ShopSession = Depends(get_shop_session),
    engine: DropEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Forced publish (optionally after dropping the publisher cache)."""
    reset = bool(body and body.reset_cache)
    logger.info("Forcing metafield update for %s via debug endpoint (reset_cache=%s)", session.shop, reset)
    result = engine.trigger(session.shop, Command.PUBLISH, reset_cache=reset)
    return {"success": True, "message": "Metafield update triggered", **result}
