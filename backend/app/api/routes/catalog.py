"""Catalog passthrough for the operator UI: collections, products of a collection, token check."""
import logging
from typing import Any

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_engine, get_shop_session
from app.core.constants import PRODUCT_PICKER_LIMIT_MAX
from app.core.errors import BadInput
from app.scheduler.engine import DropEngine
from app.services.catalog.types import ShopSession, to_gid

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/verify-session")
def verify_session(session: ShopSession = Depends(get_shop_session)) -> dict[str, Any]:
    """200 when the bearer token is valid for the shop (validation happens in the dependency)."""
    return {"ok": True, "shop": session.shop}


@router.get("/collections")
def collections(
    session: ShopSession = Depends(get_shop_session),
    engine: DropEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    rows = engine.catalog.list_collections(session)
    logger.info("Found %s collections for shop %s", len(rows), session.shop)
    return [c.to_row() for c in rows]


@router.get("/products-by-collection")
def products_by_collection(
    collectionId: str | None = Query(None),
    limit: str | None = Query(None),
    session: ShopSession = Depends(get_shop_session),
    engine: DropEngine = Depends(get_engine),
) -> list[dict[str, Any]]:
    """Active products of a collection for the single-drop picker (at most 50)."""
    if not collectionId:
        raise BadInput("Bad Request: collectionId parameter is missing.")
    gid = to_gid("Collection", collectionId)
    if not gid:
        raise BadInput("Bad Request: Invalid collectionId format.")
    try:
        n = int(limit) if limit else PRODUCT_PICKER_LIMIT_MAX
    except ValueError:
        n = PRODUCT_PICKER_LIMIT_MAX
    n = max(1, min(n, PRODUCT_PICKER_LIMIT_MAX))
    return [p.to_row() for p in engine.catalog.list_active_products(session, gid, limit=n)]
