"""
Shared route dependencies: the engine on app.state and the validated shop session.

Every /api route takes ?shop=<name>.myshopify.com and Authorization: Bearer <offline token>.
"""
import re

from fastapi import Depends, Header, Query, Request

from app.core.errors import BadInput, Unauthorized
from app.scheduler.engine import DropEngine
from app.services.catalog.types import ShopSession

_SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")


def validate_shop_domain(shop: str | None) -> str:
    shop = (shop or "").strip().lower()
    if not shop:
        raise BadInput("Bad Request: Shop parameter missing.")
    if not _SHOP_DOMAIN_RE.match(shop):
        raise BadInput("Bad Request: Invalid shop domain.")
    return shop


def bearer_token(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized("Unauthorized: Missing or invalid token.")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise Unauthorized("Unauthorized: Malformed token.")
    return token


def get_engine(request: Request) -> DropEngine:
    return request.app.state.engine


def get_shop_session(
    shop: str | None = Query(None),
    authorization: str | None = Header(None),
    engine: DropEngine = Depends(get_engine),
) -> ShopSession:
    return engine.authenticate(validate_shop_domain(shop), bearer_token(authorization))
