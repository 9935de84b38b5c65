"""Catalog gateway: protocol and value types. The Shopify implementation lives in
app.services.catalog.shopify_catalog (not re-exported; it depends on app.services.shopify)."""
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import (
    CatalogCollection,
    CatalogProduct,
    ShopKey,
    ShopSession,
    gid_num,
    to_gid,
)

__all__ = [
    "CatalogCollection",
    "CatalogGateway",
    "CatalogProduct",
    "ShopKey",
    "ShopSession",
    "gid_num",
    "to_gid",
]
