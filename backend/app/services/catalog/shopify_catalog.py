"""Shopify implementation of CatalogGateway. Queries here; ShopifyClient below just sends them."""
import logging
from typing import Any

from app.core.constants import CATALOG_PRODUCTS_LIMIT, CATALOG_PRODUCTS_PAGE_MAX, METAFIELD_TYPE
from app.core.errors import BadInput, NotFound, Upstream
from app.services.catalog.types import (
    CatalogCollection,
    CatalogProduct,
    ShopKey,
    ShopSession,
    gid_num,
    to_gid,
)
from app.services.shopify.client import ShopifyClient

logger = logging.getLogger(__name__)

_ACTIVE = "ACTIVE"

COLLECTION_PRODUCTS_QUERY = """
query CollectionProducts($id: ID!, $first: Int!, $after: String) {
  collection(id: $id) {
    id
    products(first: $first, after: $after) {
      nodes {
        id
        title
        status
        featuredImage { url }
      }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

PRODUCT_HANDLE_QUERY = """
query ProductHandle($id: ID!) {
  product(id: $id) { handle }
}
"""

SHOP_KEY_QUERY = """
query ShopKey($namespace: String!, $key: String!) {
  shop {
    id
    metafield(namespace: $namespace, key: $key) { id value }
  }
}
"""

SET_SHOP_KEY_MUTATION = """
mutation SetShopKey($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id key namespace value }
    userErrors { field message }
  }
}
"""


class ShopifyCatalog:
    """Collections, products and the shop metafield, via REST and GraphQL Admin API."""

    def __init__(self, client: ShopifyClient | None = None) -> None:
        self._client = client or ShopifyClient()

    def verify_session(self, session: ShopSession) -> bool:
        body = self._client.rest_get(session, "shop.json")
        return isinstance(body.get("shop"), dict)

    def list_collections(self, session: ShopSession) -> list[CatalogCollection]:
        out: list[CatalogCollection] = []
        for path, key in (("custom_collections.json", "custom_collections"), ("smart_collections.json", "smart_collections")):
            body = self._client.rest_get(session, path, {"fields": "id,title", "limit": 250})
            rows = body.get(key)
            if not isinstance(rows, list):
                raise Upstream(f"Shopify response lacked {key}.")
            for col in rows:
                gid = to_gid("Collection", col.get("id"))
                if gid:
                    out.append(CatalogCollection(id=gid, title=col.get("title") or ""))
        out.sort(key=lambda c: (c.title.lower(), c.id))
        return out

    def _product_is_active(self, session: ShopSession, product_id: str) -> bool:
        """Status round-trip for a product whose status was not in the collection listing."""
        body = self._client.rest_get(session, f"products/{gid_num(product_id)}.json", {"fields": "id,status"})
        return ((body.get("product") or {}).get("status") or "").lower() == "active"

    def list_active_products(
        self,
        session: ShopSession,
        collection_id: str,
        limit: int = CATALOG_PRODUCTS_LIMIT,
    ) -> list[CatalogProduct]:
        gid = to_gid("Collection", collection_id)
        if not gid:
            raise BadInput("Invalid collection id format.")
        out: list[CatalogProduct] = []
        after: str | None = None
        while len(out) < limit:
            data = self._client.graphql(
                session,
                COLLECTION_PRODUCTS_QUERY,
                {"id": gid, "first": min(CATALOG_PRODUCTS_PAGE_MAX, limit), "after": after},
            )
            collection = data.get("collection")
            if not collection:
                raise NotFound(f"Collection with ID {gid} not found or access denied.")
            products = collection.get("products") or {}
            nodes: list[dict[str, Any]] = products.get("nodes") or []
            for node in nodes:
                status = node.get("status")
                if status is None:
                    active = self._product_is_active(session, node.get("id"))
                else:
                    active = str(status).upper() == _ACTIVE
                if not active:
                    logger.debug("Skipping product %s (%s): not active", node.get("id"), node.get("title"))
                    continue
                out.append(
                    CatalogProduct(
                        id=node["id"],
                        title=node.get("title") or "",
                        image_url=(node.get("featuredImage") or {}).get("url"),
                    )
                )
                if len(out) >= limit:
                    break
            page_info = products.get("pageInfo") or {}
            if not page_info.get("hasNextPage") or not page_info.get("endCursor"):
                break
            after = page_info["endCursor"]
        return out

    def resolve_handle(self, session: ShopSession, product_id: str) -> str | None:
        data = self._client.graphql(session, PRODUCT_HANDLE_QUERY, {"id": product_id})
        product = data.get("product")
        if not product:
            return None
        return product.get("handle") or None

    def get_shop_key(self, session: ShopSession, namespace: str, key: str) -> ShopKey:
        data = self._client.graphql(session, SHOP_KEY_QUERY, {"namespace": namespace, "key": key})
        shop = data.get("shop") or {}
        owner_id = shop.get("id")
        if not owner_id:
            raise Upstream(f"Shopify did not return a shop id for {session.shop}.")
        metafield = shop.get("metafield") or {}
        return ShopKey(owner_id=owner_id, instance_id=metafield.get("id"), value=metafield.get("value"))

    def set_shop_key(
        self,
        session: ShopSession,
        owner_id: str,
        namespace: str,
        key: str,
        value: str,
    ) -> str | None:
        variables = {
            "metafields": [
                {
                    "ownerId": owner_id,
                    "namespace": namespace,
                    "key": key,
                    "type": METAFIELD_TYPE,
                    "value": value,
                }
            ]
        }
        data = self._client.graphql(session, SET_SHOP_KEY_MUTATION, variables)
        result = data.get("metafieldsSet") or {}
        user_errors = result.get("userErrors") or []
        if user_errors:
            raise Upstream(f"metafieldsSet userErrors: {user_errors}")
        metafields = result.get("metafields")
        if not metafields:
            raise Upstream("metafieldsSet returned no metafields.")
        return metafields[0].get("id")
