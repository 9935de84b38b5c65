"""Protocol for the catalog gateway. Shopify today; tests plug in an in-memory catalog."""
from typing import Protocol

from app.services.catalog.types import CatalogCollection, CatalogProduct, ShopKey, ShopSession


class CatalogGateway(Protocol):
    """
    Read access to collections/products plus the shop metafield the publisher writes.
    Raises Unauthorized, Upstream or Unreachable (app.core.errors) on failure.
    """

    def verify_session(self, session: ShopSession) -> bool:
        """True when the token is accepted by the platform for session.shop."""
        ...

    def list_collections(self, session: ShopSession) -> list[CatalogCollection]:
        """Custom + smart collections merged and sorted by title; ids in GID form."""
        ...

    def list_active_products(
        self,
        session: ShopSession,
        collection_id: str,
        limit: int = 250,
    ) -> list[CatalogProduct]:
        """Products with status active, in the catalog's enumeration order."""
        ...

    def resolve_handle(self, session: ShopSession, product_id: str) -> str | None:
        """Public handle of the product, or None if deleted/inaccessible."""
        ...

    def get_shop_key(self, session: ShopSession, namespace: str, key: str) -> ShopKey:
        ...

    def set_shop_key(
        self,
        session: ShopSession,
        owner_id: str,
        namespace: str,
        key: str,
        value: str,
    ) -> str | None:
        """Upsert the shop metafield; returns its instance id."""
        ...
