"""Shopify Admin API: client (transport + error classification) and config."""
from app.services.shopify.client import ShopifyClient
from app.services.shopify.config import ShopifyConfig

__all__ = ["ShopifyClient", "ShopifyConfig"]
