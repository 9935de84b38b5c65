"""Shopify Admin API config. API version and timeout from app settings or ShopifyClient args."""
from app.config import settings


class ShopifyConfig:
    """API version, timeout and retry budget for the Admin API."""

    __slots__ = ("api_version", "timeout", "max_attempts", "backoff_base")

    def __init__(
        self,
        *,
        api_version: str | None = None,
        timeout: float | None = None,
        max_attempts: int = 3,
        backoff_base: float = 0.4,
    ) -> None:
        self.api_version = (api_version or settings.shopify_api_version).strip()
        self.timeout = timeout if timeout is not None else settings.shopify_timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base

    def base_url(self, shop: str) -> str:
        return f"https://{shop}/admin/api/{self.api_version}"

    def headers(self, access_token: str) -> dict[str, str]:
        return {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
