"""Shopify Admin API client: lowest level, sends REST/GraphQL requests and classifies failures."""
import logging
import random
import time
from typing import Any, Callable

import httpx

from app.core.errors import Unauthorized, Unreachable, Upstream
from app.services.catalog.types import ShopSession
from app.services.shopify.config import ShopifyConfig

logger = logging.getLogger(__name__)

_THROTTLED = 429


class ShopifyClient:
    """REST + GraphQL client for one process; each call opens a short-lived httpx.Client."""

    def __init__(
        self,
        config: ShopifyConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or ShopifyConfig()
        self._transport = transport
        self._sleep = sleep

    def _backoff_delay(self, attempt: int) -> float:
        return min(10.0, self._config.backoff_base * (2 ** (attempt - 1))) + random.uniform(0, 0.25)

    def _send(
        self,
        session: ShopSession,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        if not session or not session.shop or not session.access_token:
            raise Unauthorized("Shop session missing or has no access token.")
        url = f"{self._config.base_url(session.shop)}/{path.lstrip('/')}"
        headers = self._config.headers(session.access_token)
        attempt = 0
        while True:
            attempt += 1
            try:
                with httpx.Client(timeout=self._config.timeout, transport=self._transport) as c:
                    r = c.request(method, url, params=params, json=json_body, headers=headers)
            except httpx.TimeoutException as e:
                raise Unreachable(f"Shopify request timed out ({path}).") from e
            except httpx.TransportError as e:
                raise Unreachable(f"Could not reach Shopify ({path}): {e}") from e
            if r.status_code == _THROTTLED and attempt < self._config.max_attempts:
                delay = self._backoff_delay(attempt)
                logger.info("Shopify throttled %s %s for %s; retry %s in %.2fs", method, path, session.shop, attempt, delay)
                self._sleep(delay)
                continue
            break
        if r.status_code in (401, 403):
            raise Unauthorized(f"Shopify rejected the token for {session.shop} ({r.status_code}).")
        if not r.is_success:
            raise Upstream(f"Shopify API error: {r.status_code} {(r.text or '')[:300]}")
        return r

    def _json(self, r: httpx.Response) -> dict[str, Any]:
        try:
            body = r.json() if r.content else {}
        except ValueError as e:
            raise Upstream("Shopify returned a non-JSON body.") from e
        if not isinstance(body, dict):
            raise Upstream("Shopify returned an unexpected response structure.")
        return body

    def rest_get(self, session: ShopSession, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET /admin/api/<version>/<path>; path includes the .json suffix."""
        return self._json(self._send(session, "GET", path, params=params))

    def graphql(self, session: ShopSession, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST graphql.json and return the data object. Top-level errors raise Upstream."""
        body = self._json(
            self._send(session, "POST", "graphql.json", json_body={"query": query, "variables": variables or {}})
        )
        errors = body.get("errors")
        if errors:
            first = errors[0] if isinstance(errors, list) and errors else errors
            msg = first.get("message") if isinstance(first, dict) else str(first)
            raise Upstream(f"Shopify GraphQL error: {msg}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise Upstream("Shopify GraphQL response had no data.")
        return data
