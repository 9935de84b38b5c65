"""
Key publisher: keeps the shop metafield custom.active_drop_product_handle equal to the handle
of the shop's active drop.

One KeyPublisher per shop, owned by that shop's actor (or the caller holding the shop lock), so
publish() is never re-entered for a shop. The cache is process-local and can be rebuilt at any
time from the store and one get_shop_key call.

Write policy:
- active drop with a resolvable handle -> that handle
- active drop whose product is gone -> no write (warning)
- no active drop -> "" only for an explicit clear source tag; otherwise the last handle stays
- value unchanged and not forced -> no write
"""
import logging
import threading
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.constants import (
    CLEAR_SOURCE_TAGS,
    METAFIELD_KEY,
    METAFIELD_NAMESPACE,
    SOURCE_TICK,
)
from app.core.errors import DropSchedulerError
from app.db.session import SessionLocal
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import ShopSession
from app.services.store import get_active

logger = logging.getLogger(__name__)

# PublishOutcome.reason values
REASON_WRITTEN = "written"
REASON_UNCHANGED = "unchanged"
REASON_NO_ACTIVE = "no_active_drop"
REASON_MISSING_HANDLE = "missing_handle"
REASON_ERROR = "error"


class PublisherCache:
    """Owner id, metafield instance id, last value written (or seen on first lookup), last-write flag."""

    __slots__ = ("owner_id", "instance_id", "last_published_value", "last_write_failed")

    def __init__(self) -> None:
        self.owner_id: str | None = None
        self.instance_id: str | None = None
        self.last_published_value: str | None = None
        self.last_write_failed = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "instance_id": self.instance_id,
            "last_published_value": self.last_published_value,
            "last_write_failed": self.last_write_failed,
        }


class PublishOutcome:
    __slots__ = ("written", "value", "reason")

    def __init__(self, written: bool, value: str | None, reason: str) -> None:
        self.written = written
        self.value = value
        self.reason = reason

    def __repr__(self) -> str:
        return f"PublishOutcome(written={self.written}, value={self.value!r}, reason={self.reason!r})"


class KeyPublisher:
    def __init__(
        self,
        shop: str,
        catalog: CatalogGateway,
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.shop = shop
        self._catalog = catalog
        self._session_factory = session_factory
        self._cache = PublisherCache()
        # Guards cache reads from the debug endpoint while the actor writes
        self._cache_lock = threading.Lock()

    def reset(self) -> None:
        """Forget owner/instance ids and the last value; next publish re-reads them."""
        logger.info("Resetting publisher cache for shop %s", self.shop)
        with self._cache_lock:
            self._cache = PublisherCache()

    def snapshot(self) -> dict[str, Any]:
        with self._cache_lock:
            return self._cache.to_dict()

    def _ensure_owner(self, session: ShopSession, source_tag: str) -> None:
        if self._cache.owner_id:
            return
        logger.info("[%s] Cache miss for shop owner id %s; querying", source_tag, self.shop)
        key = self._catalog.get_shop_key(session, METAFIELD_NAMESPACE, METAFIELD_KEY)
        with self._cache_lock:
            self._cache.owner_id = key.owner_id
            self._cache.instance_id = key.instance_id
            self._cache.last_published_value = key.value
        logger.info(
            "[%s] Shop %s owner=%s metafield=%s current=%r",
            source_tag,
            self.shop,
            key.owner_id,
            key.instance_id,
            key.value,
        )

    def _active_product_id(self) -> str | None:
        db = self._session_factory()
        try:
            active = get_active(db, self.shop)
            return active.product_id if active else None
        finally:
            db.close()

    def _value_to_set(self, session: ShopSession, source_tag: str) -> tuple[str | None, str]:
        """(value, reason). value None means nothing should be written."""
        product_id = self._active_product_id()
        if product_id is None:
            if source_tag in CLEAR_SOURCE_TAGS:
                return "", REASON_WRITTEN
            logger.debug("[%s] No active drop for %s; keeping last published value", source_tag, self.shop)
            return None, REASON_NO_ACTIVE
        handle = self._catalog.resolve_handle(session, product_id)
        if not handle:
            logger.warning(
                "[%s] Could not resolve handle for active product %s on %s (deleted or inaccessible); not publishing",
                source_tag,
                product_id,
                self.shop,
            )
            return None, REASON_MISSING_HANDLE
        return handle, REASON_WRITTEN

    def publish(self, session: ShopSession, *, force: bool = False, source_tag: str = SOURCE_TICK) -> PublishOutcome:
        """
        Converge the metafield on the active drop. Never raises: failures set last_write_failed
        and the next tick tries again.
        """
        logger.debug("[%s] Publishing for shop %s (force=%s)", source_tag, self.shop, force)
        try:
            self._ensure_owner(session, source_tag)
            value, reason = self._value_to_set(session, source_tag)
        except DropSchedulerError as e:
            logger.warning("[%s] Publish lookup failed for %s: %s", source_tag, self.shop, e, exc_info=True)
            with self._cache_lock:
                self._cache.last_write_failed = True
            return PublishOutcome(False, None, REASON_ERROR)
        if value is None:
            return PublishOutcome(False, None, reason)

        last = self._cache.last_published_value
        if value == last and not force:
            logger.debug("[%s] Metafield for %s already %r; no write", source_tag, self.shop, value)
            with self._cache_lock:
                self._cache.last_write_failed = False
            return PublishOutcome(False, value, REASON_UNCHANGED)

        logger.info("[%s] Setting metafield for %s to %r (was %r, force=%s)", source_tag, self.shop, value, last, force)
        try:
            instance_id = self._catalog.set_shop_key(
                session, self._cache.owner_id, METAFIELD_NAMESPACE, METAFIELD_KEY, value
            )
        except DropSchedulerError as e:
            logger.warning("[%s] Metafield write failed for %s: %s", source_tag, self.shop, e, exc_info=True)
            with self._cache_lock:
                self._cache.last_write_failed = True
            return PublishOutcome(False, value, REASON_ERROR)
        with self._cache_lock:
            self._cache.last_published_value = value
            self._cache.last_write_failed = False
            if instance_id:
                self._cache.instance_id = instance_id
        return PublishOutcome(True, value, REASON_WRITTEN)
