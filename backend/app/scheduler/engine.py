"""
DropEngine: the process-wide registry of shop actors, validated shop sessions and subscriber rooms.

A shop's actor worker runs while the shop has at least one subscriber; an APScheduler interval
job (id lifecycle:<shop>) enqueues its ticks. Operator commands for a shop without a running
worker run inline in the caller under the shop lock.
"""
import concurrent.futures
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.orm import Session

from app.config import settings
from app.core.constants import ACTOR_REPLY_TIMEOUT_SECONDS, LIFECYCLE_JOB_ID_PREFIX
from app.core.errors import Internal, Unauthorized
from app.db.session import SessionLocal
from app.scheduler.shop_actor import Command, ShopActor
from app.services.broadcast import Broadcaster, Subscriber
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import ShopSession

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def lifecycle_job_id(shop: str) -> str:
    return f"{LIFECYCLE_JOB_ID_PREFIX}{shop}"


class DropEngine:
    def __init__(
        self,
        catalog: CatalogGateway,
        *,
        scheduler: BaseScheduler | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = utc_now,
        tick_seconds: int | None = None,
    ) -> None:
        self.catalog = catalog
        self.broadcaster = Broadcaster()
        self.clock = clock
        self._scheduler = scheduler
        self.session_factory = session_factory
        self._tick_seconds = tick_seconds or settings.lifecycle_tick_seconds
        self._actors: dict[str, ShopActor] = {}
        self._sessions: dict[str, ShopSession] = {}
        self._lock = threading.Lock()

    # --- Sessions ---

    def authenticate(self, shop: str, token: str | None) -> ShopSession:
        """Validated session for (shop, token). Tokens already verified this process skip the round-trip."""
        if not token:
            raise Unauthorized("Unauthorized: Missing or invalid token.")
        candidate = ShopSession(shop, token)
        with self._lock:
            if self._sessions.get(shop) == candidate:
                return self._sessions[shop]
        if not self.catalog.verify_session(candidate):
            logger.warning("Token rejected for shop %s", shop)
            raise Unauthorized("Unauthorized: Invalid token for shop.")
        with self._lock:
            self._sessions[shop] = candidate
        logger.info("Validated session for shop %s", shop)
        return candidate

    def session_for(self, shop: str) -> ShopSession | None:
        with self._lock:
            return self._sessions.get(shop)

    # --- Actors ---

    def actor(self, shop: str) -> ShopActor:
        """The shop's actor, created on first use. Its publisher cache lives as long as the process."""
        with self._lock:
            actor = self._actors.get(shop)
            if actor is None:
                actor = ShopActor(
                    shop,
                    catalog=self.catalog,
                    broadcaster=self.broadcaster,
                    session_provider=self.session_for,
                    clock=self.clock,
                    session_factory=self.session_factory,
                )
                self._actors[shop] = actor
            return actor

    def running_shops(self) -> list[str]:
        with self._lock:
            actors = list(self._actors.values())
        return [a.shop for a in actors if a.running]

    def _add_job(self, actor: ShopActor) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            actor.tick,
            "interval",
            seconds=self._tick_seconds,
            id=lifecycle_job_id(actor.shop),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def _remove_job(self, shop: str) -> None:
        if self._scheduler is None:
            return
        job_id = lifecycle_job_id(shop)
        if self._scheduler.get_job(job_id):
            self._scheduler.remove_job(job_id)

    # --- Subscribers ---

    def subscribe(self, shop: str, subscriber: Subscriber) -> None:
        """Join the shop's room; the first subscriber starts the shop's lifecycle loop."""
        size = self.broadcaster.attach(shop, subscriber)
        actor = self.actor(shop)
        if not actor.running:
            actor.start()
            self._add_job(actor)
            logger.info("Lifecycle loop started for %s (every %ss)", shop, self._tick_seconds)
        else:
            logger.info("Subscriber joined %s (%s connected)", shop, size)

    def unsubscribe(self, shop: str, subscriber: Subscriber) -> None:
        """Leave the room; the last subscriber out stops the loop. In-flight passes finish."""
        remaining = self.broadcaster.detach(shop, subscriber)
        if remaining:
            logger.info("Subscriber left %s (%s still connected)", shop, remaining)
            return
        self._remove_job(shop)
        self.actor(shop).shutdown()
        logger.info("Last subscriber left %s; lifecycle loop stopped", shop)

    # --- Operator commands ---

    def trigger(self, shop: str, command: Command, **args: Any) -> Any:
        """Run a command through the shop's worker when it runs, else inline under the shop lock."""
        actor = self.actor(shop)
        future = actor.submit(command, **args)
        if future is None:
            return actor.handle(command, **args)
        try:
            return future.result(timeout=ACTOR_REPLY_TIMEOUT_SECONDS)
        except concurrent.futures.TimeoutError as e:
            raise Internal(f"Timed out waiting for the {shop} lifecycle worker.") from e

    def shutdown(self) -> None:
        with self._lock:
            actors = list(self._actors.values())
        for actor in actors:
            self._remove_job(actor.shop)
            actor.shutdown()
