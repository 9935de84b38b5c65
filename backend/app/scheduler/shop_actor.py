"""
Per-shop actor: one worker thread and one mailbox per shop with live subscribers.

Everything that changes a shop's drops or its published key goes through run_pass / stop_and_clear
/ force_publish while holding the shop lock, whether the worker runs it (subscribers attached) or
an HTTP caller runs it inline (no worker). Store CAS covers callers in other processes.
"""
import enum
import logging
import queue
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.constants import SOURCE_DEBUG, SOURCE_OPERATOR, SOURCE_STOP_AND_CLEAR, SOURCE_TICK
from app.db.session import SessionLocal
from app.services import broadcast
from app.services.broadcast import Broadcaster
from app.services.catalog.base import CatalogGateway
from app.services.catalog.types import ShopSession
from app.services.lifecycle import TRANSITION_COMPLETED, TickResult, Transition, run_tick, stop_and_clear
from app.services.publisher import KeyPublisher

logger = logging.getLogger(__name__)


class Command(enum.Enum):
    TICK = "tick"
    SCHEDULED = "scheduled"
    CREATED = "created"
    DELETED = "deleted"
    STOP_AND_CLEAR = "stop_and_clear"
    PUBLISH = "publish"
    SHUTDOWN = "shutdown"


# Operator commands that change the queued list even when no drop changes status
_QUEUE_COMMANDS = (Command.SCHEDULED, Command.CREATED, Command.DELETED, Command.STOP_AND_CLEAR)


class _Envelope:
    __slots__ = ("command", "args", "reply")

    def __init__(self, command: Command, args: dict[str, Any] | None = None, reply: Future | None = None) -> None:
        self.command = command
        self.args = args or {}
        self.reply = reply


class ShopActor:
    def __init__(
        self,
        shop: str,
        *,
        catalog: CatalogGateway,
        broadcaster: Broadcaster,
        session_provider: Callable[[str], ShopSession | None],
        clock: Callable[[], datetime],
        session_factory: Callable[[], Session] = SessionLocal,
    ) -> None:
        self.shop = shop
        self.publisher = KeyPublisher(shop, catalog, session_factory)
        self.lock = threading.Lock()
        self._broadcaster = broadcaster
        self._session_provider = session_provider
        self._clock = clock
        self._session_factory = session_factory
        self._mailbox: queue.Queue[_Envelope] = queue.Queue()
        self._thread: threading.Thread | None = None
        # Guards _accepting and the SHUTDOWN put so nothing lands in the mailbox behind it
        self._state_lock = threading.Lock()
        self._accepting = False
        self._tick_lock = threading.Lock()
        self._tick_pending = False

    # --- Worker lifecycle ---

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._mailbox = queue.Queue()
        self._tick_pending = False
        self._thread = threading.Thread(target=self._run, args=(self._mailbox,), name=f"shop-actor:{self.shop}", daemon=True)
        self._thread.start()
        with self._state_lock:
            self._accepting = True
        logger.info("Started actor for shop %s", self.shop)
        # First pass right away instead of waiting a full tick period
        self.tick()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        thread = self._thread
        if thread is None:
            return
        with self._state_lock:
            self._accepting = False
            self._mailbox.put(_Envelope(Command.SHUTDOWN))
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        self._drain()
        logger.info("Stopped actor for shop %s", self.shop)

    def _drain(self) -> None:
        """Run replied commands the worker never reached (join timed out) inline so no caller waits forever."""
        while True:
            try:
                env = self._mailbox.get_nowait()
            except queue.Empty:
                return
            if env.reply is None or env.command in (Command.TICK, Command.SHUTDOWN):
                continue
            try:
                env.reply.set_result(self.handle(env.command, **env.args))
            except Exception as e:
                env.reply.set_exception(e)

    def tick(self) -> bool:
        """Enqueue TICK unless one is already pending or running. Called by the interval job."""
        with self._tick_lock:
            if self._tick_pending:
                logger.debug("Tick for %s still pending; skipping", self.shop)
                return False
            self._tick_pending = True
        self._mailbox.put(_Envelope(Command.TICK))
        return True

    def submit(self, command: Command, **args: Any) -> Future | None:
        """
        Enqueue a command; the future resolves with its result once the worker runs it.
        None when the worker is stopped or stopping, so the caller runs the command inline.
        """
        with self._state_lock:
            if not self._accepting or not self.running:
                return None
            reply: Future = Future()
            self._mailbox.put(_Envelope(command, args, reply))
        return reply

    def _run(self, mailbox: queue.Queue) -> None:
        while True:
            env = mailbox.get()
            if env.command is Command.SHUTDOWN:
                if env.reply is not None:
                    env.reply.set_result(None)
                return
            try:
                result = self.handle(env.command, **env.args)
            except Exception as e:
                logger.exception("Actor for %s failed on %s", self.shop, env.command.value)
                if env.reply is not None:
                    env.reply.set_exception(e)
            else:
                if env.reply is not None:
                    env.reply.set_result(result)
            finally:
                if env.command is Command.TICK:
                    with self._tick_lock:
                        self._tick_pending = False

    # --- Commands (worker thread or inline caller) ---

    def handle(self, command: Command, **args: Any) -> Any:
        if command is Command.TICK:
            return self._tick_safely()
        if command in (Command.SCHEDULED, Command.CREATED, Command.DELETED):
            return self.run_pass(SOURCE_OPERATOR, command)
        if command is Command.STOP_AND_CLEAR:
            return self.stop_and_clear()
        if command is Command.PUBLISH:
            return self.force_publish(reset_cache=bool(args.get("reset_cache")))
        raise ValueError(f"Unsupported command: {command}")

    def _tick_safely(self) -> TickResult | None:
        """Tick errors are logged and swallowed; the next tick retries."""
        try:
            return self.run_pass(SOURCE_TICK, Command.TICK)
        except Exception:
            logger.warning("Lifecycle tick failed for shop %s", self.shop, exc_info=True)
            return None

    def run_pass(self, source_tag: str, command: Command) -> TickResult:
        """Promote + complete + converge, then tell subscribers what changed."""
        with self.lock:
            result = run_tick(
                self._session_factory,
                self.shop,
                self.publisher,
                self._session_provider(self.shop),
                self._clock(),
                source_tag,
            )
        self._broadcast(
            result.transitions,
            scheduled_changed=result.activated or command in _QUEUE_COMMANDS,
            completed_changed=command is Command.DELETED,
        )
        return result

    def stop_and_clear(self) -> dict[str, Any]:
        with self.lock:
            db = self._session_factory()
            try:
                summary, transitions = stop_and_clear(db, self.shop, self._clock())
            finally:
                db.close()
            session = self._session_provider(self.shop)
            if session is not None:
                self.publisher.publish(session, force=True, source_tag=SOURCE_STOP_AND_CLEAR)
            else:
                logger.warning("[%s] No shop session for %s; metafield not cleared", SOURCE_STOP_AND_CLEAR, self.shop)
        self._broadcast(transitions, scheduled_changed=True, settings_changed=summary["settingsReset"])
        return summary

    def force_publish(self, reset_cache: bool = False) -> dict[str, Any]:
        session = self._session_provider(self.shop)
        with self.lock:
            if reset_cache:
                self.publisher.reset()
            outcome = None
            if session is not None:
                outcome = self.publisher.publish(session, force=True, source_tag=SOURCE_DEBUG)
        return {
            "written": bool(outcome and outcome.written),
            "value": outcome.value if outcome else None,
            "reason": outcome.reason if outcome else "no_session",
            "cache_state": self.publisher.snapshot(),
        }

    # --- Broadcast ---

    def _broadcast(
        self,
        transitions: list[Transition],
        *,
        scheduled_changed: bool = False,
        completed_changed: bool = False,
        settings_changed: bool = False,
    ) -> None:
        if not self._broadcaster.count(self.shop):
            return
        emit = self._broadcaster.emit
        for t in transitions:
            emit(self.shop, broadcast.EVENT_STATUS_CHANGE, t.to_event())
        active_changed = bool(transitions)
        completed_changed = completed_changed or any(t.type == TRANSITION_COMPLETED for t in transitions)
        if not (active_changed or scheduled_changed or completed_changed or settings_changed):
            return
        db = self._session_factory()
        try:
            if active_changed:
                emit(self.shop, broadcast.EVENT_ACTIVE_DROP, broadcast.active_drop_payload(db, self.shop))
            if scheduled_changed:
                emit(self.shop, broadcast.EVENT_SCHEDULED_DROPS, broadcast.scheduled_drops_payload(db, self.shop))
            if completed_changed:
                emit(self.shop, broadcast.EVENT_COMPLETED_DROPS, broadcast.completed_drops_payload(db, self.shop))
            if settings_changed:
                emit(self.shop, broadcast.EVENT_SETTINGS, broadcast.settings_payload(db, self.shop))
        finally:
            db.close()
        emit(self.shop, broadcast.EVENT_REFRESH_NEEDED, {"timestamp": broadcast.now_iso()})
