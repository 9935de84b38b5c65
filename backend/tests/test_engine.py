"""Shop actors, subscriber rooms and the engine that starts and stops per-shop loops."""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from app.core.errors import Unauthorized
from app.scheduler.engine import DropEngine, lifecycle_job_id
from app.scheduler.shop_actor import Command, ShopActor
from app.services import broadcast, scheduling
from app.services.broadcast import Broadcaster
from conftest import COLLECTION, EPOCH, SHOP, TOKEN, drops_by_title


class Recorder:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self._lock = threading.Lock()

    def send(self, message: dict) -> None:
        with self._lock:
            self.messages.append(message)

    def events(self) -> list[str]:
        with self._lock:
            return [m["event"] for m in self.messages]

    def data(self, event: str) -> list:
        with self._lock:
            return [m["data"] for m in self.messages if m["event"] == event]


class Broken:
    def send(self, message: dict) -> None:
        raise RuntimeError("socket closed")


@pytest.fixture
def engine(catalog, session_factory, clock):
    eng = DropEngine(catalog, session_factory=session_factory, clock=clock)
    yield eng
    eng.shutdown()


def _schedule(db, catalog, shop_session):
    scheduling.schedule_all(db, catalog, shop_session, SHOP, COLLECTION, "2025-01-01T10:00:00Z", 60)


class TestBroadcaster:
    def test_rooms_are_per_shop(self):
        b = Broadcaster()
        a, other = Recorder(), Recorder()
        assert b.attach(SHOP, a) == 1
        b.attach("other-shop.myshopify.com", other)
        assert b.emit(SHOP, broadcast.EVENT_HEARTBEAT, {}) == 1
        assert a.events() == ["heartbeat"]
        assert other.events() == []

    def test_failing_subscriber_dropped(self):
        b = Broadcaster()
        good = Recorder()
        b.attach(SHOP, good)
        b.attach(SHOP, Broken())
        assert b.emit(SHOP, broadcast.EVENT_REFRESH_NEEDED, {}) == 1
        assert b.count(SHOP) == 1
        assert good.events() == ["refresh_needed"]

    def test_detach_reports_remaining(self):
        b = Broadcaster()
        r1, r2 = Recorder(), Recorder()
        b.attach(SHOP, r1)
        b.attach(SHOP, r2)
        assert b.detach(SHOP, r1) == 1
        assert b.detach(SHOP, r2) == 0
        assert b.shops() == []


class TestAuthenticate:
    def test_valid_token_cached(self, engine, catalog):
        session = engine.authenticate(SHOP, TOKEN)
        assert engine.authenticate(SHOP, TOKEN) == session
        assert catalog.verify_calls == 1
        assert engine.session_for(SHOP) == session

    @pytest.mark.parametrize("token", [None, "", "shpat_wrong"])
    def test_rejected(self, engine, token):
        with pytest.raises(Unauthorized):
            engine.authenticate(SHOP, token)
        assert engine.session_for(SHOP) is None


class TestShopActor:
    def test_tick_skipped_while_pending(self, catalog, session_factory, clock):
        actor = ShopActor(
            SHOP,
            catalog=catalog,
            broadcaster=Broadcaster(),
            session_provider=lambda shop: None,
            clock=clock,
            session_factory=session_factory,
        )
        assert actor.tick() is True
        assert actor.tick() is False

    def test_submit_refused_once_stopped(self, engine):
        actor = engine.actor(SHOP)
        assert actor.submit(Command.PUBLISH) is None
        actor.start()
        accepted = actor.submit(Command.PUBLISH)
        actor.shutdown()
        # Enqueued ahead of SHUTDOWN, so the worker answered it before exiting
        assert accepted.result(timeout=5)["reason"] == "no_session"
        assert actor.submit(Command.PUBLISH) is None
        assert engine.trigger(SHOP, Command.PUBLISH)["reason"] == "no_session"

    def test_unknown_command_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.actor(SHOP).handle(Command.SHUTDOWN)


class TestInlineTrigger:
    def test_operator_pass_without_subscribers(self, engine, db, session_factory, catalog, shop_session):
        engine.authenticate(SHOP, TOKEN)
        _schedule(db, catalog, shop_session)
        result = engine.trigger(SHOP, Command.SCHEDULED)
        assert result.activated
        assert drops_by_title(session_factory)["A"].status == "active"
        assert catalog.writes == ["handle-a"]
        assert engine.running_shops() == []

    def test_force_publish_without_session(self, engine):
        out = engine.trigger(SHOP, Command.PUBLISH)
        assert out["written"] is False
        assert out["reason"] == "no_session"
        assert out["cache_state"]["owner_id"] is None


class TestRunningActor:
    def test_subscribe_starts_loop_and_broadcasts(self, engine, db, session_factory, catalog, shop_session):
        engine.authenticate(SHOP, TOKEN)
        _schedule(db, catalog, shop_session)
        rec = Recorder()
        engine.subscribe(SHOP, rec)
        # FIFO mailbox: this returns after the start-up tick has run
        engine.trigger(SHOP, Command.TICK)

        assert engine.running_shops() == [SHOP]
        events = rec.events()
        assert events[:3] == ["status_change", "active_drop", "scheduled_drops"]
        assert events[3] == "refresh_needed"
        (change,) = rec.data("status_change")
        assert (change["type"], change["title"]) == ("activated", "A")
        assert rec.data("active_drop")[0]["title"] == "A"
        assert rec.data("scheduled_drops")[0]["totalCount"] == 2

    def test_handoff_orders_completed_before_activated(self, engine, db, catalog, clock, shop_session):
        engine.authenticate(SHOP, TOKEN)
        _schedule(db, catalog, shop_session)
        rec = Recorder()
        engine.subscribe(SHOP, rec)
        engine.trigger(SHOP, Command.TICK)

        clock.set(EPOCH + timedelta(hours=1, seconds=10))
        engine.trigger(SHOP, Command.TICK)
        changes = [(c["type"], c["title"]) for c in rec.data("status_change")]
        assert changes == [("activated", "A"), ("completed", "A"), ("activated", "B")]
        assert "completed_drops" in rec.events()
        assert catalog.writes == ["handle-a", "handle-b"]

    def test_stop_and_clear_through_worker(self, engine, db, session_factory, catalog, shop_session):
        engine.authenticate(SHOP, TOKEN)
        _schedule(db, catalog, shop_session)
        rec = Recorder()
        engine.subscribe(SHOP, rec)
        engine.trigger(SHOP, Command.TICK)

        summary = engine.trigger(SHOP, Command.STOP_AND_CLEAR)
        assert summary["activeDropCompleted"] is True
        assert summary["queuedDropsCleared"] == 2
        assert catalog.writes == ["handle-a", ""]
        assert rec.data("settings")[-1]["queued_collection_id"] is None
        assert rec.data("scheduled_drops")[-1] == {"drops": [], "totalCount": 0}

    def test_last_unsubscribe_stops_loop(self, engine):
        engine.authenticate(SHOP, TOKEN)
        r1, r2 = Recorder(), Recorder()
        engine.subscribe(SHOP, r1)
        engine.subscribe(SHOP, r2)
        engine.unsubscribe(SHOP, r1)
        assert engine.running_shops() == [SHOP]
        engine.unsubscribe(SHOP, r2)
        assert engine.running_shops() == []
        # Commands fall back to running inline
        assert engine.trigger(SHOP, Command.TICK) is not None

    def test_interval_job_follows_subscribers(self, catalog, session_factory, clock):
        scheduler = BackgroundScheduler(timezone="UTC")
        eng = DropEngine(catalog, scheduler=scheduler, session_factory=session_factory, clock=clock, tick_seconds=10)
        rec = Recorder()
        try:
            eng.subscribe(SHOP, rec)
            job = scheduler.get_job(lifecycle_job_id(SHOP))
            assert job is not None
            assert job.max_instances == 1
            assert job.coalesce is True
            eng.unsubscribe(SHOP, rec)
            assert scheduler.get_job(lifecycle_job_id(SHOP)) is None
        finally:
            eng.shutdown()
