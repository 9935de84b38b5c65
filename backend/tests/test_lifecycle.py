"""Lifecycle passes: promotion, hand-off, completion, stop-and-clear."""
from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.constants import SOURCE_STOP_AND_CLEAR, STATUS_ACTIVE, STATUS_COMPLETED, STATUS_QUEUED
from app.db.base import Base
from app.services import lifecycle, scheduling, store
from app.services.publisher import KeyPublisher
from conftest import COLLECTION, EPOCH, P1, P2, SHOP, drops_by_title


def _schedule(db, catalog, shop_session, products=None, start="2025-01-01T10:00:00Z", duration=60):
    if products is not None:
        catalog.collections[COLLECTION] = products
    return scheduling.schedule_all(db, catalog, shop_session, SHOP, COLLECTION, start, duration)


def _tick(session_factory, publisher, shop_session, at):
    return lifecycle.run_tick(session_factory, SHOP, publisher, shop_session, at)


class TestPromotion:
    def test_first_due_drop_goes_live(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session)
        at = EPOCH + timedelta(seconds=5)
        result = _tick(session_factory, publisher, shop_session, at)

        assert [t.type for t in result.transitions] == [lifecycle.TRANSITION_ACTIVATED]
        drops = drops_by_title(session_factory)
        assert drops["A"].status == STATUS_ACTIVE
        assert drops["A"].start_time == at
        assert drops["A"].end_time == at + timedelta(hours=1)
        assert drops["B"].status == STATUS_QUEUED
        assert catalog.writes == ["handle-a"]

    def test_nothing_due_before_start(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session)
        result = _tick(session_factory, publisher, shop_session, EPOCH - timedelta(seconds=1))
        assert result.transitions == []
        assert store.get_active(db, SHOP) is None
        assert catalog.writes == []

    def test_same_instant_twice_is_a_no_op(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session)
        at = EPOCH + timedelta(seconds=5)
        _tick(session_factory, publisher, shop_session, at)
        again = _tick(session_factory, publisher, shop_session, at)
        assert again.transitions == []
        assert catalog.writes == ["handle-a"]

    def test_only_earliest_due_promoted(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session)
        # Server was down: all three windows are due at once
        _tick(session_factory, publisher, shop_session, EPOCH + timedelta(hours=5))
        drops = drops_by_title(session_factory)
        assert [drops[t].status for t in "ABC"] == [STATUS_ACTIVE, STATUS_QUEUED, STATUS_QUEUED]

    def test_stale_candidate_loses_cas(self, db, session_factory, catalog, shop_session):
        _schedule(db, catalog, shop_session, products=[P1])
        stale = store.due_queued(db, SHOP, EPOCH)[0]
        assert lifecycle.promote_due(db, SHOP, EPOCH) is not None
        # A second promoter holding the old snapshot
        assert store.update_status(db, stale.id, SHOP, STATUS_QUEUED, STATUS_ACTIVE) is None
        assert lifecycle.promote_due(db, SHOP, EPOCH) is None


class TestHandoff:
    def test_next_drop_promoted_in_same_pass(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session, products=[P1, P2])
        _tick(session_factory, publisher, shop_session, EPOCH + timedelta(seconds=5))

        at = EPOCH + timedelta(hours=1, seconds=10)
        result = _tick(session_factory, publisher, shop_session, at)

        assert [t.type for t in result.transitions] == [lifecycle.TRANSITION_COMPLETED, lifecycle.TRANSITION_ACTIVATED]
        assert result.completed and result.activated
        drops = drops_by_title(session_factory)
        assert drops["A"].status == STATUS_COMPLETED
        assert drops["B"].status == STATUS_ACTIVE
        assert drops["B"].start_time == at
        # The storefront key never goes blank between drops
        assert catalog.writes == ["handle-a", "handle-b"]

    def test_last_drop_ending_keeps_key(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session, products=[P1])
        _tick(session_factory, publisher, shop_session, EPOCH)
        result = _tick(session_factory, publisher, shop_session, EPOCH + timedelta(hours=2))
        assert [t.type for t in result.transitions] == [lifecycle.TRANSITION_COMPLETED]
        assert store.get_active(db, SHOP) is None
        assert catalog.writes == ["handle-a"]
        assert catalog.key_value == "handle-a"

    def test_missing_handle_still_completes(self, db, session_factory, catalog, shop_session, publisher):
        catalog.handles.pop(P1.id)
        _schedule(db, catalog, shop_session, products=[P1])
        _tick(session_factory, publisher, shop_session, EPOCH)
        assert catalog.writes == []
        _tick(session_factory, publisher, shop_session, EPOCH + timedelta(hours=1))
        assert drops_by_title(session_factory)["A"].status == STATUS_COMPLETED

    def test_no_session_skips_publish(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session, products=[P1])
        result = lifecycle.run_tick(session_factory, SHOP, publisher, None, EPOCH)
        assert result.activated
        assert result.outcome is None
        assert catalog.writes == []


class TestStopAndClear:
    def test_completes_active_clears_queue_and_key(self, db, session_factory, catalog, shop_session, publisher):
        _schedule(db, catalog, shop_session)
        _tick(session_factory, publisher, shop_session, EPOCH)
        now = EPOCH + timedelta(minutes=20)

        summary, transitions = lifecycle.stop_and_clear(db, SHOP, now)
        publisher.publish(shop_session, force=True, source_tag=SOURCE_STOP_AND_CLEAR)

        assert summary == {
            "message": "Active drop 'A' completed. 2 scheduled drops cleared. Queued collection setting reset.",
            "activeDropCompleted": True,
            "queuedDropsCleared": 2,
            "settingsReset": True,
        }
        assert [t.type for t in transitions] == [lifecycle.TRANSITION_COMPLETED]
        drops = drops_by_title(session_factory)
        assert list(drops) == ["A"]
        assert drops["A"].status == STATUS_COMPLETED
        assert drops["A"].end_time == now
        assert store.get_settings(db, SHOP)["queued_collection_id"] is None
        assert catalog.writes == ["handle-a", ""]

        # Later ticks leave the cleared key alone
        _tick(session_factory, publisher, shop_session, now + timedelta(hours=3))
        assert catalog.writes.count("") == 1

    def test_nothing_to_stop(self, db):
        summary, transitions = lifecycle.stop_and_clear(db, SHOP, EPOCH)
        assert summary["message"] == "No active drop to complete. 0 scheduled drops cleared."
        assert summary["activeDropCompleted"] is False
        assert summary["settingsReset"] is False
        assert transitions == []

    def test_transition_event_shape(self, db, session_factory, catalog, shop_session):
        _schedule(db, catalog, shop_session, products=[P1])
        (t,) = lifecycle.advance(db, SHOP, EPOCH)
        assert t.to_event() == {"type": "activated", "id": t.id, "title": "A", "timestamp": EPOCH.isoformat()}


@pytest.fixture
def file_session_factory(tmp_path):
    """On-disk SQLite so each thread gets its own connection, like two server processes."""
    engine = create_engine(f"sqlite:///{tmp_path / 'drops.db'}", connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


class TestConcurrentPromoters:
    def test_two_ticks_at_once_activate_one_drop(self, file_session_factory, catalog, shop_session):
        db = file_session_factory()
        try:
            _schedule(db, catalog, shop_session)
        finally:
            db.close()

        at = EPOCH + timedelta(seconds=5)
        start = threading.Barrier(2)
        results, errors = [], []

        def worker():
            publisher = KeyPublisher(SHOP, catalog, file_session_factory)
            start.wait()
            try:
                results.append(lifecycle.run_tick(file_session_factory, SHOP, publisher, shop_session, at))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert errors == []
        assert len(results) == 2
        activated = [t for r in results for t in r.transitions if t.type == lifecycle.TRANSITION_ACTIVATED]
        assert len(activated) == 1
        drops = drops_by_title(file_session_factory)
        assert [d.title for d in drops.values() if d.status == STATUS_ACTIVE] == ["A"]
        assert drops["B"].status == STATUS_QUEUED
