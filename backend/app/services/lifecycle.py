"""
Lifecycle pass for one shop: promote, complete, converge.

State machine per drop: queued -> active -> completed. Transitions are compare-and-set updates
in the store, so a pass racing another promoter (another process, an inline operator pass) is
at worst a no-op. Running a pass twice at the same instant changes nothing the second time.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from app.core.constants import SOURCE_STOP_AND_CLEAR, SOURCE_TICK, STATUS_ACTIVE, STATUS_COMPLETED, STATUS_QUEUED
from app.models.drop import Drop
from app.services.catalog.types import ShopSession
from app.services.publisher import KeyPublisher, PublishOutcome
from app.services.store import (
    delete_all_queued,
    due_queued,
    expired_active,
    get_active,
    reset_queued_collection,
    update_status,
)

logger = logging.getLogger(__name__)

TRANSITION_ACTIVATED = "activated"
TRANSITION_COMPLETED = "completed"


class Transition:
    """One status change observed by this pass; becomes a status_change event."""

    __slots__ = ("type", "id", "title", "timestamp")

    def __init__(self, type: str, drop: Drop, at: datetime) -> None:
        self.type = type
        self.id = drop.id
        self.title = drop.title
        self.timestamp = at

    def to_event(self) -> dict[str, Any]:
        return {"type": self.type, "id": self.id, "title": self.title, "timestamp": self.timestamp.isoformat()}


class TickResult:
    __slots__ = ("transitions", "outcome")

    def __init__(self, transitions: list[Transition], outcome: PublishOutcome | None = None) -> None:
        self.transitions = transitions
        self.outcome = outcome

    @property
    def activated(self) -> bool:
        return any(t.type == TRANSITION_ACTIVATED for t in self.transitions)

    @property
    def completed(self) -> bool:
        return any(t.type == TRANSITION_COMPLETED for t in self.transitions)


def promote_due(db: Session, shop: str, now: datetime) -> Drop | None:
    """
    Activate the earliest due queued drop when the shop has no active drop. The window restarts
    at now (start_time = now, end_time = now + duration). None when nothing was promoted.
    """
    due = due_queued(db, shop, now)
    if not due:
        return None
    if get_active(db, shop) is not None:
        logger.debug("Shop %s already has an active drop; %s due drop(s) wait", shop, len(due))
        return None
    candidate = due[0]
    promoted = update_status(
        db,
        candidate.id,
        shop,
        STATUS_QUEUED,
        STATUS_ACTIVE,
        start_time=now,
        end_time=now + timedelta(minutes=candidate.duration_minutes),
    )
    if promoted is None:
        logger.info("Promotion of drop %s for %s lost the race; skipping", candidate.id, shop)
        return None
    logger.info("Activated drop %s (%s) for %s until %s", promoted.id, promoted.title, shop, promoted.end_time.isoformat())
    return promoted


def complete_due(db: Session, shop: str, now: datetime) -> list[Drop]:
    """Complete every active drop whose end_time has passed."""
    completed: list[Drop] = []
    for drop in expired_active(db, shop, now):
        row = update_status(db, drop.id, shop, STATUS_ACTIVE, STATUS_COMPLETED)
        if row is None:
            logger.info("Drop %s for %s was no longer active when completing", drop.id, shop)
            continue
        logger.info("Completed drop %s (%s) for %s", row.id, row.title, shop)
        completed.append(row)
    return completed


def advance(db: Session, shop: str, now: datetime) -> list[Transition]:
    """Promote, complete, and promote again if a drop ended so a hand-off happens in one pass."""
    transitions: list[Transition] = []
    promoted = promote_due(db, shop, now)
    if promoted is not None:
        transitions.append(Transition(TRANSITION_ACTIVATED, promoted, now))
    completed = complete_due(db, shop, now)
    transitions.extend(Transition(TRANSITION_COMPLETED, d, now) for d in completed)
    if completed:
        promoted = promote_due(db, shop, now)
        if promoted is not None:
            transitions.append(Transition(TRANSITION_ACTIVATED, promoted, now))
    return transitions


def run_tick(
    session_factory: Callable[[], Session],
    shop: str,
    publisher: KeyPublisher,
    session: ShopSession | None,
    now: datetime,
    source_tag: str = SOURCE_TICK,
) -> TickResult:
    """One full pass: advance on a fresh DB session, then converge the published key."""
    db = session_factory()
    try:
        transitions = advance(db, shop, now)
    finally:
        db.close()
    if session is None:
        logger.warning("[%s] No shop session for %s; skipping publish", source_tag, shop)
        return TickResult(transitions)
    return TickResult(transitions, publisher.publish(session, force=False, source_tag=source_tag))


def stop_and_clear(db: Session, shop: str, now: datetime) -> tuple[dict[str, Any], list[Transition]]:
    """
    End the active drop now, delete every queued drop and forget the queued collection.
    The caller publishes with the stop_and_clear source tag afterwards so "" is written.
    """
    transitions: list[Transition] = []
    completed_title = None
    active = get_active(db, shop)
    if active is not None:
        row = update_status(db, active.id, shop, STATUS_ACTIVE, STATUS_COMPLETED, end_time=now)
        if row is not None:
            completed_title = row.title
            transitions.append(Transition(TRANSITION_COMPLETED, row, now))
            logger.info("[%s] Completed active drop %s (%s) for %s", SOURCE_STOP_AND_CLEAR, row.id, row.title, shop)
    cleared = delete_all_queued(db, shop)
    settings_reset = reset_queued_collection(db, shop)
    logger.info(
        "[%s] Shop %s: %s queued drops deleted, settings reset=%s",
        SOURCE_STOP_AND_CLEAR,
        shop,
        cleared,
        settings_reset,
    )

    message = f"Active drop '{completed_title}' completed. " if completed_title else "No active drop to complete. "
    message += f"{cleared} scheduled drops cleared."
    if settings_reset:
        message += " Queued collection setting reset."
    summary = {
        "message": message,
        "activeDropCompleted": completed_title is not None,
        "queuedDropsCleared": cleared,
        "settingsReset": settings_reset,
    }
    return summary, transitions
