"""Translate SQLAlchemy failures into the engine's store error kinds."""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session

from app.core.errors import Conflict, PermissionDenied, StoreUnavailable

logger = logging.getLogger(__name__)

# SQLSTATE for insufficient_privilege (row-level security / grants)
_PG_PERMISSION_DENIED = "42501"


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = getattr(exc, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


@contextmanager
def store_errors(db: Session, what: str):
    """Roll back and re-raise as Conflict / PermissionDenied / StoreUnavailable."""
    try:
        yield
    except IntegrityError as e:
        db.rollback()
        logger.info("%s: uniqueness violation: %s", what, e.orig)
        raise Conflict() from e
    except OperationalError as e:
        db.rollback()
        logger.warning("%s: store unavailable: %s", what, e, exc_info=True)
        raise StoreUnavailable(f"Store unavailable during {what}.") from e
    except DBAPIError as e:
        db.rollback()
        if _sqlstate(e) == _PG_PERMISSION_DENIED:
            raise PermissionDenied(f"Permission denied during {what}.") from e
        if e.connection_invalidated:
            raise StoreUnavailable(f"Store connection lost during {what}.") from e
        raise
