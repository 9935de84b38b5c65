"""app_settings access: defaults when a shop has no row, partial upsert on shop."""
import logging
import re
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from app.core.constants import DEFAULT_DROP_DURATION_MINUTES, DEFAULT_DROP_TIME
from app.core.errors import BadInput
from app.models.app_settings import AppSettings
from app.services.store.errors import store_errors

logger = logging.getLogger(__name__)

_DROP_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

SETTINGS_FIELDS = (
    "queued_collection_id",
    "drop_time",
    "default_drop_duration_minutes",
    "default_drop_date",
)


def default_settings() -> dict[str, Any]:
    return {
        "queued_collection_id": None,
        "drop_time": DEFAULT_DROP_TIME,
        "default_drop_duration_minutes": DEFAULT_DROP_DURATION_MINUTES,
        "default_drop_date": None,
    }


def get_settings(db: Session, shop: str) -> dict[str, Any]:
    """Settings for the shop, or defaults when no row exists. Never raises NotFound."""
    with store_errors(db, "get_settings"):
        row = db.get(AppSettings, shop)
    if row is None:
        return default_settings()
    out = row.to_dict()
    if not out["drop_time"]:
        out["drop_time"] = DEFAULT_DROP_TIME
    return out


def _validate_patch(patch: dict[str, Any]) -> dict[str, Any]:
    clean: dict[str, Any] = {}
    for key, value in patch.items():
        if key not in SETTINGS_FIELDS:
            raise BadInput(f"Unknown settings field: {key}")
        if key == "queued_collection_id":
            clean[key] = (str(value).strip() or None) if value is not None else None
        elif key == "drop_time":
            if value is not None and not _DROP_TIME_RE.match(str(value)):
                raise BadInput("drop_time must be HH:MM (24h).")
            clean[key] = value
        elif key == "default_drop_duration_minutes":
            if value is None:
                clean[key] = DEFAULT_DROP_DURATION_MINUTES
                continue
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise BadInput("default_drop_duration_minutes must be a positive integer.")
            clean[key] = value
        elif key == "default_drop_date":
            if isinstance(value, str):
                try:
                    value = date.fromisoformat(value) if value.strip() else None
                except ValueError as e:
                    raise BadInput("default_drop_date must be YYYY-MM-DD.") from e
            clean[key] = value
    return clean


def upsert_settings(db: Session, shop: str, patch: dict[str, Any]) -> dict[str, Any]:
    """Insert or update the shop's row; only keys present in patch change."""
    clean = _validate_patch(patch)
    with store_errors(db, "upsert_settings"):
        row = db.get(AppSettings, shop)
        if row is None:
            row = AppSettings(shop=shop, **{**default_settings(), **clean})
            db.add(row)
        else:
            for key, value in clean.items():
                setattr(row, key, value)
        db.commit()
        db.refresh(row)
    logger.info("Saved settings for shop %s: %s", shop, sorted(clean))
    return row.to_dict()


def reset_queued_collection(db: Session, shop: str) -> bool:
    """Null out queued_collection_id. Returns False when the shop has no settings row."""
    with store_errors(db, "reset_queued_collection"):
        updated = (
            db.query(AppSettings)
            .filter(AppSettings.shop == shop)
            .update({AppSettings.queued_collection_id: None}, synchronize_session=False)
        )
        db.commit()
    return bool(updated)
