"""Store gateway: typed queries over drops and app_settings. Callers pass their own Session."""
from app.services.store.drops import (
    build_drop,
    clamp_page,
    delete_all_queued,
    delete_completed,
    delete_queued,
    due_queued,
    expired_active,
    get_active,
    insert_drop,
    insert_drops,
    list_all_drops,
    list_drops,
    queue_tail_end,
    live_product_ids,
    update_status,
)
from app.services.store.settings import (
    default_settings,
    get_settings,
    reset_queued_collection,
    upsert_settings,
)

__all__ = [
    "build_drop",
    "clamp_page",
    "default_settings",
    "delete_all_queued",
    "delete_completed",
    "delete_queued",
    "due_queued",
    "expired_active",
    "get_active",
    "get_settings",
    "insert_drop",
    "insert_drops",
    "list_all_drops",
    "list_drops",
    "queue_tail_end",
    "live_product_ids",
    "reset_queued_collection",
    "update_status",
    "upsert_settings",
]
