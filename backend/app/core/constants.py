"""
Centralized constants for the drop engine (Encapsulate What Changes).

Change job ids, page caps or the published metafield here instead of scattering literals
across routes and services. Env-driven values (tick period, timeouts) live in app.config.
"""

# Drop statuses (drops.status)
STATUS_QUEUED = "queued"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
DROP_STATUSES = (STATUS_QUEUED, STATUS_ACTIVE, STATUS_COMPLETED)

# Scheduler job ids: one interval job per shop, id = prefix + shop domain
LIFECYCLE_JOB_ID_PREFIX = "lifecycle:"

# Published key on the shop record (storefront theme reads this)
METAFIELD_NAMESPACE = "custom"
METAFIELD_KEY = "active_drop_product_handle"
METAFIELD_TYPE = "single_line_text_field"

# Publisher source tags. Only tags in CLEAR_SOURCE_TAGS may write the empty string.
SOURCE_TICK = "tick"
SOURCE_STOP_AND_CLEAR = "stop_and_clear"
SOURCE_OPERATOR = "operator"
SOURCE_DEBUG = "debug"
CLEAR_SOURCE_TAGS = frozenset({SOURCE_STOP_AND_CLEAR})

# Settings defaults (returned when a shop has no app_settings row)
DEFAULT_DROP_TIME = "10:00"
DEFAULT_DROP_DURATION_MINUTES = 60

# Page caps per list endpoint (limit is clamped to these)
QUEUED_PAGE_MAX = 100
COMPLETED_PAGE_MAX = 50
DROPS_PAGE_MAX = 100
DEFAULT_PAGE_SIZE = 5
# Snapshot pages pushed to websocket subscribers
BROADCAST_PAGE_SIZE = 5

# Catalog: Shopify caps a products page at 250; the product picker asks for at most 50
CATALOG_PRODUCTS_PAGE_MAX = 250
CATALOG_PRODUCTS_LIMIT = 250
PRODUCT_PICKER_LIMIT_MAX = 50

# Operator commands handed to a running shop actor wait at most this long for the result
ACTOR_REPLY_TIMEOUT_SECONDS = 60
