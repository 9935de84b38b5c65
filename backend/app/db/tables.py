"""
Single source of truth for database tables that exist after migrations.

alembic/env.py asserts the registered models match this tuple; scripts/check_backend.py checks
they exist in the configured database.
"""
# All tables that exist in the DB. Must match models and migrations.
ALL_TABLE_NAMES = (
    "drops",
    "app_settings",
)
