"""drops and app_settings

Revision ID: 001
Revises:
Create Date: (run alembic upgrade head)

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_LIVE = sa.text("status IN ('queued', 'active')")
_ACTIVE = sa.text("status = 'active'")


def upgrade() -> None:
    op.create_table(
        "drops",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("shop", sa.String(255), nullable=False),
        sa.Column("product_id", sa.String(128), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("status IN ('queued', 'active', 'completed')", name="ck_drops_status"),
        sa.CheckConstraint("duration_minutes > 0", name="ck_drops_duration_positive"),
    )
    op.create_index("ix_drops_shop", "drops", ["shop"])
    op.create_index("ix_drops_shop_status_start_time", "drops", ["shop", "status", "start_time"])
    op.create_index("ix_drops_shop_status_end_time", "drops", ["shop", "status", "end_time"])
    op.create_index(
        "uq_drops_shop_product_live",
        "drops",
        ["shop", "product_id"],
        unique=True,
        postgresql_where=_LIVE,
        sqlite_where=_LIVE,
    )
    op.create_index(
        "uq_drops_one_active_per_shop",
        "drops",
        ["shop"],
        unique=True,
        postgresql_where=_ACTIVE,
        sqlite_where=_ACTIVE,
    )

    op.create_table(
        "app_settings",
        sa.Column("shop", sa.String(255), primary_key=True),
        sa.Column("queued_collection_id", sa.Text(), nullable=True),
        sa.Column("drop_time", sa.String(5), nullable=True, server_default="10:00"),
        sa.Column("default_drop_duration_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("default_drop_date", sa.Date(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_index("uq_drops_one_active_per_shop", table_name="drops")
    op.drop_index("uq_drops_shop_product_live", table_name="drops")
    op.drop_index("ix_drops_shop_status_end_time", table_name="drops")
    op.drop_index("ix_drops_shop_status_start_time", table_name="drops")
    op.drop_index("ix_drops_shop", table_name="drops")
    op.drop_table("drops")
