"""One scheduled occurrence of a product. status: queued -> active -> completed (terminal).

title / thumbnail_url are snapshots taken at scheduling time and never refreshed.
Two partial unique indexes back the engine invariants: one live (queued|active) row per
(shop, product_id), and at most one active row per shop.
"""
import uuid

from sqlalchemy import CheckConstraint, Column, Index, Integer, String, Text, text
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import UTCDateTime

_LIVE_STATUSES = text("status IN ('queued', 'active')")
_ACTIVE_STATUS = text("status = 'active'")


def _new_id() -> str:
    return str(uuid.uuid4())


class Drop(Base):
    __tablename__ = "drops"

    id = Column(String(36), primary_key=True, default=_new_id)
    shop = Column(String(255), nullable=False, index=True)
    product_id = Column(String(128), nullable=False)  # gid://shopify/Product/<n>
    title = Column(Text, nullable=False)
    thumbnail_url = Column(Text, nullable=True)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="queued", server_default="queued")
    created_at = Column(UTCDateTime, server_default=func.now(), nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('queued', 'active', 'completed')", name="ck_drops_status"),
        CheckConstraint("duration_minutes > 0", name="ck_drops_duration_positive"),
        Index("ix_drops_shop_status_start_time", "shop", "status", "start_time"),
        Index("ix_drops_shop_status_end_time", "shop", "status", "end_time"),
        Index(
            "uq_drops_shop_product_live",
            "shop",
            "product_id",
            unique=True,
            postgresql_where=_LIVE_STATUSES,
            sqlite_where=_LIVE_STATUSES,
        ),
        Index(
            "uq_drops_one_active_per_shop",
            "shop",
            unique=True,
            postgresql_where=_ACTIVE_STATUS,
            sqlite_where=_ACTIVE_STATUS,
        ),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop": self.shop,
            "product_id": self.product_id,
            "title": self.title,
            "thumbnail_url": self.thumbnail_url,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
