"""Per-shop configuration, one row per shop (upsert on shop)."""
from sqlalchemy import Column, Date, Integer, String, Text
from sqlalchemy.sql import func

from app.db.base import Base
from app.db.types import UTCDateTime


class AppSettings(Base):
    __tablename__ = "app_settings"

    shop = Column(String(255), primary_key=True)
    queued_collection_id = Column(Text, nullable=True)  # gid://shopify/Collection/<n>
    drop_time = Column(String(5), nullable=True, default="10:00")  # HH:MM
    default_drop_duration_minutes = Column(Integer, nullable=False, default=60, server_default="60")
    default_drop_date = Column(Date, nullable=True)
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "queued_collection_id": self.queued_collection_id,
            "drop_time": self.drop_time,
            "default_drop_duration_minutes": self.default_drop_duration_minutes,
            "default_drop_date": self.default_drop_date.isoformat() if self.default_drop_date else None,
        }
