"""Vendor (food truck) records consumed by the check-in pipeline."""

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID

from truckstamp_api.db.base import Base


class VendorTierEnum(str, Enum):
    FREE = "free"
    PRO = "pro"


class Vendor(Base):
    __tablename__ = "vendors"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String, nullable=False)
    cuisine = Column(String, nullable=True)
    is_open = Column(Boolean, nullable=False, default=False, server_default="false")
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)
    stamps_required = Column(Integer, nullable=False, default=10, server_default="10")
    subscription_tier = Column(String(length=16), nullable=False, default=VendorTierEnum.FREE.value, server_default=VendorTierEnum.FREE.value)
    is_featured = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def has_location(self) -> bool:
        return self.lat is not None and self.lng is not None
