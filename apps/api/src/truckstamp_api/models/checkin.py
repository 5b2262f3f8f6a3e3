from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID

from truckstamp_api.db.base import Base


class CheckIn(Base):
    """One verified visit. Immutable once written."""

    __tablename__ = "check_ins"
    __table_args__ = (
        Index("ix_check_ins_user_vendor_created", "user_id", "vendor_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    vendor_id = Column(UUID(as_uuid=True), ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
