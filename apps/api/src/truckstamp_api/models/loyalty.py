"""Stamp-card loyalty models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from truckstamp_api.db.base import Base


class LoyaltyCard(Base):
    """Per (user, vendor) stamp accumulator."""

    __tablename__ = "loyalty_cards"
    __table_args__ = (
        UniqueConstraint("user_id", "vendor_id", name="uq_loyalty_cards_user_vendor"),
        CheckConstraint("stamps >= 0", name="ck_loyalty_cards_stamps_non_negative"),
        CheckConstraint("stamps_required > 0", name="ck_loyalty_cards_stamps_required_positive"),
        CheckConstraint("rewards_redeemed <= rewards_earned", name="ck_loyalty_cards_redeemed_le_earned"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    vendor_id = Column(UUID(as_uuid=True), ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False)
    stamps = Column(Integer, nullable=False, default=0, server_default="0")
    stamps_required = Column(Integer, nullable=False, default=10, server_default="10")
    lifetime_stamps = Column(Integer, nullable=False, default=0, server_default="0")
    rewards_earned = Column(Integer, nullable=False, default=0, server_default="0")
    rewards_redeemed = Column(Integer, nullable=False, default=0, server_default="0")
    last_check_in = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def rewards_available(self) -> int:
        return (self.rewards_earned or 0) - (self.rewards_redeemed or 0)
