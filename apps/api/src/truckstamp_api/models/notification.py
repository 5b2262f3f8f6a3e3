from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from truckstamp_api.db.base import Base


class NotificationTypeEnum(str, Enum):
    TRUCK_NEARBY = "truck_nearby"
    FAVORITE_LIVE = "favorite_live"
    SPECIAL = "special"
    REWARD_UNLOCKED = "reward_unlocked"
    ORDER_UPDATE = "order_update"


class Notification(Base):
    """Queued in-app notification. Delivery transports read from this table."""

    __tablename__ = "notifications"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = Column(UUID(as_uuid=True), ForeignKey("vendors.id", ondelete="SET NULL"), nullable=True)
    type = Column(
        SqlEnum(
            NotificationTypeEnum,
            name="notification_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
