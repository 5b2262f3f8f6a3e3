"""In-app notification enqueueing."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.models.notification import Notification, NotificationTypeEnum
from truckstamp_api.models.vendor import Vendor


class NotificationService:
    """Writes notification rows for delivery transports to pick up.

    Enqueueing is best-effort: failures are logged and rolled back, never
    propagated into the pipeline that triggered them.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def enqueue(
        self,
        user_id: UUID,
        notification_type: NotificationTypeEnum,
        *,
        title: str,
        message: str | None = None,
        vendor_id: UUID | None = None,
    ) -> Notification | None:
        notification = Notification(
            user_id=user_id,
            vendor_id=vendor_id,
            type=notification_type,
            title=title,
            message=message,
        )
        self._db.add(notification)
        try:
            await self._db.commit()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            logger.opt(exception=exc).error(
                "Failed to enqueue notification",
                user_id=str(user_id),
                notification_type=notification_type.value,
            )
            return None
        return notification

    async def notify_reward_unlocked(self, user_id: UUID, vendor: Vendor, rewards: int = 1) -> Notification | None:
        if rewards > 1:
            message = f"You've earned {rewards} free rewards at {vendor.name}!"
        else:
            message = f"You've earned a free reward at {vendor.name}!"
        return await self.enqueue(
            user_id,
            NotificationTypeEnum.REWARD_UNLOCKED,
            title="Reward Unlocked!",
            message=message,
            vendor_id=vendor.id,
        )
