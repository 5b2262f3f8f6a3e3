"""Subscription status for the signed-in member."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.api.dependencies.session import require_member_session
from truckstamp_api.db.session import get_session
from truckstamp_api.models.subscription import Subscription
from truckstamp_api.models.user import User

router = APIRouter(prefix="/billing", tags=["billing"])


class SubscriptionResponse(BaseModel):
    status: str
    tier: str
    cancelAtPeriodEnd: bool
    currentPeriodStart: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    stripePriceId: Optional[str] = None


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> SubscriptionResponse:
    result = await db.execute(select(Subscription).where(Subscription.user_id == member.id))
    subscription = result.scalar_one_or_none()
    if subscription is None:
        return SubscriptionResponse(status="none", tier="free", cancelAtPeriodEnd=False)

    return SubscriptionResponse(
        status=subscription.status.value,
        tier=subscription.tier,
        cancelAtPeriodEnd=subscription.cancel_at_period_end,
        currentPeriodStart=subscription.current_period_start,
        currentPeriodEnd=subscription.current_period_end,
        stripePriceId=subscription.stripe_price_id,
    )
