"""API endpoints for stamp cards and reward redemption."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.api.dependencies.session import require_member_session
from truckstamp_api.db.session import get_session
from truckstamp_api.models.loyalty import LoyaltyCard
from truckstamp_api.models.user import User
from truckstamp_api.models.vendor import Vendor
from truckstamp_api.services.loyalty import LoyaltyLedger, RedemptionStatus


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class CardVendorResponse(BaseModel):
    id: UUID
    name: str
    cuisine: Optional[str]


class LoyaltyCardResponse(BaseModel):
    id: UUID
    vendorId: UUID
    stamps: int
    stampsRequired: int
    lifetimeStamps: int
    rewardsEarned: int
    rewardsRedeemed: int
    rewardsAvailable: int
    lastCheckIn: Optional[datetime]
    vendor: CardVendorResponse


class LoyaltyCardsResponse(BaseModel):
    cards: List[LoyaltyCardResponse]
    totalStamps: int
    totalRewards: int


def _card_response(card: LoyaltyCard, vendor: Vendor) -> LoyaltyCardResponse:
    return LoyaltyCardResponse(
        id=card.id,
        vendorId=card.vendor_id,
        stamps=card.stamps,
        stampsRequired=card.stamps_required,
        lifetimeStamps=card.lifetime_stamps,
        rewardsEarned=card.rewards_earned,
        rewardsRedeemed=card.rewards_redeemed,
        rewardsAvailable=card.rewards_available,
        lastCheckIn=card.last_check_in,
        vendor=CardVendorResponse(id=vendor.id, name=vendor.name, cuisine=vendor.cuisine),
    )


@router.get("/cards", response_model=LoyaltyCardsResponse)
async def list_loyalty_cards(
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyCardsResponse:
    rows = await LoyaltyLedger(db).list_cards(member.id)
    cards = [_card_response(card, vendor) for card, vendor in rows]
    return LoyaltyCardsResponse(
        cards=cards,
        totalStamps=sum(card.stamps for card in cards),
        totalRewards=sum(card.rewardsEarned for card in cards),
    )


@router.post("/cards/{card_id}/redeem", response_model=LoyaltyCardResponse)
async def redeem_reward(
    card_id: UUID,
    member: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyCardResponse:
    """Spend one earned reward on the member's card."""

    result = await LoyaltyLedger(db).redeem_reward(member.id, card_id)
    if result.status == RedemptionStatus.NOT_FOUND:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Loyalty card not found", "code": "CARD_NOT_FOUND"},
        )
    if result.status == RedemptionStatus.NO_REWARD_AVAILABLE:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "No reward available to redeem", "code": "NO_REWARD_AVAILABLE"},
        )

    vendor = await db.get(Vendor, result.card.vendor_id)
    return _card_response(result.card, vendor)
