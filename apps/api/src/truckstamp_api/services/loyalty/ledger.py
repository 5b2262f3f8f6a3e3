"""Stamp-card ledger with exact integer reward rollover."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.core.settings import settings
from truckstamp_api.models.loyalty import LoyaltyCard
from truckstamp_api.models.vendor import Vendor


def apply_stamps(stamps: int, stamps_required: int, earned: int = 1) -> tuple[int, int]:
    """Return ``(new_stamps, rewards_unlocked)`` after adding ``earned`` stamps.

    The threshold passed in is the one in force at the time of the increment.
    """

    if stamps_required <= 0:
        raise ValueError("stamps_required must be positive")
    if stamps < 0 or earned < 0:
        raise ValueError("stamp counts must be non-negative")
    rewards_unlocked, remainder = divmod(stamps + earned, stamps_required)
    return remainder, rewards_unlocked


@dataclass(slots=True)
class StampResult:
    """Loyalty delta produced by a single check-in."""

    card: LoyaltyCard
    stamps_earned: int
    total_stamps: int
    stamps_required: int
    rewards_unlocked: int

    @property
    def reward_unlocked(self) -> bool:
        return self.rewards_unlocked > 0


class RedemptionStatus(str, Enum):
    REDEEMED = "redeemed"
    NOT_FOUND = "not_found"
    NO_REWARD_AVAILABLE = "no_reward_available"


@dataclass(slots=True)
class RedemptionResult:
    status: RedemptionStatus
    card: LoyaltyCard | None = None


class LoyaltyLedger:
    """Reads and mutates loyalty cards. Callers own the transaction."""

    def __init__(self, session: AsyncSession, *, default_stamps_required: int | None = None) -> None:
        self._session = session
        self._default_stamps_required = default_stamps_required or settings.loyalty_default_stamps_required

    async def get_card(self, user_id: UUID, vendor_id: UUID, *, for_update: bool = False) -> LoyaltyCard | None:
        stmt = select(LoyaltyCard).where(
            LoyaltyCard.user_id == user_id,
            LoyaltyCard.vendor_id == vendor_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_stamp(self, user_id: UUID, vendor: Vendor, *, at: datetime) -> StampResult:
        """Add one stamp to the (user, vendor) card, creating it on first use."""

        stamps_required = vendor.stamps_required or self._default_stamps_required
        card = await self.get_card(user_id, vendor.id, for_update=True)
        if card is None:
            card = LoyaltyCard(
                user_id=user_id,
                vendor_id=vendor.id,
                stamps=0,
                stamps_required=stamps_required,
                lifetime_stamps=0,
                rewards_earned=0,
                rewards_redeemed=0,
            )
            self._session.add(card)

        new_stamps, rewards_unlocked = apply_stamps(card.stamps or 0, stamps_required)
        card.stamps = new_stamps
        card.stamps_required = stamps_required
        card.lifetime_stamps = (card.lifetime_stamps or 0) + 1
        card.rewards_earned = (card.rewards_earned or 0) + rewards_unlocked
        card.last_check_in = at
        await self._session.flush()

        return StampResult(
            card=card,
            stamps_earned=1,
            total_stamps=new_stamps,
            stamps_required=stamps_required,
            rewards_unlocked=rewards_unlocked,
        )

    async def list_cards(self, user_id: UUID) -> Sequence[tuple[LoyaltyCard, Vendor]]:
        stmt = (
            select(LoyaltyCard, Vendor)
            .join(Vendor, Vendor.id == LoyaltyCard.vendor_id)
            .where(LoyaltyCard.user_id == user_id)
            .order_by(LoyaltyCard.last_check_in.desc())
        )
        result = await self._session.execute(stmt)
        return [(card, vendor) for card, vendor in result.all()]

    async def redeem_reward(self, user_id: UUID, card_id: UUID) -> RedemptionResult:
        """Spend one earned reward; never lets redeemed exceed earned."""

        stmt = (
            update(LoyaltyCard)
            .where(
                LoyaltyCard.id == card_id,
                LoyaltyCard.user_id == user_id,
                LoyaltyCard.rewards_redeemed < LoyaltyCard.rewards_earned,
            )
            .values(rewards_redeemed=LoyaltyCard.rewards_redeemed + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()

        lookup = (
            select(LoyaltyCard)
            .where(LoyaltyCard.id == card_id, LoyaltyCard.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        card = (await self._session.execute(lookup)).scalar_one_or_none()
        if card is None:
            return RedemptionResult(status=RedemptionStatus.NOT_FOUND)
        if result.rowcount != 1:
            return RedemptionResult(status=RedemptionStatus.NO_REWARD_AVAILABLE, card=card)
        return RedemptionResult(status=RedemptionStatus.REDEEMED, card=card)


__all__ = [
    "LoyaltyLedger",
    "RedemptionResult",
    "RedemptionStatus",
    "StampResult",
    "apply_stamps",
]
