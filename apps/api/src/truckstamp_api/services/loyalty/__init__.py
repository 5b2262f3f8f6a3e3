"""Loyalty stamp-card services."""

from .ledger import (
    LoyaltyLedger,
    RedemptionResult,
    RedemptionStatus,
    StampResult,
    apply_stamps,
)

__all__ = [
    "LoyaltyLedger",
    "RedemptionResult",
    "RedemptionStatus",
    "StampResult",
    "apply_stamps",
]
