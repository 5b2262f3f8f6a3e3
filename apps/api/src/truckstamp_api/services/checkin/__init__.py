"""Check-in pipeline."""

from .service import (
    CheckInOutcome,
    CheckInPolicy,
    CheckInService,
    CheckInStatus,
    CheckInSummary,
    EligibilityChecks,
    EligibilityResult,
    LoyaltyDelta,
    VendorSummary,
    checkin_claim_key,
    window_bucket,
)

__all__ = [
    "CheckInOutcome",
    "CheckInPolicy",
    "CheckInService",
    "CheckInStatus",
    "CheckInSummary",
    "EligibilityChecks",
    "EligibilityResult",
    "LoyaltyDelta",
    "VendorSummary",
    "checkin_claim_key",
    "window_bucket",
]
