"""Store-backed rate limiting."""

from .limiter import (
    RateLimitDecision,
    RateLimitRule,
    RateLimiter,
    checkin_user_rule,
    checkin_vendor_rule,
)

__all__ = [
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
    "checkin_user_rule",
    "checkin_vendor_rule",
]
