"""Rate limiter wiring for request handlers."""

from __future__ import annotations

from fastapi import Request

from truckstamp_api.services.rate_limit import RateLimiter


def get_rate_limiter(request: Request) -> RateLimiter:
    """Build a limiter over the process-wide Redis client opened at startup."""

    return RateLimiter(request.app.state.redis)
