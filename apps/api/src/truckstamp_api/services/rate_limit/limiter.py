"""Sliding-window rate limiting backed by Redis sorted sets."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from truckstamp_api.core.settings import settings


@dataclass(frozen=True)
class RateLimitRule:
    """Ceiling for one action within a rolling window."""

    action: str
    limit: int
    window_seconds: int
    fail_open: bool


@dataclass
class RateLimitDecision:
    """Outcome of a single rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None = None
    unavailable: bool = False


def checkin_user_rule() -> RateLimitRule:
    return RateLimitRule(
        action="checkin:user",
        limit=settings.checkin_rate_limit_user_max,
        window_seconds=settings.checkin_rate_limit_user_window_seconds,
        fail_open=True,
    )


def checkin_vendor_rule() -> RateLimitRule:
    return RateLimitRule(
        action="checkin:vendor",
        limit=settings.checkin_rate_limit_vendor_max,
        window_seconds=settings.checkin_rate_limit_vendor_window_seconds,
        fail_open=False,
    )


class RateLimiter:
    """Counts attempts per ``(action, subject_key)`` in a shared Redis store.

    Each attempt is a member of a sorted set scored by its timestamp, so the
    window slides instead of resetting on fixed boundaries. Denied attempts are
    removed again and do not extend the lockout.
    """

    def __init__(
        self,
        redis_client: Redis | None = None,
        *,
        clock: Callable[[], float] = time.time,
        unavailable_retry_seconds: int | None = None,
    ) -> None:
        self._redis = redis_client or Redis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._clock = clock
        self._unavailable_retry_seconds = (
            unavailable_retry_seconds or settings.rate_limit_unavailable_retry_seconds
        )

    @staticmethod
    def _key(action: str, subject_key: str) -> str:
        return f"rl:{action}:{subject_key}"

    async def check(self, rule: RateLimitRule, subject_key: str) -> RateLimitDecision:
        """Record one attempt and decide whether it is within the ceiling."""

        try:
            return await self._consume(rule, subject_key)
        except RedisError as exc:
            if rule.fail_open:
                logger.warning(
                    "Rate limiter unavailable, failing open",
                    action=rule.action,
                    error=str(exc),
                )
                return RateLimitDecision(allowed=True, limit=rule.limit, remaining=rule.limit, unavailable=True)
            logger.error(
                "Rate limiter unavailable, failing closed",
                action=rule.action,
                error=str(exc),
            )
            return RateLimitDecision(
                allowed=False,
                limit=rule.limit,
                remaining=0,
                retry_after_seconds=self._unavailable_retry_seconds,
                unavailable=True,
            )

    async def _consume(self, rule: RateLimitRule, subject_key: str) -> RateLimitDecision:
        key = self._key(rule.action, subject_key)
        now = self._clock()
        window_start = now - rule.window_seconds
        member = f"{now:.6f}:{uuid4().hex}"

        # Trim, add and count run as one MULTI/EXEC so concurrent attempts
        # are decided in a single order.
        pipe = self._redis.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.expire(key, rule.window_seconds)
        _, _, attempts, _ = await pipe.execute()

        if attempts <= rule.limit:
            return RateLimitDecision(
                allowed=True,
                limit=rule.limit,
                remaining=max(rule.limit - attempts, 0),
            )

        await self._redis.zrem(key, member)
        oldest = await self._redis.zrange(key, 0, 0, withscores=True)
        if oldest:
            _, oldest_score = oldest[0]
            retry_after = math.ceil(float(oldest_score) + rule.window_seconds - now)
        else:
            retry_after = rule.window_seconds
        return RateLimitDecision(
            allowed=False,
            limit=rule.limit,
            remaining=0,
            retry_after_seconds=max(retry_after, 1),
        )


__all__ = [
    "RateLimitDecision",
    "RateLimitRule",
    "RateLimiter",
    "checkin_user_rule",
    "checkin_vendor_rule",
]
