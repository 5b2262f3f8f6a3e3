"""Durable claim/finalize primitive backed by ``idempotency_claims``."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from uuid import uuid4

from loguru import logger
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.core.settings import settings
from truckstamp_api.models.idempotency import ClaimScopeEnum, ClaimStateEnum, IdempotencyClaim


MAX_ERROR_LENGTH = 1000


class ClaimOutcome(str, Enum):
    ACQUIRED = "acquired"
    RECLAIMED = "reclaimed"
    COMPLETED = "completed"
    IN_FLIGHT = "in_flight"


class ClaimLeaseLostError(RuntimeError):
    """Raised when finalizing a claim whose lease was taken over by another caller."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Lease for idempotency key {key!r} is no longer held")
        self.key = key


@dataclass(slots=True)
class ClaimResult:
    """Result of a claim attempt."""

    outcome: ClaimOutcome
    key: str
    lease_id: str | None
    result_ref: str | None
    attempt_count: int

    @property
    def acquired(self) -> bool:
        return self.outcome in {ClaimOutcome.ACQUIRED, ClaimOutcome.RECLAIMED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IdempotencyLedger:
    """Atomic claim, finalize and failure bookkeeping for natural keys.

    ``claim`` commits the claim row on its own so that other processes observe
    it before any side effect runs. ``finalize`` only flushes, so callers can
    commit it in the same transaction as their domain mutation.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        stale_after: timedelta | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._stale_after = stale_after or timedelta(seconds=settings.idempotency_claim_stale_seconds)
        self._max_attempts = max_attempts or settings.idempotency_claim_max_attempts
        self._clock = clock or _utcnow

    async def get(self, key: str) -> IdempotencyClaim | None:
        stmt = (
            select(IdempotencyClaim)
            .where(IdempotencyClaim.key == key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        key: str,
        *,
        scope: ClaimScopeEnum,
        result_ref: str | None = None,
    ) -> ClaimResult:
        """Insert the claim row, or resolve the prior claim for ``key``."""

        lease_id = uuid4().hex
        now = self._clock()
        record = IdempotencyClaim(
            key=key,
            scope=scope,
            state=ClaimStateEnum.CLAIMED,
            result_ref=result_ref,
            lease_id=lease_id,
            attempt_count=1,
            claimed_at=now,
        )
        self._session.add(record)
        try:
            await self._session.commit()
        except IntegrityError:
            await self._session.rollback()
            return await self._resolve_existing(key, lease_id=lease_id, result_ref=result_ref, now=now)

        logger.debug("Idempotency claim acquired", key=key, scope=scope.value)
        return ClaimResult(
            outcome=ClaimOutcome.ACQUIRED,
            key=key,
            lease_id=lease_id,
            result_ref=result_ref,
            attempt_count=1,
        )

    async def _resolve_existing(
        self,
        key: str,
        *,
        lease_id: str,
        result_ref: str | None,
        now: datetime,
    ) -> ClaimResult:
        existing = await self.get(key)
        if existing is None:
            # Released between our insert and this read; the releasing caller
            # is still the one that owns the retry.
            return ClaimResult(ClaimOutcome.IN_FLIGHT, key, None, None, 0)

        if existing.state == ClaimStateEnum.COMPLETED:
            return ClaimResult(
                ClaimOutcome.COMPLETED, key, None, existing.result_ref, existing.attempt_count
            )

        stale_cutoff = now - self._stale_after
        if existing.state == ClaimStateEnum.CLAIMED and _ensure_aware(existing.claimed_at) > stale_cutoff:
            return ClaimResult(
                ClaimOutcome.IN_FLIGHT, key, None, existing.result_ref, existing.attempt_count
            )

        values: dict[str, object] = {
            "state": ClaimStateEnum.CLAIMED,
            "lease_id": lease_id,
            "claimed_at": now,
            "completed_at": None,
            "attempt_count": IdempotencyClaim.attempt_count + 1,
            "last_error": None,
        }
        if result_ref is not None:
            values["result_ref"] = result_ref

        stmt = (
            update(IdempotencyClaim)
            .where(
                IdempotencyClaim.key == key,
                or_(
                    IdempotencyClaim.state == ClaimStateEnum.FAILED,
                    and_(
                        IdempotencyClaim.state == ClaimStateEnum.CLAIMED,
                        IdempotencyClaim.claimed_at < stale_cutoff,
                    ),
                ),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.commit()
        if result.rowcount != 1:
            refreshed = await self.get(key)
            return ClaimResult(
                ClaimOutcome.IN_FLIGHT,
                key,
                None,
                refreshed.result_ref if refreshed else None,
                refreshed.attempt_count if refreshed else 0,
            )

        attempt_count = (existing.attempt_count or 0) + 1
        if attempt_count > self._max_attempts:
            logger.error(
                "Idempotency claim exceeded max attempts",
                key=key,
                attempt_count=attempt_count,
                max_attempts=self._max_attempts,
            )
        else:
            logger.warning(
                "Idempotency claim reclaimed for retry",
                key=key,
                previous_state=existing.state.value,
                attempt_count=attempt_count,
            )
        return ClaimResult(
            outcome=ClaimOutcome.RECLAIMED,
            key=key,
            lease_id=lease_id,
            result_ref=result_ref if result_ref is not None else existing.result_ref,
            attempt_count=attempt_count,
        )

    async def finalize(self, claim: ClaimResult, *, result_ref: str | None = None) -> None:
        """Mark the claim completed inside the caller's open transaction."""

        values: dict[str, object] = {
            "state": ClaimStateEnum.COMPLETED,
            "completed_at": self._clock(),
            "last_error": None,
        }
        if result_ref is not None:
            values["result_ref"] = result_ref
        stmt = (
            update(IdempotencyClaim)
            .where(
                IdempotencyClaim.key == claim.key,
                IdempotencyClaim.lease_id == claim.lease_id,
                IdempotencyClaim.state == ClaimStateEnum.CLAIMED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            raise ClaimLeaseLostError(claim.key)

    async def mark_failed(self, claim: ClaimResult, error: str) -> None:
        """Leave the claim reclaimable after a failed side effect."""

        stmt = (
            update(IdempotencyClaim)
            .where(
                IdempotencyClaim.key == claim.key,
                IdempotencyClaim.lease_id == claim.lease_id,
            )
            .values(
                state=ClaimStateEnum.FAILED,
                completed_at=self._clock(),
                last_error=error[:MAX_ERROR_LENGTH],
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.commit()

    async def release(self, claim: ClaimResult) -> None:
        """Drop a claim we still hold so the key can be claimed afresh."""

        stmt = (
            delete(IdempotencyClaim)
            .where(
                IdempotencyClaim.key == claim.key,
                IdempotencyClaim.lease_id == claim.lease_id,
                IdempotencyClaim.state == ClaimStateEnum.CLAIMED,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.commit()


__all__ = [
    "ClaimLeaseLostError",
    "ClaimOutcome",
    "ClaimResult",
    "IdempotencyLedger",
]
