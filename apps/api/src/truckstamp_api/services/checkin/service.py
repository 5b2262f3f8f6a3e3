"""Geofenced, rate-limited, exactly-once check-in pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.core.settings import Settings, settings
from truckstamp_api.models.checkin import CheckIn
from truckstamp_api.models.idempotency import ClaimScopeEnum
from truckstamp_api.models.vendor import Vendor
from truckstamp_api.observability.tracing import get_tracer
from truckstamp_api.services.geo import haversine_distance_meters, is_valid_coordinate
from truckstamp_api.services.idempotency import ClaimLeaseLostError, IdempotencyLedger
from truckstamp_api.services.loyalty import LoyaltyLedger
from truckstamp_api.services.notifications import NotificationService
from truckstamp_api.services.rate_limit import (
    RateLimiter,
    RateLimitRule,
    checkin_user_rule,
    checkin_vendor_rule,
)

tracer = get_tracer(__name__)

WINDOW_FORMAT = "%Y-%m-%d-%H"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def window_bucket(at: datetime, window: timedelta) -> str:
    """Return the UTC start of the fixed ``window``-sized bucket containing ``at``."""

    width = int(window.total_seconds())
    if width <= 0:
        raise ValueError("window must be positive")
    epoch_seconds = int(_ensure_aware(at).timestamp())
    start = datetime.fromtimestamp(epoch_seconds - epoch_seconds % width, tz=timezone.utc)
    return start.strftime(WINDOW_FORMAT)


def checkin_claim_key(subject_id: UUID, vendor_id: UUID, window_id: str) -> str:
    return f"checkin:{subject_id}:{vendor_id}:{window_id}"


class CheckInStatus(str, Enum):
    SUCCESS = "success"
    UNAUTHORIZED = "unauthorized"
    INVALID_INPUT = "invalid_input"
    VENDOR_NOT_FOUND = "vendor_not_found"
    RATE_LIMITED = "rate_limited"
    RATE_LIMIT_UNAVAILABLE = "rate_limit_unavailable"
    VENDOR_NOT_OPEN = "vendor_not_open"
    NO_VENDOR_LOCATION = "no_vendor_location"
    LOCATION_STALE = "location_stale"
    TOO_FAR = "too_far"
    COOLDOWN_ACTIVE = "cooldown_active"
    DUPLICATE_CLAIM = "duplicate_claim"
    COMMIT_FAILED = "commit_failed"


@dataclass(frozen=True)
class CheckInPolicy:
    """Gate thresholds and rate limit rules applied to every check-in."""

    radius_meters: float
    location_max_age: timedelta
    cooldown: timedelta
    user_rule: RateLimitRule
    vendor_rule: RateLimitRule

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "CheckInPolicy":
        config = config or settings
        return cls(
            radius_meters=config.checkin_radius_meters,
            location_max_age=timedelta(minutes=config.vendor_location_max_age_minutes),
            cooldown=timedelta(hours=config.checkin_cooldown_hours),
            user_rule=checkin_user_rule(),
            vendor_rule=checkin_vendor_rule(),
        )


@dataclass(frozen=True)
class CheckInSummary:
    id: UUID
    user_id: UUID
    vendor_id: UUID
    lat: float
    lng: float
    created_at: datetime


@dataclass(frozen=True)
class VendorSummary:
    id: UUID
    name: str
    is_open: bool


@dataclass(frozen=True)
class LoyaltyDelta:
    stamps_earned: int
    total_stamps: int
    stamps_required: int
    rewards_unlocked: int

    @property
    def reward_unlocked(self) -> bool:
        return self.rewards_unlocked > 0


@dataclass
class CheckInOutcome:
    """Terminal state of one check-in attempt. Rejections are values, not errors."""

    status: CheckInStatus
    message: str | None = None
    check_in: CheckInSummary | None = None
    vendor: VendorSummary | None = None
    loyalty: LoyaltyDelta | None = None
    distance_meters: float | None = None
    max_distance_meters: float | None = None
    retry_after_seconds: int | None = None
    next_check_in: datetime | None = None
    existing_check_in_id: UUID | None = None

    @property
    def ok(self) -> bool:
        return self.status == CheckInStatus.SUCCESS


@dataclass(frozen=True)
class EligibilityChecks:
    vendor_open: bool
    has_location: bool
    location_fresh: bool
    within_range: bool
    no_cooldown: bool
    distance_meters: float | None


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    checks: EligibilityChecks
    vendor: VendorSummary
    next_check_in: datetime | None = None


class CheckInService:
    """Turns a check-in request into at most one CheckIn per cooldown window.

    The cooldown lookup only spares a round trip; exclusivity comes from the
    idempotency claim on ``checkin:{subject}:{vendor}:{window}``.
    """

    def __init__(
        self,
        session: AsyncSession,
        rate_limiter: RateLimiter,
        *,
        policy: CheckInPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        ledger: IdempotencyLedger | None = None,
    ) -> None:
        self._session = session
        self._rate_limiter = rate_limiter
        self._policy = policy or CheckInPolicy.from_settings()
        self._clock = clock or _utcnow
        self._ledger = ledger or IdempotencyLedger(session, clock=self._clock)
        self._loyalty = LoyaltyLedger(session)

    async def check_in(
        self,
        subject_id: UUID | None,
        vendor_id: UUID,
        lat: float,
        lng: float,
    ) -> CheckInOutcome:
        with tracer.start_as_current_span("checkin.process") as span:
            span.set_attribute("checkin.vendor_id", str(vendor_id))
            outcome = await self._process(subject_id, vendor_id, lat, lng)
            span.set_attribute("checkin.status", outcome.status.value)
        if outcome.ok:
            logger.info(
                "Check-in recorded",
                user_id=str(subject_id),
                vendor_id=str(vendor_id),
                check_in_id=str(outcome.check_in.id) if outcome.check_in else None,
            )
        else:
            logger.info(
                "Check-in rejected",
                user_id=str(subject_id) if subject_id else None,
                vendor_id=str(vendor_id),
                status=outcome.status.value,
            )
        return outcome

    async def _process(
        self,
        subject_id: UUID | None,
        vendor_id: UUID,
        lat: float,
        lng: float,
    ) -> CheckInOutcome:
        if subject_id is None:
            return CheckInOutcome(CheckInStatus.UNAUTHORIZED, message="Unauthorized")

        if not is_valid_coordinate(lat, lng):
            return CheckInOutcome(CheckInStatus.INVALID_INPUT, message="Coordinates out of range")

        vendor = await self._load_vendor(vendor_id)
        if vendor is None:
            return CheckInOutcome(CheckInStatus.VENDOR_NOT_FOUND, message="Vendor not found")

        rate_limited = await self._apply_rate_limits(subject_id, vendor_id)
        if rate_limited is not None:
            return rate_limited

        summary = VendorSummary(id=vendor.id, name=vendor.name, is_open=bool(vendor.is_open))
        now = self._clock()

        if not vendor.is_open:
            return CheckInOutcome(
                CheckInStatus.VENDOR_NOT_OPEN, message="Vendor is not currently open", vendor=summary
            )
        if not vendor.has_location:
            return CheckInOutcome(
                CheckInStatus.NO_VENDOR_LOCATION, message="Vendor location not available", vendor=summary
            )
        if not self._location_is_fresh(vendor, now):
            return CheckInOutcome(
                CheckInStatus.LOCATION_STALE, message="Vendor location is outdated", vendor=summary
            )

        distance = haversine_distance_meters(lat, lng, vendor.lat, vendor.lng)
        if distance > self._policy.radius_meters:
            return CheckInOutcome(
                CheckInStatus.TOO_FAR,
                message=f"You must be within {self._policy.radius_meters:g}m of the vendor to check in",
                vendor=summary,
                distance_meters=distance,
                max_distance_meters=self._policy.radius_meters,
            )

        recent = await self._recent_check_in(subject_id, vendor_id, now)
        if recent is not None:
            last_id, next_check_in = recent
            return CheckInOutcome(
                CheckInStatus.COOLDOWN_ACTIVE,
                message="Already checked in recently",
                vendor=summary,
                next_check_in=next_check_in,
                existing_check_in_id=last_id,
            )

        return await self._claim_and_commit(subject_id, vendor, summary, lat, lng, now)

    async def _apply_rate_limits(self, subject_id: UUID, vendor_id: UUID) -> CheckInOutcome | None:
        checks = (
            (self._policy.user_rule, f"user:{subject_id}"),
            (self._policy.vendor_rule, f"user:{subject_id}:vendor:{vendor_id}"),
        )
        for rule, subject_key in checks:
            decision = await self._rate_limiter.check(rule, subject_key)
            if decision.allowed:
                continue
            status = CheckInStatus.RATE_LIMIT_UNAVAILABLE if decision.unavailable else CheckInStatus.RATE_LIMITED
            return CheckInOutcome(
                status,
                message="Too many check-in attempts. Please slow down.",
                retry_after_seconds=decision.retry_after_seconds,
            )
        return None

    async def _claim_and_commit(
        self,
        subject_id: UUID,
        vendor: Vendor,
        summary: VendorSummary,
        lat: float,
        lng: float,
        now: datetime,
    ) -> CheckInOutcome:
        window_id = window_bucket(now, self._policy.cooldown)
        key = checkin_claim_key(subject_id, vendor.id, window_id)
        check_in_id = uuid4()

        with tracer.start_as_current_span("checkin.claim") as span:
            claim = await self._ledger.claim(key, scope=ClaimScopeEnum.CHECKIN, result_ref=str(check_in_id))
            span.set_attribute("checkin.claim_outcome", claim.outcome.value)

        if not claim.acquired:
            existing = UUID(claim.result_ref) if claim.result_ref else None
            return CheckInOutcome(
                CheckInStatus.DUPLICATE_CLAIM,
                message="Already checked in during this window",
                vendor=summary,
                existing_check_in_id=existing,
            )

        record = CheckIn(id=check_in_id, user_id=subject_id, vendor_id=vendor.id, lat=lat, lng=lng, created_at=now)
        try:
            with tracer.start_as_current_span("checkin.commit"):
                self._session.add(record)
                stamp = await self._loyalty.record_stamp(subject_id, vendor, at=now)
                await self._ledger.finalize(claim, result_ref=str(check_in_id))
                await self._session.commit()
        except ClaimLeaseLostError as exc:
            await self._session.rollback()
            logger.opt(exception=exc).error("Check-in claim lease lost before commit", key=key)
            return CheckInOutcome(CheckInStatus.COMMIT_FAILED, message="Failed to process check-in")
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.opt(exception=exc).error("Check-in commit failed, releasing claim", key=key)
            try:
                await self._ledger.release(claim)
            except SQLAlchemyError as cleanup_exc:
                # The claim stays claimed and is reclaimed once its lease goes stale.
                await self._session.rollback()
                logger.opt(exception=cleanup_exc).error("Failed to release check-in claim", key=key)
            return CheckInOutcome(CheckInStatus.COMMIT_FAILED, message="Failed to process check-in")

        delta = LoyaltyDelta(
            stamps_earned=stamp.stamps_earned,
            total_stamps=stamp.total_stamps,
            stamps_required=stamp.stamps_required,
            rewards_unlocked=stamp.rewards_unlocked,
        )
        outcome = CheckInOutcome(
            CheckInStatus.SUCCESS,
            check_in=CheckInSummary(
                id=check_in_id,
                user_id=subject_id,
                vendor_id=vendor.id,
                lat=lat,
                lng=lng,
                created_at=now,
            ),
            vendor=summary,
            loyalty=delta,
        )

        if delta.reward_unlocked:
            await NotificationService(self._session).notify_reward_unlocked(
                subject_id, vendor, rewards=delta.rewards_unlocked
            )
        return outcome

    async def eligibility(
        self,
        subject_id: UUID | None,
        vendor_id: UUID,
        lat: float,
        lng: float,
    ) -> EligibilityResult | None:
        """Evaluate the vendor, location and cooldown gates without writing anything.

        Returns ``None`` when the vendor does not exist. Anonymous callers skip
        the cooldown gate.
        """

        vendor = await self._load_vendor(vendor_id)
        if vendor is None:
            return None

        now = self._clock()
        distance: float | None = None
        within_range = False
        if vendor.has_location:
            distance = haversine_distance_meters(lat, lng, vendor.lat, vendor.lng)
            within_range = distance <= self._policy.radius_meters

        next_check_in = None
        if subject_id is not None:
            recent = await self._recent_check_in(subject_id, vendor_id, now)
            if recent is not None:
                next_check_in = recent[1]

        checks = EligibilityChecks(
            vendor_open=bool(vendor.is_open),
            has_location=vendor.has_location,
            location_fresh=vendor.has_location and self._location_is_fresh(vendor, now),
            within_range=within_range,
            no_cooldown=next_check_in is None,
            distance_meters=distance,
        )
        eligible = all(
            (checks.vendor_open, checks.has_location, checks.location_fresh, checks.within_range, checks.no_cooldown)
        )
        return EligibilityResult(
            eligible=eligible,
            checks=checks,
            vendor=VendorSummary(id=vendor.id, name=vendor.name, is_open=bool(vendor.is_open)),
            next_check_in=next_check_in,
        )

    async def _load_vendor(self, vendor_id: UUID) -> Vendor | None:
        stmt = select(Vendor).where(Vendor.id == vendor_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    def _location_is_fresh(self, vendor: Vendor, now: datetime) -> bool:
        if vendor.location_updated_at is None:
            return False
        return _ensure_aware(vendor.location_updated_at) >= now - self._policy.location_max_age

    async def _recent_check_in(
        self, subject_id: UUID, vendor_id: UUID, now: datetime
    ) -> tuple[UUID, datetime] | None:
        """Return ``(check_in_id, next_allowed_at)`` while the cooldown is active."""

        cutoff = now - self._policy.cooldown
        stmt = (
            select(CheckIn.id, CheckIn.created_at)
            .where(
                CheckIn.user_id == subject_id,
                CheckIn.vendor_id == vendor_id,
                CheckIn.created_at >= cutoff,
            )
            .order_by(CheckIn.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        check_in_id, created_at = row
        return check_in_id, _ensure_aware(created_at) + self._policy.cooldown


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
