"""Check-in endpoints: the stamp-earning write path and its read-only preflight."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.api.dependencies.rate_limit import get_rate_limiter
from truckstamp_api.api.dependencies.session import get_session_subject
from truckstamp_api.db.session import get_session
from truckstamp_api.models.user import User
from truckstamp_api.schemas.checkin import CheckInRequest, EligibilityQuery, FieldError, validate
from truckstamp_api.services.checkin import CheckInOutcome, CheckInService, CheckInStatus
from truckstamp_api.services.rate_limit import RateLimiter

router = APIRouter(prefix="/check-ins", tags=["check-ins"])


STATUS_CODES: dict[CheckInStatus, tuple[int, str]] = {
    CheckInStatus.UNAUTHORIZED: (status.HTTP_401_UNAUTHORIZED, "UNAUTHORIZED"),
    CheckInStatus.INVALID_INPUT: (status.HTTP_400_BAD_REQUEST, "INVALID_INPUT"),
    CheckInStatus.VENDOR_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "VENDOR_NOT_FOUND"),
    CheckInStatus.RATE_LIMITED: (status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMITED"),
    CheckInStatus.RATE_LIMIT_UNAVAILABLE: (status.HTTP_503_SERVICE_UNAVAILABLE, "RATE_LIMIT_UNAVAILABLE"),
    CheckInStatus.VENDOR_NOT_OPEN: (status.HTTP_400_BAD_REQUEST, "TRUCK_CLOSED"),
    CheckInStatus.NO_VENDOR_LOCATION: (status.HTTP_400_BAD_REQUEST, "NO_TRUCK_LOCATION"),
    CheckInStatus.LOCATION_STALE: (status.HTTP_400_BAD_REQUEST, "LOCATION_STALE"),
    CheckInStatus.TOO_FAR: (status.HTTP_400_BAD_REQUEST, "TOO_FAR"),
    CheckInStatus.COOLDOWN_ACTIVE: (status.HTTP_400_BAD_REQUEST, "COOLDOWN"),
    CheckInStatus.DUPLICATE_CLAIM: (status.HTTP_409_CONFLICT, "DUPLICATE_CHECKIN"),
    CheckInStatus.COMMIT_FAILED: (status.HTTP_500_INTERNAL_SERVER_ERROR, "CHECKIN_FAILED"),
}


class CheckInRecordResponse(BaseModel):
    id: UUID
    userId: UUID
    vendorId: UUID
    lat: float
    lng: float
    createdAt: datetime


class LoyaltyDeltaResponse(BaseModel):
    stampsEarned: int
    totalStamps: int
    stampsRequired: int
    rewardUnlocked: bool


class VendorSummaryResponse(BaseModel):
    id: UUID
    name: str
    isOpen: bool


class CheckInResponse(BaseModel):
    success: bool
    checkIn: CheckInRecordResponse
    loyalty: LoyaltyDeltaResponse
    vendor: VendorSummaryResponse


class EligibilityChecksResponse(BaseModel):
    vendorOpen: bool
    hasLocation: bool
    locationFresh: bool
    withinRange: bool
    noCooldown: bool
    distance: Optional[float]


class EligibilityResponse(BaseModel):
    eligible: bool
    checks: EligibilityChecksResponse
    vendor: VendorSummaryResponse
    nextCheckIn: Optional[datetime]


def _invalid_input(errors: list[FieldError]) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "Validation failed",
            "code": "INVALID_INPUT",
            "details": [error.model_dump() for error in errors],
        },
    )


def _rejection(outcome: CheckInOutcome) -> JSONResponse:
    status_code, code = STATUS_CODES[outcome.status]
    content: dict[str, Any] = {"error": outcome.message or code, "code": code}
    headers: dict[str, str] = {}

    if outcome.retry_after_seconds is not None:
        content["retryAfter"] = outcome.retry_after_seconds
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    if outcome.status == CheckInStatus.TOO_FAR:
        content["distance"] = outcome.distance_meters
        content["maxDistance"] = outcome.max_distance_meters
    if outcome.next_check_in is not None:
        content["nextCheckIn"] = outcome.next_check_in.isoformat()
    if outcome.status == CheckInStatus.DUPLICATE_CLAIM or outcome.existing_check_in_id is not None:
        content["existingCheckInId"] = str(outcome.existing_check_in_id) if outcome.existing_check_in_id else None

    return JSONResponse(status_code=status_code, content=content, headers=headers or None)


@router.post("", response_model=CheckInResponse)
async def create_check_in(
    request: Request,
    subject: User | None = Depends(get_session_subject),
    db: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> CheckInResponse | JSONResponse:
    """Verify presence at a vendor and record one stamp."""

    if subject is None:
        return _rejection(CheckInOutcome(CheckInStatus.UNAUTHORIZED, message="Unauthorized"))

    try:
        payload = await request.json()
    except ValueError:
        return _invalid_input([FieldError(field="body", message="Body must be valid JSON")])

    validation = validate(CheckInRequest, payload)
    if not validation.success or validation.data is None:
        return _invalid_input(validation.errors)
    data = validation.data

    service = CheckInService(db, rate_limiter)
    outcome = await service.check_in(subject.id, data.vendorId, data.lat, data.lng)
    if not outcome.ok:
        return _rejection(outcome)

    return CheckInResponse(
        success=True,
        checkIn=CheckInRecordResponse(
            id=outcome.check_in.id,
            userId=outcome.check_in.user_id,
            vendorId=outcome.check_in.vendor_id,
            lat=outcome.check_in.lat,
            lng=outcome.check_in.lng,
            createdAt=outcome.check_in.created_at,
        ),
        loyalty=LoyaltyDeltaResponse(
            stampsEarned=outcome.loyalty.stamps_earned,
            totalStamps=outcome.loyalty.total_stamps,
            stampsRequired=outcome.loyalty.stamps_required,
            rewardUnlocked=outcome.loyalty.reward_unlocked,
        ),
        vendor=VendorSummaryResponse(
            id=outcome.vendor.id,
            name=outcome.vendor.name,
            isOpen=outcome.vendor.is_open,
        ),
    )


@router.get("/eligibility", response_model=EligibilityResponse)
async def check_in_eligibility(
    request: Request,
    subject: User | None = Depends(get_session_subject),
    db: AsyncSession = Depends(get_session),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> EligibilityResponse | JSONResponse:
    """Evaluate the check-in gates without writing anything."""

    validation = validate(EligibilityQuery, dict(request.query_params))
    if not validation.success or validation.data is None:
        return _invalid_input(validation.errors)
    query = validation.data

    service = CheckInService(db, rate_limiter)
    result = await service.eligibility(subject.id if subject else None, query.vendorId, query.lat, query.lng)
    if result is None:
        return _rejection(CheckInOutcome(CheckInStatus.VENDOR_NOT_FOUND, message="Vendor not found"))

    return EligibilityResponse(
        eligible=result.eligible,
        checks=EligibilityChecksResponse(
            vendorOpen=result.checks.vendor_open,
            hasLocation=result.checks.has_location,
            locationFresh=result.checks.location_fresh,
            withinRange=result.checks.within_range,
            noCooldown=result.checks.no_cooldown,
            distance=result.checks.distance_meters,
        ),
        vendor=VendorSummaryResponse(
            id=result.vendor.id,
            name=result.vendor.name,
            isOpen=result.vendor.is_open,
        ),
        nextCheckIn=result.next_check_in,
    )
