import asyncio
import math
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from truckstamp_api.models.checkin import CheckIn
from truckstamp_api.models.idempotency import IdempotencyClaim
from truckstamp_api.models.loyalty import LoyaltyCard
from truckstamp_api.models.notification import Notification, NotificationTypeEnum
from truckstamp_api.services.checkin import (
    CheckInPolicy,
    CheckInService,
    CheckInStatus,
    checkin_claim_key,
    window_bucket,
)
from truckstamp_api.services.geo import EARTH_RADIUS_METERS, haversine_distance_meters
from truckstamp_api.services.rate_limit import RateLimiter, RateLimitRule

VENDOR_LAT = -33.9249
VENDOR_LNG = 18.4241


def _policy(*, vendor_limit: int = 100) -> CheckInPolicy:
    return CheckInPolicy(
        radius_meters=200.0,
        location_max_age=timedelta(minutes=60),
        cooldown=timedelta(hours=4),
        user_rule=RateLimitRule(action="checkin:user", limit=100, window_seconds=3600, fail_open=True),
        vendor_rule=RateLimitRule(action="checkin:vendor", limit=vendor_limit, window_seconds=3600, fail_open=False),
    )


def _service(session, fake_redis, clock, **policy_overrides) -> CheckInService:
    return CheckInService(session, RateLimiter(fake_redis), policy=_policy(**policy_overrides), clock=clock)


def _latitude_at_distance(meters: float) -> float:
    """Northward latitude from the vendor whose distance does not exceed ``meters``."""

    lat = VENDOR_LAT + math.degrees(meters / EARTH_RADIUS_METERS)
    while haversine_distance_meters(lat, VENDOR_LNG, VENDOR_LAT, VENDOR_LNG) > meters:
        lat = math.nextafter(lat, VENDOR_LAT)
    return lat


async def _seed(session_factory, make_user, make_vendor, **vendor_overrides):
    async with session_factory() as session:
        user = await make_user(session)
        vendor = await make_vendor(session, **vendor_overrides)
        await session.commit()
        return user.id, vendor.id


def test_window_bucket_uses_fixed_utc_buckets(clock) -> None:
    window = timedelta(hours=4)

    assert window_bucket(clock.now, window) == "2026-10-19-12"
    assert window_bucket(clock.now + timedelta(hours=3, minutes=59), window) == "2026-10-19-12"
    assert window_bucket(clock.now + timedelta(hours=4), window) == "2026-10-19-16"


def test_claim_key_is_scoped_to_subject_vendor_and_window() -> None:
    subject, vendor = uuid4(), uuid4()

    assert checkin_claim_key(subject, vendor, "2026-10-19-12") == f"checkin:{subject}:{vendor}:2026-10-19-12"


@pytest.mark.asyncio
async def test_check_in_at_vendor_location_records_stamp(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert outcome.status == CheckInStatus.SUCCESS
    assert outcome.check_in is not None
    assert outcome.check_in.created_at == clock.now
    assert outcome.loyalty is not None
    assert outcome.loyalty.stamps_earned == 1
    assert outcome.loyalty.total_stamps == 1
    assert not outcome.loyalty.reward_unlocked

    async with session_factory() as session:
        claim = await session.scalar(select(IdempotencyClaim))
        assert claim is not None
        assert claim.key == checkin_claim_key(user_id, vendor_id, "2026-10-19-12")
        assert claim.result_ref == str(outcome.check_in.id)


@pytest.mark.asyncio
async def test_geofence_boundary_is_inclusive(session_factory, make_user, make_vendor, fake_redis, clock) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)
    boundary_lat = _latitude_at_distance(200.0)

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, boundary_lat, VENDOR_LNG)

    assert outcome.status == CheckInStatus.SUCCESS


@pytest.mark.asyncio
async def test_check_in_beyond_radius_reports_distance(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)
    far_lat = VENDOR_LAT + math.degrees(200.1 / EARTH_RADIUS_METERS)

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, far_lat, VENDOR_LNG)
        check_ins = await session.scalar(select(func.count()).select_from(CheckIn))

    assert outcome.status == CheckInStatus.TOO_FAR
    assert outcome.distance_meters == pytest.approx(200.1, abs=0.01)
    assert outcome.max_distance_meters == 200.0
    assert check_ins == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "expected"),
    [
        ({"is_open": False}, CheckInStatus.VENDOR_NOT_OPEN),
        ({"lat": None, "lng": None}, CheckInStatus.NO_VENDOR_LOCATION),
        ({"location_updated_at": None}, CheckInStatus.LOCATION_STALE),
    ],
)
async def test_vendor_gates_reject_before_claiming(
    session_factory, make_user, make_vendor, fake_redis, clock, overrides, expected
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor, **overrides)

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        claims = await session.scalar(select(func.count()).select_from(IdempotencyClaim))

    assert outcome.status == expected
    assert claims == 0


@pytest.mark.asyncio
async def test_stale_vendor_location_is_rejected(session_factory, make_user, make_vendor, fake_redis, clock) -> None:
    user_id, vendor_id = await _seed(
        session_factory, make_user, make_vendor, location_updated_at=clock.now - timedelta(minutes=61)
    )

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert outcome.status == CheckInStatus.LOCATION_STALE


@pytest.mark.asyncio
async def test_request_level_rejections(session_factory, make_user, make_vendor, fake_redis, clock) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock)
        anonymous = await service.check_in(None, vendor_id, VENDOR_LAT, VENDOR_LNG)
        invalid = await service.check_in(user_id, vendor_id, 91.0, VENDOR_LNG)
        not_a_number = await service.check_in(user_id, vendor_id, math.nan, VENDOR_LNG)
        missing = await service.check_in(user_id, uuid4(), VENDOR_LAT, VENDOR_LNG)

    assert anonymous.status == CheckInStatus.UNAUTHORIZED
    assert invalid.status == CheckInStatus.INVALID_INPUT
    assert not_a_number.status == CheckInStatus.INVALID_INPUT
    assert missing.status == CheckInStatus.VENDOR_NOT_FOUND


@pytest.mark.asyncio
async def test_cooldown_boundary(session_factory, make_user, make_vendor, fake_redis, clock) -> None:
    user_id, vendor_id = await _seed(
        session_factory, make_user, make_vendor, location_updated_at=clock.now + timedelta(hours=5)
    )

    async with session_factory() as session:
        first = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
    assert first.ok

    clock.advance(hours=4)
    async with session_factory() as session:
        blocked = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert blocked.status == CheckInStatus.COOLDOWN_ACTIVE
    assert blocked.next_check_in == first.check_in.created_at + timedelta(hours=4)
    assert blocked.existing_check_in_id == first.check_in.id

    clock.advance(seconds=1)
    async with session_factory() as session:
        allowed = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        card = await session.scalar(select(LoyaltyCard))

    assert allowed.ok
    assert allowed.loyalty.total_stamps == 2
    assert card is not None
    assert card.lifetime_stamps == 2


@pytest.mark.asyncio
async def test_reward_rollover_enqueues_one_notification(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)
    async with session_factory() as session:
        session.add(LoyaltyCard(user_id=user_id, vendor_id=vendor_id, stamps=9, stamps_required=10, lifetime_stamps=9))
        await session.commit()

    async with session_factory() as session:
        outcome = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert outcome.ok
    assert outcome.loyalty.total_stamps == 0
    assert outcome.loyalty.reward_unlocked

    async with session_factory() as session:
        card = await session.scalar(select(LoyaltyCard))
        notifications = (await session.execute(select(Notification))).scalars().all()

    assert card.stamps == 0
    assert card.rewards_earned == 1
    assert len(notifications) == 1
    assert notifications[0].type == NotificationTypeEnum.REWARD_UNLOCKED
    assert notifications[0].vendor_id == vendor_id


@pytest.mark.asyncio
async def test_per_vendor_rate_limit_applies_before_cooldown(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock, vendor_limit=1)
        first = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        second = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert first.ok
    assert second.status == CheckInStatus.RATE_LIMITED
    assert second.retry_after_seconds is not None
    assert 0 < second.retry_after_seconds <= 3600


@pytest.mark.asyncio
async def test_unreachable_rate_limit_store_fails_closed(
    session_factory, make_user, make_vendor, broken_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = CheckInService(session, RateLimiter(broken_redis), policy=_policy(), clock=clock)
        outcome = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        check_ins = await session.scalar(select(func.count()).select_from(CheckIn))

    assert outcome.status == CheckInStatus.RATE_LIMIT_UNAVAILABLE
    assert outcome.retry_after_seconds is not None
    assert check_ins == 0


@pytest.mark.asyncio
async def test_commit_failure_releases_claim(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock)

        async def failing_record_stamp(*_args, **_kwargs):
            raise OperationalError("UPDATE loyalty_cards", {}, Exception("disk I/O error"))

        service._loyalty.record_stamp = failing_record_stamp
        outcome = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        claims = await session.scalar(select(func.count()).select_from(IdempotencyClaim))
        check_ins = await session.scalar(select(func.count()).select_from(CheckIn))

    assert outcome.status == CheckInStatus.COMMIT_FAILED
    assert claims == 0
    assert check_ins == 0

    async with session_factory() as session:
        retried = await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
    assert retried.ok


@pytest.mark.asyncio
async def test_release_failure_after_commit_failure_still_reports_commit_failed(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock)

        async def failing_record_stamp(*_args, **_kwargs):
            raise OperationalError("UPDATE loyalty_cards", {}, Exception("disk I/O error"))

        async def failing_release(*_args, **_kwargs):
            raise OperationalError("DELETE FROM idempotency_claims", {}, Exception("database is locked"))

        service._loyalty.record_stamp = failing_record_stamp
        service._ledger.release = failing_release
        outcome = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        claims = await session.scalar(select(func.count()).select_from(IdempotencyClaim))
        check_ins = await session.scalar(select(func.count()).select_from(CheckIn))

    assert outcome.status == CheckInStatus.COMMIT_FAILED
    assert outcome.message == "Failed to process check-in"
    assert claims == 1
    assert check_ins == 0


@pytest.mark.asyncio
async def test_concurrent_check_ins_record_exactly_one_stamp(
    file_session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(file_session_factory, make_user, make_vendor)

    async def attempt():
        async with file_session_factory() as session:
            return await _service(session, fake_redis, clock).check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)

    outcomes = await asyncio.gather(*(attempt() for _ in range(5)))

    winners = [outcome for outcome in outcomes if outcome.ok]
    losers = [outcome for outcome in outcomes if not outcome.ok]
    assert len(winners) == 1
    winner_id = winners[0].check_in.id
    for outcome in losers:
        assert outcome.status in {CheckInStatus.DUPLICATE_CLAIM, CheckInStatus.COOLDOWN_ACTIVE}
        assert outcome.existing_check_in_id == winner_id

    async with file_session_factory() as session:
        check_ins = await session.scalar(select(func.count()).select_from(CheckIn))
        card = await session.scalar(select(LoyaltyCard))

    assert check_ins == 1
    assert card.stamps == 1
    assert card.lifetime_stamps == 1


@pytest.mark.asyncio
async def test_eligibility_reports_each_gate_without_writing(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)
    far_lat = VENDOR_LAT + math.degrees(500 / EARTH_RADIUS_METERS)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock)
        near = await service.eligibility(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        far = await service.eligibility(None, vendor_id, far_lat, VENDOR_LNG)
        missing = await service.eligibility(user_id, uuid4(), VENDOR_LAT, VENDOR_LNG)
        claims = await session.scalar(select(func.count()).select_from(IdempotencyClaim))

    assert near is not None and near.eligible
    assert near.checks.distance_meters == pytest.approx(0.0)
    assert far is not None and not far.eligible
    assert not far.checks.within_range
    assert far.checks.no_cooldown
    assert missing is None
    assert claims == 0
    assert fake_redis.expirations == {}


@pytest.mark.asyncio
async def test_eligibility_reports_cooldown_for_signed_in_user(
    session_factory, make_user, make_vendor, fake_redis, clock
) -> None:
    user_id, vendor_id = await _seed(session_factory, make_user, make_vendor)

    async with session_factory() as session:
        service = _service(session, fake_redis, clock)
        outcome = await service.check_in(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        signed_in = await service.eligibility(user_id, vendor_id, VENDOR_LAT, VENDOR_LNG)
        anonymous = await service.eligibility(None, vendor_id, VENDOR_LAT, VENDOR_LNG)

    assert outcome.ok
    assert not signed_in.eligible
    assert not signed_in.checks.no_cooldown
    assert signed_in.next_check_in == clock.now + timedelta(hours=4)
    assert anonymous.eligible
