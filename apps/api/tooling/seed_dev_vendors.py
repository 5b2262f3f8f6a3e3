"""Seed a demo customer, vendor owner and open vendor into the API database."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from truckstamp_api.core.settings import settings
from truckstamp_api.models.user import User, UserRoleEnum
from truckstamp_api.models.vendor import Vendor


class SeedUser(TypedDict):
    email: str
    display_name: str
    role: str


DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_CUSTOMER_EMAIL", "customer@truckstamp.dev").lower(),
        "display_name": "Customer QA",
        "role": UserRoleEnum.CUSTOMER.value,
    },
    {
        "email": os.getenv("DEV_OWNER_EMAIL", "owner@truckstamp.dev").lower(),
        "display_name": "Owner QA",
        "role": UserRoleEnum.OWNER.value,
    },
]

DEV_VENDOR_NAME = os.getenv("DEV_VENDOR_NAME", "Demo Taco Truck")
DEV_VENDOR_LAT = float(os.getenv("DEV_VENDOR_LAT", "-33.9249"))
DEV_VENDOR_LNG = float(os.getenv("DEV_VENDOR_LNG", "18.4241"))


async def seed_users(session: AsyncSession) -> dict[str, User]:
    seeded: dict[str, User] = {}
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()

        if record:
            record.display_name = user["display_name"]
            record.role = user["role"]
        else:
            record = User(email=user["email"], display_name=user["display_name"], role=user["role"])
            session.add(record)
        seeded[user["role"]] = record
    await session.flush()
    return seeded


async def seed_vendor(session: AsyncSession, owner: User) -> Vendor:
    now = datetime.now(timezone.utc)
    existing = await session.execute(select(Vendor).where(Vendor.name == DEV_VENDOR_NAME))
    vendor = existing.scalar_one_or_none()
    if vendor is None:
        vendor = Vendor(name=DEV_VENDOR_NAME, cuisine="Mexican")
        session.add(vendor)

    vendor.owner_id = owner.id
    vendor.is_open = True
    vendor.lat = DEV_VENDOR_LAT
    vendor.lng = DEV_VENDOR_LNG
    vendor.location_updated_at = now
    vendor.stamps_required = settings.loyalty_default_stamps_required
    return vendor


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            users = await seed_users(session)
            vendor = await seed_vendor(session, users[UserRoleEnum.OWNER.value])
            await session.commit()
        print(f"Demo vendor ready: {vendor.id}")
        print(f"Check in with X-Session-User: {users[UserRoleEnum.CUSTOMER.value].id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
