"""Profile service: lazily created user profiles and contact details."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.domain.models import Profile

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("full_name", "phone", "apartment_number", "building_name", "bio")


async def get_profile(db: AsyncSession, user_id: str) -> Optional[Profile]:
    result = await db.execute(select(Profile).where(Profile.user_id == user_id))
    return result.scalar_one_or_none()


async def get_profile_by_account(db: AsyncSession, stripe_account_id: str) -> Optional[Profile]:
    result = await db.execute(
        select(Profile).where(Profile.stripe_account_id == stripe_account_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_profile(
    db: AsyncSession, user_id: str, full_name: str | None = None
) -> Profile:
    """Return the caller's profile, creating an empty one on first access."""
    profile = await get_profile(db, user_id)
    if profile:
        return profile

    profile = Profile(user_id=user_id, full_name=full_name or "")
    db.add(profile)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent request created it first
        await db.rollback()
        profile = await get_profile(db, user_id)
    else:
        logger.info("Profile created for user %s", user_id)
    return profile


async def update_profile(db: AsyncSession, user_id: str, changes: dict) -> Profile:
    profile = await get_or_create_profile(db, user_id)
    for field in EDITABLE_FIELDS:
        if field in changes:
            setattr(profile, field, changes[field])
    await db.commit()
    await db.refresh(profile)
    return profile


def contact_details(profile: Optional[Profile]) -> dict:
    """Contact details disclosed once an offer is mutually approved."""
    if profile is None:
        return {"full_name": None, "phone": None, "apartment_number": None, "building_name": None}
    return {
        "full_name": profile.full_name,
        "phone": profile.phone,
        "apartment_number": profile.apartment_number,
        "building_name": profile.building_name,
    }
