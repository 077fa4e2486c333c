"""Profile routes: the caller's own profile and contact details."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.routes.auth import get_current_user_dep
from grannhjalp.domain.schemas import ProfileResponse, ProfileUpdate
from grannhjalp.infra.database import get_db
from grannhjalp.services.auth_service import CurrentUser
from grannhjalp.services.profile_service import get_or_create_profile, update_profile

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.get("", response_model=ProfileResponse)
async def get_my_profile(
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await get_or_create_profile(db, user.id)


@router.put("", response_model=ProfileResponse)
async def update_my_profile(
    data: ProfileUpdate,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await update_profile(db, user.id, data.model_dump(exclude_unset=True))
