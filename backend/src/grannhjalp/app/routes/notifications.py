"""In-app notification endpoints for the calling user."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.routes.auth import get_current_user_dep
from grannhjalp.domain.schemas import NotificationResponse
from grannhjalp.infra.database import get_db
from grannhjalp.services.auth_service import CurrentUser
from grannhjalp.services.errors import ServiceError
from grannhjalp.services.notification_service import NotificationService

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationService(db).list_for_user(
        user.id, unread_only=unread_only, limit=limit
    )


@router.post("/read-all")
async def mark_all_read(
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    updated = await NotificationService(db).mark_all_read(user.id)
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await NotificationService(db).mark_read(user.id, notification_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
