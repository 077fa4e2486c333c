"""Offer transition endpoints: approve and withdraw."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.routes.auth import get_current_user_dep
from grannhjalp.domain.schemas import OfferResponse
from grannhjalp.infra.database import get_db
from grannhjalp.services.auth_service import CurrentUser
from grannhjalp.services.errors import ServiceError
from grannhjalp.services.need_service import NeedService
from grannhjalp.services.offer_service import OfferService

router = APIRouter(prefix="/api/offers", tags=["offers"])


@router.post("/{offer_id}/approve", response_model=OfferResponse)
async def approve_offer(
    offer_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = OfferService(db)
    try:
        offer = await service.approve_offer(offer_id, user.id)
        need = await NeedService(db).get_need(offer.need_id)
        return await service.describe_offer(need, offer, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.post("/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    offer_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = OfferService(db)
    try:
        offer = await service.withdraw_offer(offer_id, user.id)
        need = await NeedService(db).get_need(offer.need_id)
        return await service.describe_offer(need, offer, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
