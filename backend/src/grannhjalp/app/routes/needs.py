"""Need endpoints: owner-scoped CRUD and the offers posted on a need."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.routes.auth import get_current_user_dep
from grannhjalp.domain.models import Need
from grannhjalp.domain.schemas import (
    NeedCreate,
    NeedResponse,
    NeedUpdate,
    OfferCreate,
    OfferResponse,
)
from grannhjalp.infra.database import get_db
from grannhjalp.services.auth_service import CurrentUser
from grannhjalp.services.errors import ServiceError
from grannhjalp.services.need_service import NeedService
from grannhjalp.services.offer_service import OfferService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/needs", tags=["needs"])


async def serialize_need(service: NeedService, need: Need) -> NeedResponse:
    response = NeedResponse.model_validate(need)
    response.status = (await service.display_status(need)).value
    return response


@router.post("", response_model=NeedResponse, status_code=status.HTTP_201_CREATED)
async def create_need(
    data: NeedCreate,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = NeedService(db)
    try:
        need = await service.create_need(
            owner_id=user.id,
            title=data.title,
            description=data.description,
            category=data.category.value,
            budget_amount=data.budget_amount,
            budget_currency=data.budget_currency,
            location=data.location,
            needed_by=data.needed_by,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return await serialize_need(service, need)


@router.get("/mine", response_model=list[NeedResponse])
async def list_my_needs(
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = NeedService(db)
    needs = await service.list_needs_for_owner(user.id)
    return [await serialize_need(service, need) for need in needs]


@router.get("/{need_id}", response_model=NeedResponse)
async def get_need(
    need_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = NeedService(db)
    try:
        need = await service.get_need(need_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return await serialize_need(service, need)


@router.patch("/{need_id}", response_model=NeedResponse)
async def update_need(
    need_id: str,
    data: NeedUpdate,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)
    if "category" in changes and changes["category"] is not None:
        changes["category"] = changes["category"].value
    # Required columns cannot be cleared
    for field in ("title", "description", "category", "budget_currency"):
        if field in changes and changes[field] is None:
            del changes[field]

    service = NeedService(db)
    try:
        need = await service.update_need(need_id, user.id, changes)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return await serialize_need(service, need)


@router.post("/{need_id}/cancel", response_model=NeedResponse)
async def cancel_need(
    need_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = NeedService(db)
    try:
        need = await service.cancel_need(need_id, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return await serialize_need(service, need)


@router.delete("/{need_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_need(
    need_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        await NeedService(db).delete_need(need_id, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


# ---------------------------------------------------------------------------
# Offers on a need
# ---------------------------------------------------------------------------


@router.post(
    "/{need_id}/offers", response_model=OfferResponse, status_code=status.HTTP_201_CREATED
)
async def submit_offer(
    need_id: str,
    data: OfferCreate,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    service = OfferService(db)
    try:
        offer = await service.submit_offer(
            need_id, user.id, message=data.message, helper_approved=data.helper_approved
        )
        need = await NeedService(db).get_need(need_id)
        return await service.describe_offer(need, offer, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/{need_id}/offers", response_model=list[OfferResponse])
async def list_offers(
    need_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await OfferService(db).list_offers_for_need(need_id, user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
