"""Payment endpoints: checkout, Connect onboarding and the commission ledger."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.routes.auth import get_current_user_dep, require_role
from grannhjalp.domain.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CommissionResponse,
    CommissionSummaryResponse,
    ConnectRequest,
    ConnectResponse,
    ConnectStatusResponse,
)
from grannhjalp.infra.database import get_db
from grannhjalp.infra.stripe_gateway import StripeGateway, get_stripe_gateway
from grannhjalp.services.auth_service import CurrentUser
from grannhjalp.services.errors import ServiceError
from grannhjalp.services.payment_orchestrator import (
    PaymentOrchestrator,
    commission_summary,
    list_commissions,
)
from grannhjalp.services.profile_service import get_profile

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])
admin_router = APIRouter(prefix="/api/admin/commissions", tags=["admin"])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    orchestrator = PaymentOrchestrator(db, gateway)
    try:
        result = await orchestrator.initiate_payment(
            body.need_id,
            body.help_offer_id,
            user.id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            customer_email=user.email,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return CheckoutResponse(
        url=result.checkout_url,
        session_id=result.session_id,
        commission_id=result.commission_id,
    )


@router.post("/connect", response_model=ConnectResponse)
async def create_connect_account(
    body: ConnectRequest | None = None,
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    body = body or ConnectRequest()
    orchestrator = PaymentOrchestrator(db, gateway)
    try:
        return await orchestrator.create_connect_account(
            user.id, user.email, refresh_url=body.refresh_url, return_url=body.return_url
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/connect/status", response_model=ConnectStatusResponse)
async def connect_status(
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    profile = await get_profile(db, user.id)
    if profile is None or not profile.stripe_account_id:
        return ConnectStatusResponse(account_id=None, onboarding_complete=False)

    orchestrator = PaymentOrchestrator(db, gateway)
    try:
        profile = await orchestrator.refresh_connect_status(user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    return ConnectStatusResponse(
        account_id=profile.stripe_account_id,
        onboarding_complete=profile.stripe_onboarding_complete,
    )


@router.get("/commissions", response_model=list[CommissionResponse])
async def my_commissions(
    user: CurrentUser = Depends(get_current_user_dep),
    db: AsyncSession = Depends(get_db),
):
    """Commissions where the caller is the requester or the helper."""
    return await list_commissions(db, user_id=user.id)


# ---------------------------------------------------------------------------
# Admin: platform earnings
# ---------------------------------------------------------------------------


@admin_router.get("", response_model=list[CommissionResponse])
async def admin_list_commissions(
    status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin: CurrentUser = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await list_commissions(db, status=status, limit=limit)


@admin_router.get("/summary", response_model=CommissionSummaryResponse)
async def admin_commission_summary(
    admin: CurrentUser = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await commission_summary(db)
