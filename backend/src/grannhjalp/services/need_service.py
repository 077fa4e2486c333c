"""Need service: owner-scoped need lifecycle and status projection."""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.domain.enums import CommissionStatus, NeedCategory, NeedStatus, OfferState
from grannhjalp.domain.models import Commission, HelpOffer, Need, Notification
from grannhjalp.services.errors import Conflict, Forbidden, Invalid, NotFound

logger = logging.getLogger(__name__)

# Stored statuses; the rest of NeedStatus is projected from offer states
STORED_STATUSES = {NeedStatus.OPEN, NeedStatus.CANCELLED, NeedStatus.COMPLETED}

EDITABLE_FIELDS = (
    "title",
    "description",
    "category",
    "budget_amount",
    "budget_currency",
    "location",
    "needed_by",
)


def project_status(need: Need, offer_states: Iterable[str]) -> NeedStatus:
    """Status shown to users, derived from the stored status and offer states.

    Approving an offer never writes to the need; the pending/in-progress
    statuses are computed here instead.
    """
    stored = NeedStatus(need.status)
    if stored != NeedStatus.OPEN:
        return stored

    states = {OfferState(s) for s in offer_states}
    if OfferState.MUTUALLY_APPROVED in states:
        return NeedStatus.IN_PROGRESS
    if OfferState.REQUESTER_APPROVED in states:
        return NeedStatus.PENDING_HELPER_CONTACT
    if OfferState.HELPER_APPROVED in states:
        return NeedStatus.PENDING_REQUESTER_CONTACT
    return NeedStatus.OPEN


class NeedService:
    """Create, read and mutate needs on behalf of their owner.

    Methods commit their own changes.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_need(self, need_id: str) -> Need:
        result = await self.db.execute(select(Need).where(Need.id == need_id))
        need = result.scalar_one_or_none()
        if not need:
            raise NotFound(f"Need {need_id} not found")
        return need

    async def get_owned_need(self, need_id: str, caller_id: str) -> Need:
        need = await self.get_need(need_id)
        if need.user_id != caller_id:
            raise Forbidden("Only the owner can change this need")
        return need

    async def offer_states(self, need_id: str) -> list[str]:
        result = await self.db.execute(
            select(HelpOffer.state).where(HelpOffer.need_id == need_id)
        )
        return list(result.scalars().all())

    async def display_status(self, need: Need) -> NeedStatus:
        return project_status(need, await self.offer_states(need.id))

    async def create_need(
        self,
        owner_id: str,
        title: str,
        description: str,
        category: str = NeedCategory.OTHER.value,
        budget_amount: Optional[Decimal] = None,
        budget_currency: str = "SEK",
        location: Optional[str] = None,
        needed_by: Optional[date] = None,
    ) -> Need:
        _validate_fields(category=category, budget_amount=budget_amount)
        need = Need(
            user_id=owner_id,
            title=title,
            description=description,
            category=NeedCategory(category).value,
            budget_amount=budget_amount,
            budget_currency=budget_currency.upper(),
            location=location,
            needed_by=needed_by,
            status=NeedStatus.OPEN.value,
        )
        self.db.add(need)
        await self.db.commit()
        await self.db.refresh(need)
        logger.info("Need %s created by %s", need.id, owner_id)
        return need

    async def list_needs_for_owner(self, owner_id: str) -> list[Need]:
        result = await self.db.execute(
            select(Need).where(Need.user_id == owner_id).order_by(Need.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_need(self, need_id: str, caller_id: str, changes: dict) -> Need:
        need = await self.get_owned_need(need_id, caller_id)
        if need.status != NeedStatus.OPEN.value:
            raise Conflict(f"Need is {need.status} and can no longer be edited")

        _validate_fields(
            category=changes.get("category", need.category),
            budget_amount=changes.get("budget_amount", need.budget_amount),
        )
        for field in EDITABLE_FIELDS:
            if field in changes:
                setattr(need, field, changes[field])
        need.budget_currency = need.budget_currency.upper()
        need.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(need)
        return need

    async def cancel_need(self, need_id: str, caller_id: str) -> Need:
        need = await self.get_owned_need(need_id, caller_id)
        if need.status == NeedStatus.CANCELLED.value:
            return need
        if need.status == NeedStatus.COMPLETED.value:
            raise Conflict("A completed need cannot be cancelled")
        paid = await self.db.execute(
            select(Commission.id)
            .where(
                Commission.need_id == need_id,
                Commission.status.in_(
                    [
                        CommissionStatus.TRANSFER_PENDING.value,
                        CommissionStatus.TRANSFERRING.value,
                        CommissionStatus.TRANSFER_FAILED.value,
                    ]
                ),
            )
            .limit(1)
        )
        if paid.scalar_one_or_none() is not None:
            raise Conflict("Payment for this need has already been received")

        need.status = NeedStatus.CANCELLED.value
        need.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        logger.info("Need %s cancelled by owner", need_id)
        return need

    async def delete_need(self, need_id: str, caller_id: str) -> None:
        """Delete a need and its offers.

        Commissions and notifications outlive the need with their references
        cleared.
        """
        need = await self.get_owned_need(need_id, caller_id)
        offer_ids = select(HelpOffer.id).where(HelpOffer.need_id == need_id)

        await self.db.execute(
            update(Commission)
            .where(Commission.help_offer_id.in_(offer_ids))
            .values(help_offer_id=None)
        )
        await self.db.execute(
            update(Notification)
            .where(Notification.related_offer_id.in_(offer_ids))
            .values(related_offer_id=None)
        )
        await self.db.execute(
            update(Commission).where(Commission.need_id == need_id).values(need_id=None)
        )
        await self.db.execute(
            update(Notification)
            .where(Notification.related_need_id == need_id)
            .values(related_need_id=None)
        )
        await self.db.delete(need)
        await self.db.commit()
        logger.info("Need %s deleted by owner", need_id)


def _validate_fields(category, budget_amount) -> None:
    try:
        NeedCategory(category)
    except ValueError:
        raise Invalid(f"Unknown category: {category}")
    if budget_amount is not None and Decimal(budget_amount) < 0:
        raise Invalid("budget_amount must not be negative")
