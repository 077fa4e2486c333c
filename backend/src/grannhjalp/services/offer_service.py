"""Offer service - submission, approval and withdrawal of help offers.

Every state change goes through the OfferStateMachine and is persisted with
a conditional UPDATE on the expected prior state. When a concurrent request
wins the race, the offer is re-read and the transition re-applied, so a
requester and a helper approving at the same moment both land on
``mutually_approved``.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from grannhjalp.domain.enums import NeedStatus, OfferAction, OfferActor, OfferState
from grannhjalp.domain.models import HelpOffer, Need
from grannhjalp.services.errors import Conflict, Forbidden, Invalid, NotFound
from grannhjalp.services.notification_service import NotificationService
from grannhjalp.services.offer_state_machine import OfferStateMachine, initial_state
from grannhjalp.services.profile_service import contact_details, get_profile

logger = logging.getLogger(__name__)

# Attempts at the conditional update before giving up on a contended offer
MAX_STATE_UPDATE_ATTEMPTS = 5


class OfferService:
    """Help offer lifecycle, scoped by the calling user's identity.

    Methods commit their own changes. Notifications are written in the same
    unit of work but can never undo it.
    """

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService(db)
        self.state_machine = OfferStateMachine()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _get_need(self, need_id: str) -> Need:
        result = await self.db.execute(select(Need).where(Need.id == need_id))
        need = result.scalar_one_or_none()
        if not need:
            raise NotFound(f"Need {need_id} not found")
        return need

    async def _get_offer(self, offer_id: str) -> HelpOffer:
        result = await self.db.execute(select(HelpOffer).where(HelpOffer.id == offer_id))
        offer = result.scalar_one_or_none()
        if not offer:
            raise NotFound(f"Help offer {offer_id} not found")
        return offer

    def _actor_for(self, need: Need, offer: HelpOffer, caller_id: str) -> OfferActor:
        if caller_id == need.user_id:
            return OfferActor.REQUESTER
        if caller_id == offer.helper_user_id:
            return OfferActor.HELPER
        raise Forbidden("Only the requester or the helper can act on this offer")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_offer(
        self,
        need_id: str,
        helper_id: str,
        message: Optional[str] = None,
        helper_approved: bool = True,
    ) -> HelpOffer:
        """Create an offer from *helper_id* on an open need.

        Raises:
            NotFound: need does not exist.
            Forbidden: the helper owns the need.
            Conflict: the need is not open, or the helper already offered.
            Invalid: the helper has no phone number or apartment on file.
        """
        need = await self._get_need(need_id)
        if need.user_id == helper_id:
            raise Forbidden("You cannot offer help on your own need")
        if need.status != NeedStatus.OPEN.value:
            raise Conflict(f"Need is {need.status} and no longer accepts offers")

        helper_profile = await get_profile(self.db, helper_id)
        if helper_profile is None or not helper_profile.has_contact_details:
            raise Invalid("Add a phone number and apartment number to your profile first")

        existing = await self.db.execute(
            select(HelpOffer.id).where(
                HelpOffer.need_id == need_id,
                HelpOffer.helper_user_id == helper_id,
            )
        )
        if existing.scalar_one_or_none():
            raise Conflict("You have already offered to help with this need")

        offer = HelpOffer(
            need_id=need_id,
            helper_user_id=helper_id,
            message=message,
            state=initial_state(helper_approved).value,
        )
        self.db.add(offer)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            raise Conflict("You have already offered to help with this need")

        await self.notifier.notify_offer_received(need, offer)
        await self.db.commit()
        await self.db.refresh(offer)

        logger.info(
            "Offer %s submitted on need %s by %s (state=%s)",
            offer.id, need_id, helper_id, offer.state,
        )
        return offer

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def approve_offer(self, offer_id: str, caller_id: str) -> HelpOffer:
        """Approve as requester (need owner) or helper, depending on the caller.

        Re-approving is a no-op. Reaching ``mutually_approved`` discloses
        contact details and notifies both parties.
        """
        offer = await self._get_offer(offer_id)
        need = await self._get_need(offer.need_id)
        actor = self._actor_for(need, offer, caller_id)
        return await self._transition(need, offer, OfferAction.APPROVE, actor, caller_id)

    async def withdraw_offer(self, offer_id: str, caller_id: str) -> HelpOffer:
        """Withdraw the caller's own offer while it is not mutually approved."""
        offer = await self._get_offer(offer_id)
        if offer.helper_user_id != caller_id:
            raise Forbidden("Only the helper can withdraw this offer")
        need = await self._get_need(offer.need_id)
        return await self._transition(
            need, offer, OfferAction.WITHDRAW, OfferActor.HELPER, caller_id
        )

    async def _transition(
        self,
        need: Need,
        offer: HelpOffer,
        action: OfferAction,
        actor: OfferActor,
        caller_id: str,
    ) -> HelpOffer:
        for _ in range(MAX_STATE_UPDATE_ATTEMPTS):
            current = OfferState(offer.state)
            target = self.state_machine.next_state(current, action, actor)
            if target == current:
                return offer

            if action == OfferAction.APPROVE and need.status != NeedStatus.OPEN.value:
                raise Conflict(f"Need is {need.status}; offers can no longer be approved")

            if await self._compare_and_set_state(offer.id, current, target):
                set_committed_value(offer, "state", target.value)
                await self._after_transition(need, offer, current, target)
                await self.db.commit()
                logger.info(
                    "Offer %s: %s -> %s (actor=%s, user=%s)",
                    offer.id, current.value, target.value, actor.value, caller_id,
                )
                return offer

            # Lost the race; start again from what is stored now
            await self.db.refresh(offer)

        raise Conflict("Offer is being updated concurrently, please retry")

    async def _compare_and_set_state(
        self, offer_id: str, expected: OfferState, target: OfferState
    ) -> bool:
        result = await self.db.execute(
            update(HelpOffer)
            .where(HelpOffer.id == offer_id, HelpOffer.state == expected.value)
            .values(state=target.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _after_transition(
        self, need: Need, offer: HelpOffer, previous: OfferState, target: OfferState
    ) -> None:
        if target == OfferState.MUTUALLY_APPROVED:
            await self.notifier.notify_mutually_approved(need, offer)
        elif target == OfferState.REQUESTER_APPROVED:
            await self.notifier.notify_requester_approved(need, offer)
        elif target == OfferState.HELPER_APPROVED and previous == OfferState.SUBMITTED:
            await self.notifier.notify_helper_approved(need, offer)

    # ------------------------------------------------------------------
    # Reads with contact disclosure
    # ------------------------------------------------------------------

    async def list_offers_for_need(self, need_id: str, caller_id: str) -> list[dict]:
        """Offers visible to the caller: all of them for the owner, else their own."""
        need = await self._get_need(need_id)
        query = select(HelpOffer).where(HelpOffer.need_id == need_id)
        if need.user_id != caller_id:
            query = query.where(HelpOffer.helper_user_id == caller_id)
        result = await self.db.execute(query.order_by(HelpOffer.created_at))
        offers = result.scalars().all()
        return [await self.describe_offer(need, offer, caller_id) for offer in offers]

    async def describe_offer(self, need: Need, offer: HelpOffer, caller_id: str) -> dict:
        """Serialize an offer for *caller_id*.

        The counterpart's contact details are included only once the offer is
        mutually approved.
        """
        actor = self._actor_for(need, offer, caller_id)
        contact = None
        if self.state_machine.contact_visible(offer.state):
            counterpart_id = offer.helper_user_id if actor == OfferActor.REQUESTER else need.user_id
            contact = contact_details(await get_profile(self.db, counterpart_id))

        return {
            "id": offer.id,
            "need_id": offer.need_id,
            "helper_user_id": offer.helper_user_id,
            "message": offer.message,
            "state": offer.state,
            "requester_approved": offer.requester_approved,
            "helper_approved": offer.helper_approved,
            "contact": contact,
            "payment_eligible": is_payment_eligible(need, offer),
            "allowed_actions": [
                a.value for a in self.state_machine.get_allowed_actions(offer.state, actor)
            ],
            "created_at": offer.created_at,
            "updated_at": offer.updated_at,
        }


def is_payment_eligible(need: Need, offer: HelpOffer) -> bool:
    """True when the requester may start checkout for this offer."""
    return (
        offer.mutually_approved
        and need.status == NeedStatus.OPEN.value
        and need.budget_amount is not None
        and Decimal(need.budget_amount) > 0
    )
