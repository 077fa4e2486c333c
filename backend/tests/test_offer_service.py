"""Tests for OfferService: submission, mutual approval and contact disclosure."""

import pytest
from sqlalchemy import select

from grannhjalp.domain.enums import NeedStatus, OfferState
from grannhjalp.domain.models import Notification
from grannhjalp.services.errors import Conflict, Forbidden, Invalid, NotFound
from grannhjalp.services.offer_service import OfferService, is_payment_eligible

S = OfferState


async def _notifications_for(db_session, user_id):
    result = await db_session.execute(
        select(Notification).where(Notification.user_id == user_id)
    )
    return result.scalars().all()


class TestSubmitOffer:
    async def test_submit_defaults_to_helper_approved(self, db_session, make_profile, make_need):
        requester = await make_profile()
        helper = await make_profile()
        need = await make_need(user_id=requester.user_id)

        offer = await OfferService(db_session).submit_offer(need.id, helper.user_id, "I can help")

        assert offer.state == S.HELPER_APPROVED.value
        assert offer.helper_approved and not offer.requester_approved
        notes = await _notifications_for(db_session, requester.user_id)
        assert [n.title for n in notes] == ["New offer of help"]

    async def test_submit_without_helper_approval(self, db_session, make_profile, make_need):
        helper = await make_profile()
        need = await make_need()
        offer = await OfferService(db_session).submit_offer(
            need.id, helper.user_id, helper_approved=False
        )
        assert offer.state == S.SUBMITTED.value

    async def test_missing_need(self, db_session, make_profile):
        helper = await make_profile()
        with pytest.raises(NotFound):
            await OfferService(db_session).submit_offer("nope", helper.user_id)

    async def test_owner_cannot_offer(self, db_session, make_profile, make_need):
        owner = await make_profile()
        need = await make_need(user_id=owner.user_id)
        with pytest.raises(Forbidden):
            await OfferService(db_session).submit_offer(need.id, owner.user_id)

    async def test_closed_need(self, db_session, make_profile, make_need):
        helper = await make_profile()
        need = await make_need(status=NeedStatus.CANCELLED.value)
        with pytest.raises(Conflict):
            await OfferService(db_session).submit_offer(need.id, helper.user_id)

    async def test_helper_needs_contact_details(self, db_session, make_profile, make_need):
        helper = await make_profile(phone=None)
        need = await make_need()
        with pytest.raises(Invalid):
            await OfferService(db_session).submit_offer(need.id, helper.user_id)

    async def test_duplicate_offer(self, db_session, make_profile, make_need):
        helper = await make_profile()
        need = await make_need()
        service = OfferService(db_session)
        await service.submit_offer(need.id, helper.user_id)
        with pytest.raises(Conflict):
            await service.submit_offer(need.id, helper.user_id)

    async def test_withdrawn_offer_still_blocks_resubmission(
        self, db_session, make_profile, make_need
    ):
        helper = await make_profile()
        need = await make_need()
        service = OfferService(db_session)
        offer = await service.submit_offer(need.id, helper.user_id)
        await service.withdraw_offer(offer.id, helper.user_id)
        with pytest.raises(Conflict):
            await service.submit_offer(need.id, helper.user_id)


class TestApproval:
    async def test_requester_approval_reaches_mutual(
        self, db_session, make_profile, make_need, make_offer
    ):
        requester = await make_profile()
        helper = await make_profile()
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need, helper_user_id=helper.user_id)

        offer = await OfferService(db_session).approve_offer(offer.id, requester.user_id)

        assert offer.state == S.MUTUALLY_APPROVED.value
        for user_id in (requester.user_id, helper.user_id):
            titles = [n.title for n in await _notifications_for(db_session, user_id)]
            assert "Offer approved" in titles

    async def test_both_orders_reach_mutual(self, db_session, make_profile, make_need, make_offer):
        requester = await make_profile()
        helper = await make_profile()
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need, helper_user_id=helper.user_id, state=S.SUBMITTED)
        service = OfferService(db_session)

        offer = await service.approve_offer(offer.id, requester.user_id)
        assert offer.state == S.REQUESTER_APPROVED.value
        offer = await service.approve_offer(offer.id, helper.user_id)
        assert offer.state == S.MUTUALLY_APPROVED.value

    async def test_reapproval_is_noop(self, db_session, make_profile, make_need, make_offer):
        requester = await make_profile()
        helper = await make_profile()
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need, helper_user_id=helper.user_id)
        service = OfferService(db_session)

        await service.approve_offer(offer.id, requester.user_id)
        before = len(await _notifications_for(db_session, helper.user_id))
        offer = await service.approve_offer(offer.id, requester.user_id)

        assert offer.state == S.MUTUALLY_APPROVED.value
        assert len(await _notifications_for(db_session, helper.user_id)) == before

    async def test_stranger_cannot_approve(self, db_session, make_profile, make_need, make_offer):
        need = await make_need()
        offer = await make_offer(need)
        with pytest.raises(Forbidden):
            await OfferService(db_session).approve_offer(offer.id, "someone-else")

    async def test_cannot_approve_on_closed_need(
        self, db_session, make_profile, make_need, make_offer
    ):
        requester = await make_profile()
        need = await make_need(user_id=requester.user_id, status=NeedStatus.COMPLETED.value)
        offer = await make_offer(need)
        with pytest.raises(Conflict):
            await OfferService(db_session).approve_offer(offer.id, requester.user_id)

    async def test_lost_race_is_reapplied(self, db_session, make_profile, make_need, make_offer):
        """A concurrent helper approval lands before ours; we still reach mutual."""
        requester = await make_profile()
        helper = await make_profile()
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need, helper_user_id=helper.user_id, state=S.SUBMITTED)
        service = OfferService(db_session)

        real_cas = service._compare_and_set_state
        raced = {"done": False}

        async def racing_cas(offer_id, expected, target):
            if not raced["done"]:
                raced["done"] = True
                await real_cas(offer_id, S.SUBMITTED, S.HELPER_APPROVED)
                await db_session.commit()
            return await real_cas(offer_id, expected, target)

        service._compare_and_set_state = racing_cas
        offer = await service.approve_offer(offer.id, requester.user_id)
        assert offer.state == S.MUTUALLY_APPROVED.value


class TestWithdraw:
    async def test_helper_withdraws(self, db_session, make_profile, make_need, make_offer):
        helper = await make_profile()
        need = await make_need()
        offer = await make_offer(need, helper_user_id=helper.user_id)
        offer = await OfferService(db_session).withdraw_offer(offer.id, helper.user_id)
        assert offer.state == S.WITHDRAWN.value

    async def test_requester_cannot_withdraw(self, db_session, make_profile, make_need, make_offer):
        requester = await make_profile()
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need)
        with pytest.raises(Forbidden):
            await OfferService(db_session).withdraw_offer(offer.id, requester.user_id)

    async def test_mutually_approved_cannot_be_withdrawn(
        self, db_session, make_profile, make_need, make_offer
    ):
        helper = await make_profile()
        need = await make_need()
        offer = await make_offer(need, helper_user_id=helper.user_id, state=S.MUTUALLY_APPROVED)
        with pytest.raises(Conflict):
            await OfferService(db_session).withdraw_offer(offer.id, helper.user_id)


class TestContactDisclosure:
    async def test_contact_hidden_until_mutual(
        self, db_session, make_profile, make_need, make_offer
    ):
        requester = await make_profile(phone="+46700000001")
        helper = await make_profile(phone="+46700000002")
        need = await make_need(user_id=requester.user_id)
        offer = await make_offer(need, helper_user_id=helper.user_id)
        service = OfferService(db_session)

        view = await service.describe_offer(need, offer, requester.user_id)
        assert view["contact"] is None
        assert view["allowed_actions"] == ["approve"]

        offer = await service.approve_offer(offer.id, requester.user_id)
        requester_view = await service.describe_offer(need, offer, requester.user_id)
        helper_view = await service.describe_offer(need, offer, helper.user_id)

        assert requester_view["contact"]["phone"] == "+46700000002"
        assert helper_view["contact"]["phone"] == "+46700000001"
        assert requester_view["payment_eligible"] is True

    async def test_non_owner_sees_only_own_offers(
        self, db_session, make_profile, make_need, make_offer
    ):
        requester = await make_profile()
        helper_a = await make_profile()
        helper_b = await make_profile()
        need = await make_need(user_id=requester.user_id)
        await make_offer(need, helper_user_id=helper_a.user_id)
        await make_offer(need, helper_user_id=helper_b.user_id)
        service = OfferService(db_session)

        assert len(await service.list_offers_for_need(need.id, requester.user_id)) == 2
        own = await service.list_offers_for_need(need.id, helper_a.user_id)
        assert [o["helper_user_id"] for o in own] == [helper_a.user_id]


class TestPaymentEligibility:
    async def test_requires_budget_and_mutual(self, db_session, make_need, make_offer):
        need = await make_need(budget_amount=None)
        offer = await make_offer(need, state=S.MUTUALLY_APPROVED)
        assert not is_payment_eligible(need, offer)

        funded = await make_need()
        pending = await make_offer(funded, state=S.HELPER_APPROVED)
        assert not is_payment_eligible(funded, pending)
