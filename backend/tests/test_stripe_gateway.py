"""StripeGateway error mapping: every SDK failure and timeout becomes an UpstreamError."""

import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import select

from grannhjalp.domain.enums import OfferState
from grannhjalp.domain.models import Commission
from grannhjalp.infra.stripe_gateway import StripeGateway
from grannhjalp.services.errors import UpstreamError, UpstreamTimeout
from grannhjalp.services.payment_orchestrator import PaymentOrchestrator


@pytest.fixture
def settings(settings):
    return settings.model_copy(update={"stripe_timeout_seconds": 0.05})


@pytest.fixture
def gateway(settings):
    return StripeGateway(settings)


async def _hang(*args, **kwargs):
    await asyncio.sleep(5)


def _raising(error):
    async def _call(*args, **kwargs):
        raise error

    return _call


async def _checkout(gateway):
    return await gateway.create_checkout_session(
        amount_minor=20000,
        currency="SEK",
        product_name="Help: Carry a sofa",
        description="Help from a neighbor",
        success_url="http://app.test/ok",
        cancel_url="http://app.test/cancel",
        metadata={"need_id": "n1"},
    )


async def _transfer(gateway):
    return await gateway.create_transfer(
        amount_minor=18000,
        currency="SEK",
        destination="acct_helper",
        metadata={"commission_id": "c1"},
        idempotency_key="commission-c1-transfer-0",
    )


class TestCallMapping:
    async def test_hanging_call_times_out(self, gateway):
        with patch.object(stripe.checkout.Session, "create_async", new=_hang):
            with pytest.raises(UpstreamTimeout, match="timed out"):
                await _checkout(gateway)

    async def test_rejection_is_definite(self, gateway):
        error = stripe.InvalidRequestError("No such destination: acct_helper", "destination")
        with patch.object(stripe.Transfer, "create_async", new=_raising(error)):
            with pytest.raises(UpstreamError) as excinfo:
                await _transfer(gateway)
        assert not isinstance(excinfo.value, UpstreamTimeout)
        assert excinfo.value.status_code == 502
        assert "No such destination" in excinfo.value.message

    @pytest.mark.parametrize(
        "error",
        [
            stripe.APIConnectionError("Connection reset by peer"),
            stripe.APIError("Internal server error", http_status=500),
            stripe.StripeError("boom"),
        ],
    )
    async def test_unconfirmed_outcome(self, gateway, error):
        with patch.object(stripe.Transfer, "create_async", new=_raising(error)):
            with pytest.raises(UpstreamTimeout):
                await _transfer(gateway)

    async def test_unconfigured_gateway_makes_no_call(self, settings):
        gateway = StripeGateway(settings.model_copy(update={"stripe_secret_key": ""}))
        with patch.object(stripe.checkout.Session, "create_async", new=_hang):
            with pytest.raises(UpstreamError, match="not configured"):
                await _checkout(gateway)


class TestCheckoutLeavesNoTrace:
    @pytest.fixture
    async def agreed(self, make_profile, make_need, make_offer):
        requester = await make_profile()
        helper = await make_profile(stripe_account_id="acct_helper", onboarded=True)
        need = await make_need(user_id=requester.user_id, budget_amount=Decimal("200.00"))
        offer = await make_offer(
            need, helper_user_id=helper.user_id, state=OfferState.MUTUALLY_APPROVED
        )
        return requester, need, offer

    @pytest.mark.parametrize(
        "fake_create", [_hang, _raising(stripe.StripeError("boom"))], ids=["timeout", "error"]
    )
    async def test_no_commission_written(self, db_session, gateway, settings, agreed, fake_create):
        requester, need, offer = agreed
        orchestrator = PaymentOrchestrator(db_session, gateway, settings=settings)

        with patch.object(stripe.checkout.Session, "create_async", new=fake_create):
            with pytest.raises(UpstreamError):
                await orchestrator.initiate_payment(need.id, offer.id, requester.user_id)

        assert (await db_session.execute(select(Commission))).scalars().all() == []
