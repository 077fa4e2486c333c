"""Stripe webhook endpoint tests with real signature verification."""

import hashlib
import hmac
import json
import time
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.domain.enums import CommissionStatus, OfferState
from grannhjalp.domain.models import Commission, StripeEvent
from grannhjalp.infra.stripe_gateway import StripeGateway, Transfer
from grannhjalp.services.errors import UpstreamTimeout
from grannhjalp.services.payment_orchestrator import PaymentOrchestrator

WEBHOOK_SECRET = "whsec_webhook_test"


def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def settings(settings):
    return settings.model_copy(update={"stripe_webhook_secret": WEBHOOK_SECRET})


@pytest.fixture
def gateway(settings):
    """Real gateway (signature checks) with the transfer call mocked out."""
    gw = StripeGateway(settings)
    gw.create_transfer = AsyncMock(
        return_value=Transfer(id="tr_live_1", amount=18000, destination="acct_helper")
    )
    return gw


def _build_app_client(db_session: AsyncSession, gateway):
    """Build an HTTPX AsyncClient wired to a test FastAPI app.

    Uses a fresh FastAPI app with only the webhook router.
    """
    from fastapi import FastAPI
    from grannhjalp.app.routes.stripe_webhook import router as webhook_router
    from grannhjalp.infra.database import get_db
    from grannhjalp.infra.stripe_gateway import get_stripe_gateway

    test_app = FastAPI()
    test_app.include_router(webhook_router)

    async def _override_get_db():
        yield db_session

    test_app.dependency_overrides[get_db] = _override_get_db
    test_app.dependency_overrides[get_stripe_gateway] = lambda: gateway

    return AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://testserver",
    )


async def _post_event(client, event: dict, signature: str | None = None):
    payload = json.dumps(event)
    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": signature or _sign(payload),
    }
    return await client.post("/api/stripe/webhook", content=payload, headers=headers)


@pytest.fixture
async def pending_checkout(db_session, make_profile, make_need, make_offer, settings):
    """A pending commission whose checkout session ``cs_test_1`` is about to complete."""
    requester = await make_profile()
    helper = await make_profile(stripe_account_id="acct_helper", onboarded=True)
    need = await make_need(user_id=requester.user_id, budget_amount=Decimal("200.00"))
    offer = await make_offer(
        need, helper_user_id=helper.user_id, state=OfferState.MUTUALLY_APPROVED
    )
    commission = Commission(
        need_id=need.id,
        help_offer_id=offer.id,
        helper_user_id=helper.user_id,
        requester_user_id=requester.user_id,
        original_amount=Decimal("200.00"),
        commission_amount=Decimal("20.00"),
        helper_amount=Decimal("180.00"),
        commission_rate=Decimal("0.10"),
        currency="SEK",
        stripe_payment_intent_id="cs_test_1",
        status=CommissionStatus.PENDING.value,
    )
    db_session.add(commission)
    await db_session.commit()

    event = {
        "id": "evt_checkout_1",
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "payment_status": "paid",
                "metadata": {
                    "need_id": need.id,
                    "help_offer_id": offer.id,
                    "helper_user_id": helper.user_id,
                    "helper_amount": "180.00",
                    "commission_amount": "20.00",
                },
            }
        },
    }
    return commission, event


class TestSignature:
    async def test_bad_signature_rejected(self, db_session, gateway, pending_checkout):
        _, event = pending_checkout
        payload = json.dumps(event)
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, event, signature=_sign(payload, secret="whsec_wrong"))

        assert resp.status_code == 400
        gateway.create_transfer.assert_not_called()

    async def test_missing_signature_rejected(self, db_session, gateway):
        async with _build_app_client(db_session, gateway) as client:
            resp = await client.post("/api/stripe/webhook", content=b"{}")
        assert resp.status_code == 400

    async def test_tampered_payload_rejected(self, db_session, gateway, pending_checkout):
        _, event = pending_checkout
        signature = _sign(json.dumps(event))
        event["data"]["object"]["metadata"]["helper_amount"] = "200.00"
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, event, signature=signature)
        assert resp.status_code == 400

    async def test_unconfigured_secret(self, db_session, settings):
        unconfigured = StripeGateway(settings.model_copy(update={"stripe_webhook_secret": ""}))
        async with _build_app_client(db_session, unconfigured) as client:
            resp = await client.post(
                "/api/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
            )
        assert resp.status_code == 503

    async def test_oversized_body(self, db_session, gateway, settings):
        payload = b"x" * (settings.webhook_max_body_bytes + 1)
        async with _build_app_client(db_session, gateway) as client:
            resp = await client.post(
                "/api/stripe/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=x"}
            )
        assert resp.status_code == 413


class TestSettlement:
    async def test_completed_checkout_settles_once(self, db_session, gateway, pending_checkout):
        commission, event = pending_checkout

        async with _build_app_client(db_session, gateway) as client:
            first = await _post_event(client, event)
            second = await _post_event(client, event)

        assert first.status_code == 200
        assert first.json()["outcome"] == "processed"
        assert second.json()["outcome"] == "duplicate"
        gateway.create_transfer.assert_awaited_once()
        assert gateway.create_transfer.call_args.kwargs["amount_minor"] == 18000

        commission_id = commission.id
        db_session.expire_all()
        stored = (
            await db_session.execute(select(Commission).where(Commission.id == commission_id))
        ).scalar_one()
        assert stored.status == CommissionStatus.COMPLETED.value
        assert stored.stripe_transfer_id == "tr_live_1"

    async def test_redelivery_under_new_event_id_does_not_pay_twice(
        self, db_session, gateway, pending_checkout
    ):
        _, event = pending_checkout
        async with _build_app_client(db_session, gateway) as client:
            await _post_event(client, event)
            await _post_event(client, {**event, "id": "evt_checkout_2"})

        gateway.create_transfer.assert_awaited_once()
        events = (await db_session.execute(select(StripeEvent))).scalars().all()
        assert {e.stripe_event_id for e in events} == {"evt_checkout_1", "evt_checkout_2"}

    async def test_incomplete_metadata_acknowledged(self, db_session, gateway, pending_checkout):
        _, event = pending_checkout
        event["data"]["object"]["metadata"] = {}
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, event)

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "skipped"
        gateway.create_transfer.assert_not_called()

    async def test_account_updated(self, db_session, gateway, make_profile):
        profile = await make_profile(stripe_account_id="acct_77")
        event = {
            "id": "evt_acct_1",
            "object": "event",
            "type": "account.updated",
            "data": {
                "object": {
                    "id": "acct_77",
                    "object": "account",
                    "details_submitted": True,
                    "payouts_enabled": True,
                    "metadata": {"user_id": profile.user_id},
                }
            },
        }
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, event)

        assert resp.status_code == 200
        await db_session.refresh(profile)
        assert profile.stripe_onboarding_complete is True

    async def test_malformed_event_rejected(self, db_session, gateway):
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, {"object": "event", "data": {}})
        assert resp.status_code == 400

    async def test_unhandled_event_type_acknowledged(self, db_session, gateway):
        event = {"id": "evt_other", "object": "event", "type": "payout.paid", "data": {"object": {}}}
        async with _build_app_client(db_session, gateway) as client:
            resp = await _post_event(client, event)
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "ignored"

    async def test_upstream_failure_is_bad_gateway(self, db_session, gateway, make_profile):
        """Unrecorded, so Stripe's redelivery processes the event again."""
        await make_profile(stripe_account_id="acct_88")
        event = {
            "id": "evt_acct_2",
            "object": "event",
            "type": "account.updated",
            "data": {
                "object": {
                    "id": "acct_88",
                    "object": "account",
                    "details_submitted": True,
                    "payouts_enabled": True,
                }
            },
        }
        failing = AsyncMock(
            side_effect=UpstreamTimeout("Payment processor timed out during transfer")
        )
        with patch.object(PaymentOrchestrator, "settle_pending_for_helper", failing):
            async with _build_app_client(db_session, gateway) as client:
                resp = await _post_event(client, event)

        assert resp.status_code == 502
        assert "timed out" in resp.json()["detail"]
        assert (await db_session.execute(select(StripeEvent))).scalars().all() == []
