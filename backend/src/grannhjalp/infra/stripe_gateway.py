"""Stripe gateway: Checkout, Connect and Transfers behind one async boundary.

Every call is bounded twice: the SDK's httpx client carries the configured
timeout, and ``asyncio.wait_for`` caps the whole call including retries.
SDK errors surface as ``UpstreamError`` so callers never deal with Stripe
exception types. Timeouts, dropped connections and 5xx responses raise
``UpstreamTimeout`` because the request may still have been applied.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from grannhjalp.app.config import Settings, get_settings
from grannhjalp.services.errors import UpstreamError, UpstreamTimeout

logger = logging.getLogger(__name__)

# Stripe answered and refused; the request had no effect
DEFINITE_ERRORS = (
    stripe.InvalidRequestError,
    stripe.CardError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.RateLimitError,
)


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


@dataclass(frozen=True)
class Transfer:
    id: str
    amount: int
    destination: str


@dataclass(frozen=True)
class ConnectedAccount:
    id: str
    details_submitted: bool
    payouts_enabled: bool
    user_id: Optional[str] = None


class StripeGateway:
    """Async wrapper over the ``stripe`` SDK."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._timeout = self.settings.stripe_timeout_seconds
        stripe.max_network_retries = self.settings.stripe_max_network_retries
        stripe.default_http_client = stripe.HTTPXClient(timeout=self._timeout)

    @property
    def _configured(self) -> bool:
        return self.settings.stripe_configured

    async def _call(self, operation: str, coro):
        if not self._configured:
            coro.close()
            logger.warning("Stripe not configured, %s not attempted", operation)
            raise UpstreamError("Payment processor is not configured")
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("Stripe %s timed out after %.1fs", operation, self._timeout)
            raise UpstreamTimeout(f"Payment processor timed out during {operation}")
        except DEFINITE_ERRORS as e:
            logger.warning("Stripe %s failed: %s", operation, e)
            detail = e.user_message or str(e)
            raise UpstreamError(f"Payment processor rejected {operation}: {detail}")
        except stripe.StripeError as e:
            # Connection drops and 5xx responses do not say whether Stripe acted
            logger.warning("Stripe %s failed with unknown outcome: %s", operation, e)
            raise UpstreamTimeout(f"Payment processor did not confirm {operation}: {e}")

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout_session(
        self,
        *,
        amount_minor: int,
        currency: str,
        product_name: str,
        description: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": product_name, "description": description},
                        "unit_amount": amount_minor,
                    },
                    "quantity": 1,
                }
            ],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email

        session = await self._call(
            "checkout session creation",
            stripe.checkout.Session.create_async(
                api_key=self.settings.stripe_secret_key, **params
            ),
        )
        logger.info("Stripe checkout session %s created", session.id)
        return CheckoutSession(id=session.id, url=session.url)

    async def expire_checkout_session(self, session_id: str) -> None:
        await self._call(
            "checkout session expiry",
            stripe.checkout.Session.expire_async(
                session_id, api_key=self.settings.stripe_secret_key
            ),
        )
        logger.info("Stripe checkout session %s expired", session_id)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def create_transfer(
        self,
        *,
        amount_minor: int,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> Transfer:
        transfer = await self._call(
            "transfer",
            stripe.Transfer.create_async(
                api_key=self.settings.stripe_secret_key,
                idempotency_key=idempotency_key,
                amount=amount_minor,
                currency=currency.lower(),
                destination=destination,
                metadata=metadata,
            ),
        )
        logger.info(
            "Stripe transfer %s of %d %s to %s", transfer.id, amount_minor, currency, destination
        )
        return Transfer(id=transfer.id, amount=amount_minor, destination=destination)

    # ------------------------------------------------------------------
    # Connect accounts
    # ------------------------------------------------------------------

    async def create_connected_account(
        self,
        *,
        email: Optional[str],
        user_id: str,
        full_name: str = "",
    ) -> str:
        first_name, _, last_name = full_name.strip().partition(" ")
        params = {}
        individual = {}
        if email:
            params["email"] = email
            individual["email"] = email
        if first_name:
            individual["first_name"] = first_name
        if last_name:
            individual["last_name"] = last_name

        account = await self._call(
            "connected account creation",
            stripe.Account.create_async(
                api_key=self.settings.stripe_secret_key,
                type="express",
                country=self.settings.stripe_connect_country,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                business_type="individual",
                individual=individual,
                metadata={"user_id": user_id},
                **params,
            ),
        )
        logger.info("Stripe connected account %s created for user %s", account.id, user_id)
        return account.id

    async def create_account_onboarding_link(
        self, account_id: str, refresh_url: str, return_url: str
    ) -> str:
        link = await self._call(
            "onboarding link creation",
            stripe.AccountLink.create_async(
                api_key=self.settings.stripe_secret_key,
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            ),
        )
        return link.url

    async def retrieve_account(self, account_id: str) -> ConnectedAccount:
        account = await self._call(
            "account retrieval",
            stripe.Account.retrieve_async(account_id, api_key=self.settings.stripe_secret_key),
        )
        return account_from_payload(account)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify the signature over the raw payload and parse the event.

        Raises ``stripe.SignatureVerificationError`` on a bad signature and
        ``ValueError`` on a payload that is not JSON.
        """
        return stripe.Webhook.construct_event(
            payload, sig_header, self.settings.stripe_webhook_secret
        )


def _field(obj, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def account_from_payload(account) -> ConnectedAccount:
    """Build a ConnectedAccount from a Stripe account object or a webhook dict."""
    metadata = _field(account, "metadata") or {}
    return ConnectedAccount(
        id=_field(account, "id"),
        details_submitted=bool(_field(account, "details_submitted")),
        payouts_enabled=bool(_field(account, "payouts_enabled")),
        user_id=_field(metadata, "user_id"),
    )


_gateway: StripeGateway | None = None


def get_stripe_gateway() -> StripeGateway:
    """FastAPI dependency: shared gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
