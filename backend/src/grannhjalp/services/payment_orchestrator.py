"""Payment Orchestrator - checkout, Connect onboarding and settlement.

This is NOT a thin Stripe client. It owns the settlement rules:

- A checkout is only started for a mutually approved offer on an open need,
  and the Commission row is written only after Stripe created the session.
- Settlement is driven by Stripe webhooks, which may arrive late, twice or
  concurrently. Commission.status changes go through compare-and-set, and a
  commission must be claimed (``transferring``) before any money moves, so at
  most one transfer is ever created per commission. The transfer itself
  carries an idempotency key derived from the commission, which also makes
  recovery of a crashed in-flight transfer safe.
- Helpers without a finished payout account leave the commission in
  ``transfer_pending`` until their ``account.updated`` event arrives.
- A need is settled at most once. A payment that arrives for a need that is
  cancelled, or already settled by another checkout, is parked in
  ``refund_required`` and never transferred.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.app.config import Settings, get_settings
from grannhjalp.domain.enums import CommissionStatus, NeedStatus, StripeEventType
from grannhjalp.domain.models import Commission, HelpOffer, Need, Profile, StripeEvent
from grannhjalp.infra.stripe_gateway import StripeGateway
from grannhjalp.services.commission_calculator import split, to_minor_units
from grannhjalp.services.errors import (
    Conflict,
    Forbidden,
    Invalid,
    NotFound,
    UpstreamError,
    UpstreamTimeout,
)
from grannhjalp.services.notification_service import NotificationService
from grannhjalp.services.profile_service import (
    get_or_create_profile,
    get_profile,
    get_profile_by_account,
)

logger = logging.getLogger(__name__)

C = CommissionStatus

# Metadata a checkout session must carry to be settled
REQUIRED_SESSION_METADATA = ("need_id", "help_offer_id", "helper_user_id", "helper_amount")

# Statuses from which a transfer may be claimed
CLAIMABLE_STATUSES = {C.PENDING, C.TRANSFER_PENDING, C.TRANSFER_FAILED}

# Statuses that mean the requester's money has been captured
PAID_STATUSES = {C.TRANSFER_PENDING, C.TRANSFERRING, C.TRANSFER_FAILED, C.COMPLETED}

# A need in one of these may not be settled by any other commission
SETTLING_STATUSES = {C.TRANSFERRING, C.COMPLETED}

# Statuses from which a paid commission can be set aside for a refund
REFUNDABLE_STATUSES = {C.PENDING, C.TRANSFER_PENDING, C.TRANSFER_FAILED, C.EXPIRED}


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    session_id: str
    commission_id: str


def transfer_idempotency_key(commission: Commission) -> str:
    """Stable per attempt: a crashed attempt is replayed with the same key."""
    return f"commission-{commission.id}-transfer-{commission.transfer_attempts or 0}"


class PaymentOrchestrator:
    """Initiates payments and reconciles Stripe events into the ledger.

    Methods commit their own changes. Every Stripe call happens before the
    local write that depends on it.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: StripeGateway,
        notifier: Optional[NotificationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationService(db)
        self.settings = settings or get_settings()

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

    async def _get_commission_by_session(self, session_id: str) -> Optional[Commission]:
        result = await self.db.execute(
            select(Commission).where(Commission.stripe_payment_intent_id == session_id)
        )
        return result.scalar_one_or_none()

    async def _paid_commission_for_need(self, need_id: str) -> Optional[Commission]:
        result = await self.db.execute(
            select(Commission)
            .where(
                Commission.need_id == need_id,
                Commission.status.in_([s.value for s in PAID_STATUSES]),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        need_id: str,
        help_offer_id: str,
        caller_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutResult:
        """Start a Stripe Checkout for a mutually approved offer.

        Steps:
            1. Validate need, offer, caller and approval state
            2. Split the budget with the configured commission rate
            3. Create the Checkout Session (ids and split as metadata)
            4. Persist a pending Commission keyed to the session id

        Raises:
            NotFound: need or offer missing, or the offer is on another need.
            Forbidden: caller is not the requester, or the offer is not
                mutually approved.
            Conflict: the need is completed, cancelled or already paid.
            Invalid: the need has no positive budget.
            UpstreamError: Stripe failed; nothing was written.
        """
        need = await self._get_need(need_id)
        offer = await self._get_offer(help_offer_id)
        if offer.need_id != need.id:
            raise NotFound(f"Help offer {help_offer_id} does not belong to need {need_id}")
        if caller_id != need.user_id:
            raise Forbidden("Only the requester can pay for this need")
        if not (offer.requester_approved and offer.helper_approved):
            raise Forbidden("Both parties must approve the offer before payment")
        if need.status == NeedStatus.COMPLETED.value:
            raise Conflict("This need has already been paid and completed")
        if need.status == NeedStatus.CANCELLED.value:
            raise Conflict("This need has been cancelled")
        if await self._paid_commission_for_need(need.id):
            raise Conflict("Payment for this need has already been received")
        if need.budget_amount is None or Decimal(need.budget_amount) <= 0:
            raise Invalid("This need has no budget to pay")

        currency = (need.budget_currency or self.settings.default_currency).upper()
        commission_split = split(need.budget_amount, self.settings.commission_rate, currency)
        fee_pct = (commission_split.commission_rate * 100).normalize()

        metadata = {
            "need_id": need.id,
            "help_offer_id": offer.id,
            "original_amount": str(commission_split.original_amount),
            "commission_amount": str(commission_split.commission_amount),
            "helper_amount": str(commission_split.helper_amount),
            "commission_rate": str(commission_split.commission_rate),
            "currency": currency,
            "helper_user_id": offer.helper_user_id,
            "requester_user_id": need.user_id,
        }
        base_url = f"{self.settings.frontend_url.rstrip('/')}/needs/{need.id}"

        session = await self.gateway.create_checkout_session(
            amount_minor=to_minor_units(commission_split.original_amount, currency),
            currency=currency,
            product_name=f"Help: {need.title}",
            description=f"Help from a neighbor (incl. {fee_pct:f}% service fee)",
            success_url=success_url or f"{base_url}?payment=success",
            cancel_url=cancel_url or f"{base_url}?payment=cancelled",
            metadata=metadata,
            customer_email=customer_email,
        )

        commission = Commission(
            need_id=need.id,
            help_offer_id=offer.id,
            helper_user_id=offer.helper_user_id,
            requester_user_id=need.user_id,
            original_amount=commission_split.original_amount,
            commission_amount=commission_split.commission_amount,
            helper_amount=commission_split.helper_amount,
            commission_rate=commission_split.commission_rate,
            currency=currency,
            stripe_payment_intent_id=session.id,
            status=C.PENDING.value,
            transfer_attempts=0,
        )
        self.db.add(commission)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            logger.error(
                "Commission for session %s not stored, expiring the session", session.id
            )
            try:
                await self.gateway.expire_checkout_session(session.id)
            except UpstreamError:
                logger.error("Checkout session %s could not be expired", session.id)
            raise

        await self._expire_superseded_checkouts(need.id, commission.id)

        logger.info(
            "Checkout %s started for need %s / offer %s: %s %s (commission %s, helper %s)",
            session.id,
            need.id,
            offer.id,
            commission_split.original_amount,
            currency,
            commission_split.commission_amount,
            commission_split.helper_amount,
        )
        return CheckoutResult(
            checkout_url=session.url, session_id=session.id, commission_id=commission.id
        )

    async def _expire_superseded_checkouts(self, need_id: str, current_id: str) -> None:
        """Close earlier unpaid checkouts for the need so only the newest can be paid.

        Best effort: a session Stripe refuses to expire stays ``pending``, and
        settlement parks its payment if it completes anyway.
        """
        result = await self.db.execute(
            select(Commission).where(
                Commission.need_id == need_id,
                Commission.id != current_id,
                Commission.status == C.PENDING.value,
                Commission.stripe_payment_intent_id.is_not(None),
            )
        )
        for earlier in result.scalars().all():
            try:
                await self.gateway.expire_checkout_session(earlier.stripe_payment_intent_id)
            except UpstreamError as e:
                logger.warning(
                    "Superseded checkout %s for need %s not expired: %s",
                    earlier.stripe_payment_intent_id,
                    need_id,
                    e.message,
                )
                continue
            if await self._compare_and_set_status(earlier.id, {C.PENDING}, C.EXPIRED):
                logger.info(
                    "Checkout %s for need %s superseded and expired",
                    earlier.stripe_payment_intent_id,
                    need_id,
                )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Reconciliation: checkout.session.completed
    # ------------------------------------------------------------------

    async def reconcile_payment_completed(
        self,
        session_id: Optional[str],
        metadata: Optional[dict],
        payment_status: Optional[str] = "paid",
    ) -> Optional[Commission]:
        """Settle the commission behind a completed checkout session.

        Safe to call any number of times for the same session: once the
        commission is completed this is a no-op, and a concurrent call loses
        the claim instead of creating a second transfer.

        Raises:
            Invalid: the session lacks the metadata this workflow writes.
        """
        metadata = metadata or {}
        missing = [key for key in REQUIRED_SESSION_METADATA if not metadata.get(key)]
        if not session_id or missing:
            raise Invalid(
                f"Checkout session {session_id} is missing metadata: {', '.join(missing) or 'id'}"
            )

        if payment_status != "paid":
            logger.info("Session %s completed with payment_status=%s, not settling", session_id, payment_status)
            return None

        commission = await self._get_commission_by_session(session_id)
        if commission is None:
            logger.warning("No commission recorded for checkout session %s", session_id)
            return None

        if commission.status in (C.COMPLETED.value, C.REFUND_REQUIRED.value):
            logger.info("Commission %s already %s, skipping", commission.id, commission.status)
            return commission

        # The ledger is authoritative; metadata is only used to find the row
        if metadata["helper_user_id"] != commission.helper_user_id:
            logger.warning(
                "Session %s metadata names helper %s but commission %s belongs to %s",
                session_id,
                metadata["helper_user_id"],
                commission.id,
                commission.helper_user_id,
            )

        return await self._settle(commission)

    async def _compare_and_set_status(
        self,
        commission_id: str,
        expected: Iterable[CommissionStatus],
        target: CommissionStatus,
        extra_condition=None,
        guard=None,
        **values,
    ) -> bool:
        condition = Commission.status.in_([s.value for s in expected])
        if extra_condition is not None:
            condition = or_(condition, extra_condition)
        if guard is not None:
            condition = and_(condition, guard)
        result = await self.db.execute(
            update(Commission)
            .where(Commission.id == commission_id, condition)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _settlement_guard(self, commission: Commission):
        """Row condition: the need is open and no other commission is settling it."""
        if commission.need_id is None:
            return None
        other = Commission.__table__.alias("other")
        return and_(
            exists().where(
                Need.id == commission.need_id,
                Need.status == NeedStatus.OPEN.value,
            ),
            ~exists().where(
                other.c.need_id == commission.need_id,
                other.c.id != commission.id,
                other.c.status.in_([s.value for s in SETTLING_STATUSES]),
            ),
        )

    async def _settlement_conflict(self, commission: Commission) -> Optional[str]:
        """Why this commission must not pay out, or None if it may."""
        if commission.status == C.EXPIRED.value:
            return "paid after the checkout was superseded"
        if commission.need_id is None:
            return None
        need_status = (
            await self.db.execute(select(Need.status).where(Need.id == commission.need_id))
        ).scalar_one_or_none()
        if need_status == NeedStatus.CANCELLED.value:
            return "need was cancelled before the payment settled"
        if need_status == NeedStatus.COMPLETED.value:
            return "need was already settled by another payment"
        settling = await self.db.execute(
            select(Commission.id)
            .where(
                Commission.need_id == commission.need_id,
                Commission.id != commission.id,
                Commission.status.in_([s.value for s in SETTLING_STATUSES]),
            )
            .limit(1)
        )
        if settling.scalar_one_or_none() is not None:
            return "need was already settled by another payment"
        return None

    async def _park_for_refund(self, commission: Commission, reason: str) -> Commission:
        parked = await self._compare_and_set_status(
            commission.id, REFUNDABLE_STATUSES, C.REFUND_REQUIRED, last_error=reason[:500]
        )
        if parked:
            await self.db.refresh(commission)
            await self.notifier.notify_refund_required(commission)
        await self.db.commit()
        await self.db.refresh(commission)
        if parked:
            logger.error(
                "Commission %s (session %s, need %s): %s. %s %s must be refunded to %s",
                commission.id,
                commission.stripe_payment_intent_id,
                commission.need_id,
                reason,
                commission.original_amount,
                commission.currency,
                commission.requester_user_id,
            )
        return commission

    async def _settle(self, commission: Commission, recover_stale: bool = False) -> Commission:
        """Transfer the helper's share, or park the commission until they can receive it."""
        # A claim already held may have moved money; only its own key may finish it
        if commission.status != C.TRANSFERRING.value:
            conflict = await self._settlement_conflict(commission)
            if conflict:
                return await self._park_for_refund(commission, conflict)

        profile = await get_profile(self.db, commission.helper_user_id)
        if profile is None or not profile.can_receive_transfers:
            if await self._compare_and_set_status(commission.id, {C.PENDING}, C.TRANSFER_PENDING):
                await self.db.refresh(commission)
                await self.notifier.notify_transfer_pending(commission)
                logger.info(
                    "Commission %s: helper %s has no payout account yet, transfer pending",
                    commission.id,
                    commission.helper_user_id,
                )
            await self.db.commit()
            await self.db.refresh(commission)
            return commission

        stale_condition = None
        if recover_stale:
            cutoff = datetime.now(timezone.utc) - timedelta(
                minutes=self.settings.transfer_stale_after_minutes
            )
            stale_condition = and_(
                Commission.status == C.TRANSFERRING.value,
                Commission.updated_at < cutoff,
            )

        claimed = await self._compare_and_set_status(
            commission.id,
            CLAIMABLE_STATUSES,
            C.TRANSFERRING,
            extra_condition=stale_condition,
            guard=self._settlement_guard(commission),
            updated_at=datetime.now(timezone.utc),
        )
        await self.db.commit()
        await self.db.refresh(commission)
        if not claimed:
            if C(commission.status) in CLAIMABLE_STATUSES:
                conflict = await self._settlement_conflict(commission)
                if conflict:
                    return await self._park_for_refund(commission, conflict)
            logger.info(
                "Commission %s not claimable (status=%s), skipping transfer",
                commission.id,
                commission.status,
            )
            return commission

        try:
            transfer = await self.gateway.create_transfer(
                amount_minor=to_minor_units(commission.helper_amount, commission.currency),
                currency=commission.currency,
                destination=profile.stripe_account_id,
                metadata={
                    "commission_id": commission.id,
                    "need_id": commission.need_id or "",
                    "help_offer_id": commission.help_offer_id or "",
                    "helper_user_id": commission.helper_user_id,
                },
                idempotency_key=transfer_idempotency_key(commission),
            )
        except UpstreamTimeout as e:
            return await self._record_transfer_failure(commission, e.message, definite=False)
        except UpstreamError as e:
            return await self._record_transfer_failure(commission, e.message)

        now = datetime.now(timezone.utc)
        await self.db.execute(
            update(Commission)
            .where(Commission.id == commission.id, Commission.status == C.TRANSFERRING.value)
            .values(
                status=C.COMPLETED.value,
                stripe_transfer_id=transfer.id,
                completed_at=now,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        if commission.need_id:
            await self.db.execute(
                update(Need)
                .where(Need.id == commission.need_id, Need.status == NeedStatus.OPEN.value)
                .values(status=NeedStatus.COMPLETED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        await self.db.refresh(commission)
        await self.notifier.notify_payment_completed(commission)
        await self.db.commit()

        logger.info(
            "Commission %s completed: transfer %s of %s %s to helper %s",
            commission.id,
            transfer.id,
            commission.helper_amount,
            commission.currency,
            commission.helper_user_id,
        )
        return commission

    async def _record_transfer_failure(
        self, commission: Commission, message: str, definite: bool = True
    ) -> Commission:
        """Release the claim after a failed transfer.

        Only a definite rejection counts as an attempt and so moves the retry
        to a new idempotency key. When the outcome is unknown the transfer may
        exist, and the retry must replay the same key for Stripe to return it.
        """
        values = {"status": C.TRANSFER_FAILED.value, "last_error": message[:500]}
        if definite:
            values["transfer_attempts"] = Commission.transfer_attempts + 1
        await self.db.execute(
            update(Commission)
            .where(Commission.id == commission.id, Commission.status == C.TRANSFERRING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(commission)

        if not definite:
            logger.warning(
                "Commission %s: transfer outcome unknown, will retry with key %s: %s",
                commission.id,
                transfer_idempotency_key(commission),
                message,
            )
        elif commission.transfer_attempts >= self.settings.transfer_max_attempts:
            logger.error(
                "Commission %s: transfer failed %d times, giving up: %s",
                commission.id,
                commission.transfer_attempts,
                message,
            )
        else:
            logger.warning(
                "Commission %s: transfer attempt %d failed, will retry: %s",
                commission.id,
                commission.transfer_attempts,
                message,
            )
        return commission

    # ------------------------------------------------------------------
    # Reconciliation: account.updated
    # ------------------------------------------------------------------

    async def reconcile_account_updated(
        self,
        account_id: Optional[str],
        details_submitted: Optional[bool],
        payouts_enabled: Optional[bool],
        user_id: Optional[str] = None,
    ) -> Optional[Profile]:
        """Overwrite the onboarding flag from Stripe's current account state.

        Level-triggered: applying an older event after a newer one simply
        writes that event's state, and the next event corrects it. Once
        onboarding is complete, parked transfers for the helper are retried.
        """
        if not account_id:
            raise Invalid("account.updated event without an account id")

        profile = await get_profile_by_account(self.db, account_id)
        if profile is None and user_id:
            profile = await get_profile(self.db, user_id)
            if profile is not None and profile.stripe_account_id not in (None, account_id):
                logger.warning(
                    "Account %s claims user %s, who is linked to %s; ignoring",
                    account_id,
                    user_id,
                    profile.stripe_account_id,
                )
                return None
        if profile is None:
            logger.warning("account.updated for unknown account %s", account_id)
            return None

        complete = bool(details_submitted) and bool(payouts_enabled)
        profile.stripe_account_id = account_id
        profile.stripe_onboarding_complete = complete
        await self.db.commit()
        logger.info(
            "Account %s (user %s): details_submitted=%s payouts_enabled=%s -> onboarding_complete=%s",
            account_id,
            profile.user_id,
            details_submitted,
            payouts_enabled,
            complete,
        )

        if complete:
            await self.settle_pending_for_helper(profile.user_id)
        return profile

    async def settle_pending_for_helper(self, helper_user_id: str) -> int:
        """Retry parked and retryable failed transfers for one helper.

        Returns the number of commissions that reached ``completed``.
        """
        result = await self.db.execute(
            select(Commission).where(
                Commission.helper_user_id == helper_user_id,
                or_(
                    Commission.status == C.TRANSFER_PENDING.value,
                    and_(
                        Commission.status == C.TRANSFER_FAILED.value,
                        Commission.transfer_attempts < self.settings.transfer_max_attempts,
                    ),
                ),
            )
        )
        completed = 0
        for commission in result.scalars().all():
            settled = await self._settle(commission)
            if settled.status == C.COMPLETED.value:
                completed += 1
        if completed:
            logger.info("Settled %d parked commissions for helper %s", completed, helper_user_id)
        return completed

    async def retry_failed_transfers(self) -> int:
        """Sweep for failed transfers under the attempt limit and stuck claims."""
        cutoff = datetime.now(timezone.utc) - timedelta(
            minutes=self.settings.transfer_stale_after_minutes
        )
        result = await self.db.execute(
            select(Commission).where(
                or_(
                    and_(
                        Commission.status == C.TRANSFER_FAILED.value,
                        Commission.transfer_attempts < self.settings.transfer_max_attempts,
                    ),
                    and_(
                        Commission.status == C.TRANSFERRING.value,
                        Commission.updated_at < cutoff,
                    ),
                )
            )
        )
        completed = 0
        for commission in result.scalars().all():
            settled = await self._settle(commission, recover_stale=True)
            if settled.status == C.COMPLETED.value:
                completed += 1
        return completed

    # ------------------------------------------------------------------
    # Connect onboarding
    # ------------------------------------------------------------------

    async def create_connect_account(
        self,
        caller_id: str,
        email: Optional[str],
        refresh_url: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> dict:
        """Create (or resume) the caller's Express account onboarding."""
        profile_url = f"{self.settings.frontend_url.rstrip('/')}/profile"
        refresh_url = refresh_url or f"{profile_url}?connect=refresh"
        return_url = return_url or f"{profile_url}?connect=success"

        profile = await get_or_create_profile(self.db, caller_id)
        if profile.stripe_account_id:
            if profile.stripe_onboarding_complete:
                return {
                    "account_id": profile.stripe_account_id,
                    "url": None,
                    "is_new": False,
                    "already_complete": True,
                }
            url = await self.gateway.create_account_onboarding_link(
                profile.stripe_account_id, refresh_url, return_url
            )
            return {
                "account_id": profile.stripe_account_id,
                "url": url,
                "is_new": False,
                "already_complete": False,
            }

        account_id = await self.gateway.create_connected_account(
            email=email, user_id=caller_id, full_name=profile.full_name or ""
        )
        profile.stripe_account_id = account_id
        profile.stripe_onboarding_complete = False
        await self.db.commit()
        logger.info("Connected account %s linked to user %s", account_id, caller_id)

        url = await self.gateway.create_account_onboarding_link(account_id, refresh_url, return_url)
        return {"account_id": account_id, "url": url, "is_new": True, "already_complete": False}

    async def refresh_connect_status(self, caller_id: str) -> Profile:
        """Pull the caller's account state from Stripe and apply it."""
        profile = await get_profile(self.db, caller_id)
        if profile is None or not profile.stripe_account_id:
            raise NotFound("No payout account has been created yet")
        account = await self.gateway.retrieve_account(profile.stripe_account_id)
        await self.reconcile_account_updated(
            account.id, account.details_submitted, account.payouts_enabled, caller_id
        )
        await self.db.refresh(profile)
        return profile

    # ------------------------------------------------------------------
    # Webhook dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: dict) -> str:
        """Dispatch a verified Stripe event.

        Returns one of ``processed``, ``skipped``, ``ignored``, ``duplicate``.
        Events missing the metadata this workflow relies on are logged and
        skipped; unknown event types are ignored.

        Raises:
            Invalid: the event envelope itself is malformed.
        """
        if not isinstance(event, dict):
            raise Invalid("Event payload must be a JSON object")
        event_id = event.get("id")
        event_type = event.get("type")
        if not isinstance(event_id, str) or not isinstance(event_type, str):
            raise Invalid("Event is missing id or type")

        handled_types = {t.value for t in StripeEventType}
        if event_type not in handled_types:
            logger.info("Ignoring Stripe event %s of type %s", event_id, event_type)
            return "ignored"

        existing = await self.db.execute(
            select(StripeEvent.id).where(StripeEvent.stripe_event_id == event_id)
        )
        if existing.scalar_one_or_none():
            logger.info("Stripe event %s already processed", event_id)
            return "duplicate"

        data = event.get("data") or {}
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise Invalid(f"Event {event_id} has no data object")
        metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}

        logger.info("Stripe event %s: %s", event_id, event_type)
        try:
            if event_type == StripeEventType.CHECKOUT_SESSION_COMPLETED.value:
                await self.reconcile_payment_completed(
                    obj.get("id"), metadata, obj.get("payment_status")
                )
            else:
                await self.reconcile_account_updated(
                    obj.get("id"),
                    obj.get("details_submitted"),
                    obj.get("payouts_enabled"),
                    metadata.get("user_id"),
                )
        except Invalid as e:
            logger.warning("Skipping Stripe event %s (%s): %s", event_id, event_type, e)
            outcome = "skipped"
        else:
            outcome = "processed"

        self.db.add(StripeEvent(stripe_event_id=event_id, type=event_type))
        try:
            await self.db.commit()
        except IntegrityError:
            # Recorded by a concurrent delivery of the same event
            await self.db.rollback()
        return outcome


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


async def list_commissions(
    db: AsyncSession,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = 100,
) -> list[Commission]:
    """Commissions newest first, optionally limited to one party or status."""
    query = select(Commission)
    if status:
        query = query.where(Commission.status == status)
    if user_id:
        query = query.where(
            or_(Commission.helper_user_id == user_id, Commission.requester_user_id == user_id)
        )
    result = await db.execute(query.order_by(Commission.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def commission_summary(db: AsyncSession) -> dict:
    """Platform earnings: total, pending and completed commission amounts."""
    result = await db.execute(
        select(
            Commission.status,
            func.count(Commission.id),
            func.coalesce(func.sum(Commission.commission_amount), 0),
        ).group_by(Commission.status)
    )
    by_status = {
        status: {"count": count, "commission_amount": Decimal(str(total))}
        for status, count, total in result.all()
    }
    zero = Decimal("0")
    # Superseded and refunded checkouts earn nothing
    earning = [
        s["commission_amount"]
        for status, s in by_status.items()
        if status not in (C.EXPIRED.value, C.REFUND_REQUIRED.value)
    ]
    return {
        "total_commission": sum(earning, zero),
        "pending_commission": by_status.get(C.PENDING.value, {}).get("commission_amount", zero),
        "completed_commission": by_status.get(C.COMPLETED.value, {}).get("commission_amount", zero),
        "by_status": by_status,
    }
