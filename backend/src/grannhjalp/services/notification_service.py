"""Notification Service - in-app notifications for offer and payment events."""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grannhjalp.domain.models import Notification
from grannhjalp.services.errors import NotFound

logger = logging.getLogger(__name__)


class NotificationService:
    """Writes and reads per-user notifications.

    ``notify`` is fire-and-forget: the row is written inside a SAVEPOINT and a
    failure is logged and discarded, so the state transition that triggered
    it is never rolled back. The caller commits.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def notify(
        self,
        recipient_id: str,
        title: str,
        message: str,
        related_need_id: Optional[str] = None,
        related_offer_id: Optional[str] = None,
    ) -> None:
        try:
            async with self.db.begin_nested():
                self.db.add(
                    Notification(
                        user_id=recipient_id,
                        title=title,
                        message=message,
                        related_need_id=related_need_id,
                        related_offer_id=related_offer_id,
                    )
                )
        except SQLAlchemyError as e:
            logger.warning("Notification to %s dropped (%s): %s", recipient_id, title, e)

    # ------------------------------------------------------------------
    # Event-driven notifications
    # ------------------------------------------------------------------

    async def notify_offer_received(self, need, offer) -> None:
        await self.notify(
            need.user_id,
            "New offer of help",
            f"A neighbor offered to help with \"{need.title}\".",
            related_need_id=need.id,
            related_offer_id=offer.id,
        )

    async def notify_requester_approved(self, need, offer) -> None:
        await self.notify(
            offer.helper_user_id,
            "Your offer was accepted",
            f"Confirm your offer for \"{need.title}\" to exchange contact details.",
            related_need_id=need.id,
            related_offer_id=offer.id,
        )

    async def notify_helper_approved(self, need, offer) -> None:
        await self.notify(
            need.user_id,
            "Helper confirmed",
            f"Your helper confirmed the offer for \"{need.title}\".",
            related_need_id=need.id,
            related_offer_id=offer.id,
        )

    async def notify_mutually_approved(self, need, offer) -> None:
        for recipient in (need.user_id, offer.helper_user_id):
            await self.notify(
                recipient,
                "Offer approved",
                f"Both of you approved the offer for \"{need.title}\". "
                "Contact details are now visible.",
                related_need_id=need.id,
                related_offer_id=offer.id,
            )

    async def notify_payment_completed(self, commission) -> None:
        await self.notify(
            commission.requester_user_id,
            "Payment completed",
            f"Your payment of {commission.original_amount} {commission.currency} is complete.",
            related_need_id=commission.need_id,
            related_offer_id=commission.help_offer_id,
        )
        await self.notify(
            commission.helper_user_id,
            "Payout sent",
            f"{commission.helper_amount} {commission.currency} is on its way to your account.",
            related_need_id=commission.need_id,
            related_offer_id=commission.help_offer_id,
        )

    async def notify_transfer_pending(self, commission) -> None:
        await self.notify(
            commission.helper_user_id,
            "Finish payout setup",
            f"A payment of {commission.helper_amount} {commission.currency} is waiting. "
            "Complete your payout account setup to receive it.",
            related_need_id=commission.need_id,
            related_offer_id=commission.help_offer_id,
        )

    async def notify_refund_required(self, commission) -> None:
        await self.notify(
            commission.requester_user_id,
            "Payment will be refunded",
            f"Your payment of {commission.original_amount} {commission.currency} could not "
            "be used for this need and will be refunded.",
            related_need_id=commission.need_id,
            related_offer_id=commission.help_offer_id,
        )

    # ------------------------------------------------------------------
    # Recipient-facing reads and read-flag updates
    # ------------------------------------------------------------------

    async def list_for_user(
        self, user_id: str, unread_only: bool = False, limit: int = 50
    ) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        query = query.order_by(Notification.created_at.desc()).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def mark_read(self, user_id: str, notification_id: str) -> Notification:
        """Mark one notification read. Other users' notifications look missing."""
        result = await self.db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id,
            )
        )
        notification = result.scalar_one_or_none()
        if not notification:
            raise NotFound("Notification not found")
        notification.is_read = True
        await self.db.commit()
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True)
        )
        await self.db.commit()
        return result.rowcount
