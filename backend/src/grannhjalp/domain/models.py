"""SQLAlchemy ORM models for the neighbor help marketplace.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- Numeric(12, 2) for money, Numeric(5, 4) for rates
- DateTime for timestamps (no TIMESTAMPTZ)
"""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from grannhjalp.domain.enums import OfferState
from grannhjalp.infra.database import Base


# ---------------------------------------------------------------------------
# Profile / payment account
# ---------------------------------------------------------------------------


class Profile(Base):
    """Public profile of a user, keyed by the identity provider's user id.

    Also carries the user's Stripe Connect payment account. The onboarding
    flag is only ever written from Stripe's own account state.
    """

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False, default="")
    phone = Column(String(50), nullable=True)
    apartment_number = Column(String(50), nullable=True)
    building_name = Column(String(255), nullable=True)
    bio = Column(Text, nullable=True)

    # Payment account
    stripe_account_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_onboarding_complete = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    @property
    def has_contact_details(self) -> bool:
        return bool(self.phone and self.apartment_number)

    @property
    def can_receive_transfers(self) -> bool:
        return bool(self.stripe_account_id and self.stripe_onboarding_complete)


# ---------------------------------------------------------------------------
# Needs and offers
# ---------------------------------------------------------------------------


class Need(Base):
    """A request for help posted by a neighbor."""

    __tablename__ = "needs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(30), nullable=False, default="other")  # NeedCategory
    budget_amount = Column(Numeric(12, 2), nullable=True)
    budget_currency = Column(String(3), nullable=False, default="SEK")
    location = Column(String(255), nullable=True)
    needed_by = Column(Date, nullable=True)
    # Stored values: open, cancelled, completed (see NeedStatus)
    status = Column(String(30), nullable=False, default="open", index=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    offers = relationship(
        "HelpOffer",
        back_populates="need",
        cascade="all, delete-orphan",
    )


class HelpOffer(Base):
    """A neighbor's offer to help with a need.

    Approval is tracked as a single explicit state. The two approval flags
    exposed by the API are derived from it.
    """

    __tablename__ = "help_offers"
    __table_args__ = (
        UniqueConstraint("need_id", "helper_user_id", name="uq_help_offers_need_helper"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    need_id = Column(
        String(36), ForeignKey("needs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    helper_user_id = Column(String(36), nullable=False, index=True)
    message = Column(Text, nullable=True)
    state = Column(String(30), nullable=False, default=OfferState.HELPER_APPROVED.value)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    # Relationships
    need = relationship("Need", back_populates="offers")

    @property
    def requester_approved(self) -> bool:
        return self.state in (
            OfferState.REQUESTER_APPROVED.value,
            OfferState.MUTUALLY_APPROVED.value,
        )

    @property
    def helper_approved(self) -> bool:
        return self.state in (
            OfferState.HELPER_APPROVED.value,
            OfferState.MUTUALLY_APPROVED.value,
        )

    @property
    def mutually_approved(self) -> bool:
        return self.state == OfferState.MUTUALLY_APPROVED.value


# ---------------------------------------------------------------------------
# Settlement
# ---------------------------------------------------------------------------


class Commission(Base):
    """Platform commission and helper payout for one checkout attempt.

    The rate and both amounts are snapshotted at checkout time. References to
    the need and offer survive their deletion as NULL.
    """

    __tablename__ = "commissions"
    __table_args__ = (
        CheckConstraint("original_amount >= 0", name="ck_commissions_original_non_negative"),
        CheckConstraint(
            "commission_amount >= 0 AND commission_amount <= original_amount",
            name="ck_commissions_amount_within_original",
        ),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1",
            name="ck_commissions_rate_fraction",
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    need_id = Column(
        String(36), ForeignKey("needs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    help_offer_id = Column(
        String(36), ForeignKey("help_offers.id", ondelete="SET NULL"), nullable=True, index=True
    )
    helper_user_id = Column(String(36), nullable=False, index=True)
    requester_user_id = Column(String(36), nullable=False, index=True)

    # Amounts
    original_amount = Column(Numeric(12, 2), nullable=False)
    commission_amount = Column(Numeric(12, 2), nullable=False)
    helper_amount = Column(Numeric(12, 2), nullable=False)
    commission_rate = Column(Numeric(5, 4), nullable=False, default=0.10)
    currency = Column(String(3), nullable=False, default="SEK")

    # Stripe references. stripe_payment_intent_id holds the checkout session id.
    stripe_payment_intent_id = Column(String(255), unique=True, nullable=True, index=True)
    stripe_transfer_id = Column(String(255), nullable=True)

    # Status
    status = Column(String(30), nullable=False, default="pending", index=True)  # CommissionStatus
    transfer_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)


class StripeEvent(Base):
    """Stripe webhook event that has been fully handled."""

    __tablename__ = "stripe_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    stripe_event_id = Column(String(255), unique=True, nullable=False, index=True)
    type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, default=func.now())


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(Base):
    """In-app notification. Only the read flag changes after creation."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    related_need_id = Column(
        String(36), ForeignKey("needs.id", ondelete="SET NULL"), nullable=True
    )
    related_offer_id = Column(
        String(36), ForeignKey("help_offers.id", ondelete="SET NULL"), nullable=True
    )
    created_at = Column(DateTime, default=func.now())
