"""Pydantic v2 schemas for API request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from grannhjalp.domain.enums import NeedCategory


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class ProfileUpdate(BaseModel):
    """Schema for updating the caller's own profile."""

    full_name: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    apartment_number: str | None = Field(default=None, max_length=50)
    building_name: str | None = Field(default=None, max_length=255)
    bio: str | None = None


class ProfileResponse(BaseModel):
    """Schema for profile API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    full_name: str
    phone: str | None = None
    apartment_number: str | None = None
    building_name: str | None = None
    bio: str | None = None
    stripe_account_id: str | None = None
    stripe_onboarding_complete: bool = False


# ---------------------------------------------------------------------------
# Needs
# ---------------------------------------------------------------------------


class NeedCreate(BaseModel):
    """Schema for posting a new need."""

    title: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1)
    category: NeedCategory = NeedCategory.OTHER
    budget_amount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    budget_currency: str = Field(default="SEK", min_length=3, max_length=3)
    location: str | None = Field(default=None, max_length=255)
    needed_by: date | None = None


class NeedUpdate(BaseModel):
    """Schema for editing an open need. Unset fields are left unchanged."""

    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, min_length=1)
    category: NeedCategory | None = None
    budget_amount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    budget_currency: str | None = Field(default=None, min_length=3, max_length=3)
    location: str | None = Field(default=None, max_length=255)
    needed_by: date | None = None


class NeedResponse(BaseModel):
    """Schema for need API responses; ``status`` is the projected status."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    description: str
    category: str
    budget_amount: Decimal | None = None
    budget_currency: str
    location: str | None = None
    needed_by: date | None = None
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


class OfferCreate(BaseModel):
    """Schema for offering help on a need."""

    message: str | None = Field(default=None, max_length=2000)
    helper_approved: bool = True


class ContactDetails(BaseModel):
    full_name: str | None = None
    phone: str | None = None
    apartment_number: str | None = None
    building_name: str | None = None


class OfferResponse(BaseModel):
    """Offer as seen by one party; contact is set once mutually approved."""

    id: str
    need_id: str
    helper_user_id: str
    message: str | None = None
    state: str
    requester_approved: bool
    helper_approved: bool
    contact: ContactDetails | None = None
    payment_eligible: bool
    allowed_actions: list[str]
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Schema for starting checkout for a mutually approved offer."""

    need_id: str
    help_offer_id: str
    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    commission_id: str


class ConnectRequest(BaseModel):
    refresh_url: str | None = None
    return_url: str | None = None


class ConnectResponse(BaseModel):
    account_id: str
    url: str | None = None
    is_new: bool
    already_complete: bool


class ConnectStatusResponse(BaseModel):
    account_id: str | None = None
    onboarding_complete: bool


class CommissionResponse(BaseModel):
    """Schema for commission ledger entries."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    need_id: str | None = None
    help_offer_id: str | None = None
    helper_user_id: str
    requester_user_id: str
    original_amount: Decimal
    commission_amount: Decimal
    helper_amount: Decimal
    commission_rate: Decimal
    currency: str
    stripe_payment_intent_id: str | None = None
    stripe_transfer_id: str | None = None
    status: str
    transfer_attempts: int
    last_error: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class CommissionSummaryResponse(BaseModel):
    total_commission: Decimal
    pending_commission: Decimal
    completed_commission: Decimal
    by_status: dict[str, dict]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    """Schema for in-app notification responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    title: str
    message: str
    is_read: bool
    related_need_id: str | None = None
    related_offer_id: str | None = None
    created_at: datetime | None = None
