"""Domain enumerations for the neighbor help marketplace.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class NeedCategory(str, Enum):
    """Kind of help a neighbor is asking for."""

    CLEANING = "cleaning"
    MOVING = "moving"
    PET_CARE = "pet_care"
    CHILDCARE = "childcare"
    SHOPPING = "shopping"
    REPAIRS = "repairs"
    GARDENING = "gardening"
    COOKING = "cooking"
    TRANSPORTATION = "transportation"
    TUTORING = "tutoring"
    TECHNOLOGY = "technology"
    OTHER = "other"


class NeedStatus(str, Enum):
    """Status of a need.

    Only OPEN, CANCELLED and COMPLETED are stored. The pending/in-progress
    values are projected from the state of the need's offers.
    """

    OPEN = "open"
    PENDING_HELPER_CONTACT = "pending_helper_contact"
    PENDING_REQUESTER_CONTACT = "pending_requester_contact"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OfferState(str, Enum):
    """Approval state of a help offer."""

    SUBMITTED = "submitted"
    REQUESTER_APPROVED = "requester_approved"
    HELPER_APPROVED = "helper_approved"
    MUTUALLY_APPROVED = "mutually_approved"
    WITHDRAWN = "withdrawn"


class OfferAction(str, Enum):
    """Action applied to a help offer."""

    APPROVE = "approve"
    WITHDRAW = "withdraw"


class OfferActor(str, Enum):
    """Party acting on a help offer."""

    REQUESTER = "requester"
    HELPER = "helper"


class CommissionStatus(str, Enum):
    """Settlement status of a commission record."""

    PENDING = "pending"
    TRANSFER_PENDING = "transfer_pending"
    TRANSFERRING = "transferring"
    TRANSFER_FAILED = "transfer_failed"
    COMPLETED = "completed"
    EXPIRED = "expired"  # checkout superseded before payment
    REFUND_REQUIRED = "refund_required"  # paid, but the need cannot be settled


class StripeEventType(str, Enum):
    """Stripe webhook event types handled by the settlement workflow."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    ACCOUNT_UPDATED = "account.updated"
