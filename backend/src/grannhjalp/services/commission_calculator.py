"""Commission Calculator - splits a payment between platform and helper.

Pure functions over ``Decimal``. The commission is rounded half-up to the
currency's minor unit and the helper receives the exact remainder, so the two
parts always add back up to the original amount.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from grannhjalp.services.errors import Invalid

# ISO 4217 currencies without a minor unit, as Stripe treats them
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})

DEFAULT_MINOR_UNIT_EXPONENT = 2


@dataclass(frozen=True)
class CommissionSplit:
    original_amount: Decimal
    commission_amount: Decimal
    helper_amount: Decimal
    commission_rate: Decimal
    currency: str


def minor_unit_exponent(currency: str) -> int:
    """Number of decimal places used by *currency*."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return 0
    return DEFAULT_MINOR_UNIT_EXPONENT


def _quantum(currency: str) -> Decimal:
    return Decimal(1).scaleb(-minor_unit_exponent(currency))


def round_to_minor_unit(amount: Decimal, currency: str) -> Decimal:
    """Round *amount* half-up to the minor unit of *currency*."""
    return amount.quantize(_quantum(currency), rounding=ROUND_HALF_UP)


def _as_decimal(value, field: str) -> Decimal:
    if isinstance(value, float):
        # str() first so 0.1 becomes Decimal("0.1"), not its binary expansion
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise Invalid(f"{field} is not a valid decimal: {value!r}")
    if not result.is_finite():
        raise Invalid(f"{field} must be finite")
    return result


def split(original_amount, rate, currency: str = "SEK") -> CommissionSplit:
    """Split *original_amount* into the platform commission and the helper's share.

    Args:
        original_amount: Amount the requester pays, in major units.
        rate: Commission rate as a fraction (0.10 for 10%).
        currency: ISO currency code, used for minor-unit precision.

    Returns:
        CommissionSplit whose commission and helper amounts sum to the
        (rounded) original amount.

    Raises:
        Invalid: On negative amounts or a rate outside [0, 1].
    """
    amount = _as_decimal(original_amount, "original_amount")
    commission_rate = _as_decimal(rate, "commission_rate")

    if amount < 0:
        raise Invalid("original_amount must not be negative")
    if commission_rate < 0 or commission_rate > 1:
        raise Invalid("commission_rate must be between 0 and 1")

    amount = round_to_minor_unit(amount, currency)
    commission_amount = round_to_minor_unit(amount * commission_rate, currency)
    helper_amount = amount - commission_amount

    return CommissionSplit(
        original_amount=amount,
        commission_amount=commission_amount,
        helper_amount=helper_amount,
        commission_rate=commission_rate,
        currency=currency.upper(),
    )


def to_minor_units(amount, currency: str) -> int:
    """Convert a major-unit amount into the integer Stripe expects (öre, cents)."""
    value = round_to_minor_unit(_as_decimal(amount, "amount"), currency)
    return int(value.scaleb(minor_unit_exponent(currency)))
