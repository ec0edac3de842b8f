"""Fee and payout arithmetic.

One rounding rule is used everywhere: the platform fee is the floor of
20 % of an integer amount in minor units. The legacy USD path converts the
budget to cents first, so ``calculate_payout(5.003, 0)`` charges a fee of
1.00 (floor(500.3 * 0.2) = 100 cents).

Order amounts:
    total = base + fx_cost
    platform_fee = floor(total * 20 / 100)
    intl_surcharge = 0 if payer and payee share a country, else
        max(floor(total * surcharge_bps / 10000), surcharge_min)
    application_fee = platform_fee + intl_surcharge (must not exceed total)
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from app.config import get_intl_surcharge
from app.constants import COUNTRY_CURRENCY
from app.exceptions import RequestValidationFailed, StateConflict

FEE_RATE = Decimal("0.20")
FEE_RATE_PERCENT = 20
MIN_BUDGET_USD = Decimal("5")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PayoutBreakdown:
    """Legacy USD payout breakdown for a completed task."""

    gross_amount: Decimal
    fee_rate: Decimal
    platform_fee: Decimal
    processor_fee: Decimal
    payout_amount: Decimal


@dataclass(frozen=True)
class OrderAmounts:
    """Minor-unit amounts for a payment order."""

    base_amount_minor: int
    fx_cost_minor: int
    total_amount_minor: int
    platform_fee_minor: int
    intl_surcharge_minor: int
    application_fee_minor: int
    is_international: bool


def platform_fee_minor(amount_minor: int) -> int:
    """Platform fee for an integer minor-unit amount (floor of 20 %)."""
    return (amount_minor * FEE_RATE_PERCENT) // 100


def calculate_payout(
    budget_usd: Decimal | float | str,
    processor_fee_usd: Decimal | float | str = 0,
) -> PayoutBreakdown:
    """Compute the legacy payout breakdown for a USD budget.

    Args:
        budget_usd: Task budget in dollars.
        processor_fee_usd: Payment processor fee in dollars (>= 0).

    Returns:
        PayoutBreakdown with payout = max(budget - fee - processor_fee, 0),
        rounded to cents.

    Raises:
        RequestValidationFailed: If either amount is negative.

    Example:
        >>> calculate_payout(Decimal("100.00"), 0).payout_amount
        Decimal('80.00')
    """
    gross = Decimal(str(budget_usd))
    processor_fee = Decimal(str(processor_fee_usd))
    if gross < 0 or processor_fee < 0:
        raise RequestValidationFailed(detail={"message": "amounts must be non-negative"})

    gross_cents = gross * 100
    fee_cents = (gross_cents * FEE_RATE).to_integral_value(rounding=ROUND_FLOOR)
    fee = (fee_cents / 100).quantize(_CENT)

    payout = max(gross - fee - processor_fee, Decimal("0"))
    payout = payout.quantize(_CENT, rounding=ROUND_HALF_UP)

    return PayoutBreakdown(
        gross_amount=gross.quantize(_CENT, rounding=ROUND_HALF_UP),
        fee_rate=FEE_RATE,
        platform_fee=fee,
        processor_fee=processor_fee.quantize(_CENT, rounding=ROUND_HALF_UP),
        payout_amount=payout,
    )


def normalize_country(value: object) -> str | None:
    """Return an upper-case supported settlement country, or None."""
    if not isinstance(value, str):
        return None
    code = value.strip().upper()
    return code if code in COUNTRY_CURRENCY else None


def currency_for_country(country: str) -> str:
    return COUNTRY_CURRENCY[country]


def calculate_order_amounts(
    base_amount_minor: int,
    fx_cost_minor: int,
    payer_country: str,
    payee_country: str,
) -> OrderAmounts:
    """Compute order totals and fees in minor units.

    Raises:
        RequestValidationFailed: If an amount is negative.
        StateConflict: If the application fee would exceed the total.
    """
    if base_amount_minor < 0 or fx_cost_minor < 0:
        raise RequestValidationFailed(detail={"message": "amounts must be non-negative integers"})

    total = base_amount_minor + fx_cost_minor
    platform_fee = platform_fee_minor(total)

    is_international = payer_country != payee_country
    surcharge = 0
    if is_international:
        bps, minimum = get_intl_surcharge()
        surcharge = max((total * bps) // 10000, minimum)

    application_fee = platform_fee + surcharge
    if application_fee > total:
        raise StateConflict(
            "application_fee_exceeds_total",
            detail={"application_fee_minor": application_fee, "total_amount_minor": total},
        )

    return OrderAmounts(
        base_amount_minor=base_amount_minor,
        fx_cost_minor=fx_cost_minor,
        total_amount_minor=total,
        platform_fee_minor=platform_fee,
        intl_surcharge_minor=surcharge,
        application_fee_minor=application_fee,
        is_international=is_international,
    )
