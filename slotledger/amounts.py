"""
amounts.py - Pure money arithmetic for guarantee slots.

All amounts are Decimal. Totals charged to buyers are rounded UP to the
smallest currency unit so the escrow never holds less than the VAT-inclusive
price; refunds are whatever remains after the earned portion is rounded up.
"""

from decimal import Decimal, ROUND_CEILING
from typing import Callable, Optional, Tuple

from .core import (
    DEFAULT_VAT_RATE, DEFAULT_CURRENCY_INCREMENT,
    InvalidAmount, Unit,
)

Rounder = Callable[[Decimal], Decimal]

_ZERO = Decimal("0")


def round_up_to_currency_unit(
    amount: Decimal,
    increment: Decimal = DEFAULT_CURRENCY_INCREMENT,
) -> Decimal:
    """
    Round amount up to the next multiple of increment.

    >>> round_up_to_currency_unit(Decimal("11000.01"))
    Decimal('11001')
    """
    if increment <= 0:
        raise ValueError(f"increment must be positive, got {increment}")
    steps = (amount / increment).to_integral_value(rounding=ROUND_CEILING)
    return (steps * increment).quantize(increment)


def require_unit_precision(amount: Decimal, unit: Unit, label: str = "amount") -> Decimal:
    """
    Reject amounts finer than the unit's smallest step.

    Every move must be exact at the unit's precision.

    Raises:
        InvalidAmount: If amount is not exact at unit.decimal_places
    """
    if unit.round(amount) != amount:
        raise InvalidAmount(
            f"{label} {amount} is finer than {unit.symbol} allows ({unit.decimal_places} decimal places)"
        )
    return amount


def vat_inclusive_total(
    daily_amount: Decimal,
    count: int,
    vat_rate: Decimal = DEFAULT_VAT_RATE,
    rounder: Rounder = round_up_to_currency_unit,
) -> Decimal:
    """Price of count guarantee days at daily_amount, plus VAT, rounded up."""
    if daily_amount < 0:
        raise InvalidAmount(f"daily amount cannot be negative: {daily_amount}")
    if count < 0:
        raise InvalidAmount(f"count cannot be negative: {count}")
    return rounder(daily_amount * count * (Decimal("1") + vat_rate))


def seller_refund_amount(
    total_amount: Decimal,
    daily_amount: Decimal,
    completed_count: int,
    vat_rate: Decimal = DEFAULT_VAT_RATE,
    rounder: Rounder = round_up_to_currency_unit,
) -> Decimal:
    """
    Default refund when the seller gives up on a slot.

    The seller keeps the VAT-inclusive price of each completed day.
    """
    earned = vat_inclusive_total(daily_amount, completed_count, vat_rate, rounder)
    return max(_ZERO, total_amount - earned)


def buyer_refund_amount(
    total_amount: Decimal,
    completed_count: int,
    guarantee_count: int,
    guarantee_period: Optional[int] = None,
    rounder: Rounder = round_up_to_currency_unit,
) -> Decimal:
    """
    Refund a buyer may request: the pro-rata share of the total not yet earned.

    Progress is measured against the guarantee period when one was agreed,
    otherwise against the guarantee count.
    """
    denominator = guarantee_period or guarantee_count
    if denominator <= 0:
        raise InvalidAmount(f"refund denominator must be positive, got {denominator}")
    earned = rounder(total_amount * completed_count / denominator)
    return max(_ZERO, total_amount - earned)


def split_refund(
    amount: Decimal,
    buyer_side: Decimal,
    seller_side: Decimal,
) -> Tuple[Decimal, Decimal]:
    """
    Decide which escrow side pays a refund.

    Unsettled money on the buyer side is used first; any remainder comes
    out of the seller side.

    Returns:
        (from_buyer_side, from_seller_side)

    Raises:
        InvalidAmount: If amount is negative or exceeds what is escrowed
    """
    if amount < 0:
        raise InvalidAmount(f"refund amount cannot be negative: {amount}")
    if amount > buyer_side + seller_side:
        raise InvalidAmount(
            f"refund {amount} exceeds escrowed {buyer_side + seller_side}"
        )
    from_buyer = min(amount, buyer_side)
    return from_buyer, amount - from_buyer
