from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from freight_escrow.services.errors import InvalidAmount

_CENT = Decimal("0.01")


def to_minor_units(amount: Any, *, max_amount: Decimal | None = None) -> int:
    """Convert a human-facing decimal amount into integer cents.

    Rejects non-positive amounts, amounts above ``max_amount`` and amounts with
    more than two decimal places (``amount * 100`` must be integral).
    """

    if isinstance(amount, bool) or amount is None:
        raise InvalidAmount("amount is required", amount=amount)
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmount("amount is not a number", amount=amount) from None
    if not value.is_finite():
        raise InvalidAmount("amount is not finite", amount=amount)
    if value <= 0:
        raise InvalidAmount("amount must be positive", amount=amount)
    if max_amount is not None and value > max_amount:
        raise InvalidAmount("amount exceeds platform maximum", amount=amount, max=str(max_amount))

    cents = value * 100
    if cents != cents.to_integral_value():
        raise InvalidAmount("amount has more than 2 decimal places", amount=amount)
    return int(cents)


def from_minor_units(cents: int | None) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(_CENT)


@dataclass(frozen=True)
class FeeSplit:
    amount_cents: int
    platform_fee_cents: int
    carrier_amount_cents: int


def compute_fee_split(amount_cents: int, fee_rate: Decimal) -> FeeSplit:
    """Split a settled amount into the platform fee and the carrier's share.

    The fee is rounded half-up to the nearest minor unit; the carrier gets the
    remainder so both parts always add back to ``amount_cents``.
    """

    amount_cents = int(amount_cents)
    fee = int((Decimal(amount_cents) * Decimal(fee_rate)).quantize(Decimal("1"), ROUND_HALF_UP))
    return FeeSplit(
        amount_cents=amount_cents,
        platform_fee_cents=fee,
        carrier_amount_cents=amount_cents - fee,
    )
