"""Money helpers.

Amounts are stored as two-decimal ``Decimal`` values; anything that splits,
scales or compares amounts does it in integer minor units (cents/centavos).
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import List, Sequence, Union

Number = Union[int, float, str, Decimal]

TWO_PLACES = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


def quantize(value: Number) -> Decimal:
    return to_decimal(value).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def to_minor(value: Number) -> int:
    return int((to_decimal(value) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor(value: int) -> Decimal:
    return (Decimal(int(value)) / 100).quantize(TWO_PLACES)


def split_proportionally(amount_minor: int, weights_minor: Sequence[int]) -> List[int]:
    """Split ``amount_minor`` by weight, rounding each share half-up.

    The shares may differ from ``amount_minor`` by a few minor units in
    aggregate; callers tolerate that residue instead of forcing it onto one
    share.
    """
    total_weight = sum(weights_minor)
    if total_weight <= 0:
        return [0 for _ in weights_minor]
    shares = []
    for weight in weights_minor:
        share = (Decimal(amount_minor) * Decimal(weight) / Decimal(total_weight)).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        shares.append(int(share))
    return shares


def format_peso(value: Number) -> str:
    return f"₱{to_decimal(value):,.2f}"
