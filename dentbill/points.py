"""Point arithmetic for drug/material pricing and encounter totals.

One point is worth ten yen.  Drug and material prices are converted to points
with the 五捨五超入 rule from the fee schedule: a remainder of exactly .5 is
dropped and anything above .5 is carried.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_DOWN, ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol, Union

YEN_PER_POINT = 10
MIN_PRICE_FOR_ROUNDING = Decimal("15")

Number = Union[int, float, Decimal]


class _Countable(Protocol):
    points: int
    count: int


@dataclass(frozen=True)
class Totals:
    total_points: int
    patient_burden: int
    insurance_claim: int


def _decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.3 as 0.3 instead of its binary expansion
    return Decimal(str(value))


def gosha_gocho_nyu(value: Number) -> int:
    """Round ``value`` to an integer dropping an exact .5 remainder."""

    return int(_decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_DOWN))


def price_to_points(total_price: Number, *, zero_is_free: bool = False) -> int:
    """Convert a yen amount for a drug or material into points.

    Prices up to 15 yen are one point.  Materials pass ``zero_is_free`` so a
    zero priced item is worth nothing instead of the one point minimum.
    """

    price = _decimal(total_price)
    if zero_is_free and price <= 0:
        return 0
    if price <= MIN_PRICE_FOR_ROUNDING:
        return 1
    return gosha_gocho_nyu(price / YEN_PER_POINT)


def patient_burden(total_points: int, burden_ratio: Number) -> int:
    """Patient co-payment in yen; always rounded up."""

    amount = Decimal(total_points * YEN_PER_POINT) * _decimal(burden_ratio)
    return int(amount.to_integral_value(rounding=ROUND_CEILING))


def window_payment(total_points: int, burden_ratio: Number) -> int:
    """Monthly window payment in yen, rounded half up."""

    amount = Decimal(total_points * YEN_PER_POINT) * _decimal(burden_ratio)
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def summarize(items: Iterable[_Countable], burden_ratio: Number) -> Totals:
    total = sum(item.points * item.count for item in items)
    burden = patient_burden(total, burden_ratio)
    return Totals(
        total_points=total,
        patient_burden=burden,
        insurance_claim=total * YEN_PER_POINT - burden,
    )


__all__ = [
    "YEN_PER_POINT",
    "Totals",
    "gosha_gocho_nyu",
    "price_to_points",
    "patient_burden",
    "window_payment",
    "summarize",
]
