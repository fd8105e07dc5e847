"""Token unit conversion.

Plans are computed in float human units. Anything that moves funds converts
to integer base units here, rounding toward zero so the agent never commits
more than it holds.
"""

from __future__ import annotations

import math
from decimal import ROUND_DOWN, Decimal


def to_base_units(amount: float, decimals: int) -> int:
    """Human units -> integer smallest units (floored)."""
    if amount <= 0:
        return 0
    scaled = Decimal(repr(amount)).scaleb(decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_base_units(units: int, decimals: int) -> float:
    return float(Decimal(units).scaleb(-decimals))


def floor_to_decimals(amount: float, decimals: int) -> float:
    """Floor a human amount to the token's precision."""
    return from_base_units(to_base_units(amount, decimals), decimals)


def floor_to_two_decimals(value: float) -> float:
    return math.floor(value * 100) / 100
