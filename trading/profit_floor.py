"""Profit floor policy.

The floor is a trailing stop on the whole position's USD value, ratcheted only by
the historical peak:

    peak < 5x invested            -> no floor
    5x <= peak < 10x invested     -> floor = 2x invested
    peak >= 10x invested          -> floor = floor(peak / 10x) * 5x invested

With $10 invested: peak $50 -> $20, $100 -> $50, $200 -> $100, $250 -> $100.
"""

from __future__ import annotations

import math
from typing import Any

import config

ACTIVATION_MULTIPLE = 5
STEP_MULTIPLE = 10


def calculate_profit_floor(highest_price: float, invest_amount: float) -> float | None:
    invest = float(invest_amount)
    highest = float(highest_price)
    if invest <= 0:
        return None
    if highest < ACTIVATION_MULTIPLE * invest:
        return None
    if highest < STEP_MULTIPLE * invest:
        return 2 * invest
    return math.floor(highest / (STEP_MULTIPLE * invest)) * (ACTIVATION_MULTIPLE * invest)


def fixed_threshold_floor(highest_price: float) -> float | None:
    """Legacy absolute-dollar floor, sized for a $10 ticket."""
    highest = float(highest_price)
    if highest < 50:
        return None
    if highest < 100:
        return 20.0
    return float(math.floor(highest / 100) * 50)


def trailing_threshold_floor(highest_price: float) -> float | None:
    """Absolute trailing floor: $5 under the peak from $20, $10 under it from $30."""
    highest = float(highest_price)
    if highest < 20:
        return None
    if highest < 30:
        return highest - 5
    return highest - 10


def profit_floor(highest_price: float, invest_amount: float) -> float | None:
    mode = str(getattr(config, "PROFIT_FLOOR_MODE", "relative")).lower()
    if mode == "fixed":
        return fixed_threshold_floor(highest_price)
    if mode == "trailing":
        return trailing_threshold_floor(highest_price)
    return calculate_profit_floor(highest_price, invest_amount)


def should_sell(current_price: float, highest_price: float, invest_amount: float) -> bool:
    floor = profit_floor(highest_price, invest_amount)
    if floor is None:
        return False
    return float(current_price) <= floor


def profit_floor_info(highest_price: float, invest_amount: float) -> dict[str, Any]:
    floor = profit_floor(highest_price, invest_amount)
    return {
        "has_floor": floor is not None,
        "floor": floor,
        "is_active": floor is not None,
    }
