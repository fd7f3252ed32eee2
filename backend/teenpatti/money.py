"""Currency rounding shared by the round engine, aggregator and settlement."""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

_CENT = Decimal("0.01")


def round_money(value: float) -> float:
    """Round a money value to whole cents (half-up, not banker's rounding)."""
    # str() first so 2.675 rounds as written rather than as its binary float
    rounded = Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)
    result = float(rounded)
    return 0.0 if result == 0 else result


def parse_amount(raw: Any) -> float | None:
    """Coerce a wire amount (number or numeric string) to a rounded float.

    Returns None for anything that is not a finite number.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value):
        return None
    return round_money(value)
