# autotrader/trading/precision.py
import math
import re
from decimal import Decimal, ROUND_FLOOR
from typing import Union

Number = Union[Decimal, float, int, str]

_SYMBOL_JUNK = re.compile(r"[/\s-]")


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def step_decimals(step: Number) -> int:
    """Decimal places needed to print a multiple of ``step``: max(0, round(-log10(step)))."""
    return max(0, round(-math.log10(float(step))))


def round_to_step(value: Number, step: Number) -> str:
    """Floor ``value`` to a whole multiple of ``step`` and format it for the exchange.

    Never rounds up, so a quantity derived from a balance can't overshoot it.
    """
    step_d = to_decimal(step)
    if step_d <= 0:
        raise ValueError(f"step must be positive, got {step}")
    units = (to_decimal(value) / step_d).to_integral_value(rounding=ROUND_FLOOR)
    rounded = units * step_d
    decimals = step_decimals(step_d)
    return f"{rounded.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_FLOOR):f}"


def clean_symbol(symbol: str) -> str:
    return _SYMBOL_JUNK.sub("", symbol or "").upper()
