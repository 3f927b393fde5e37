"""
perpx Fixed-Point Arithmetic

All ledger values are Decimals carried at 18 fractional digits (wad precision).
Products round half-up, quotients truncate toward zero, so every settlement
step is reproducible bit-for-bit on every node.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, getcontext
from typing import Any

from ..constants import ONE, WAD_QUANTUM, ZERO

# 18 fractional digits on values up to ~1e40 need well over the default 28
getcontext().prec = 78


def to_wad(value: Any) -> Decimal:
    """Coerce an int/str/float/Decimal into a wad-precision Decimal."""
    if isinstance(value, Decimal):
        d = value
    else:
        d = Decimal(str(value))
    return d.quantize(WAD_QUANTUM, rounding=ROUND_DOWN)


def wad_mul(a: Decimal, b: Decimal) -> Decimal:
    return (a * b).quantize(WAD_QUANTUM, rounding=ROUND_HALF_UP)


def wad_div(a: Decimal, b: Decimal) -> Decimal:
    if b == 0:
        raise ZeroDivisionError("wad_div by zero")
    return (a / b).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)


def mul_div(a: Decimal, b: Decimal, c: Decimal) -> Decimal:
    """a * b / c with a single truncation at the end."""
    if c == 0:
        raise ZeroDivisionError("mul_div by zero")
    return (a * b / c).quantize(WAD_QUANTUM, rounding=ROUND_DOWN)


def clamp_ratio(ratio: Decimal) -> Decimal:
    """Bound a reduction ratio to [0, 1]."""
    if ratio < ZERO:
        return ZERO
    if ratio > ONE:
        return ONE
    return ratio
