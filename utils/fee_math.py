"""Money and percentage helpers shared by the fee and payment modules.

All arithmetic is done with ``Decimal`` and quantized to two places with
ROUND_HALF_UP. Values stored in JSON schedules are plain floats produced by
:func:`to_float`.
"""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Iterable, List, Sequence

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

# Preset weights used when a fee structure asks for a weighted instalment split
WEIGHTED_SPLITS = {
    2: (60, 40),
    3: (40, 40, 20),
    4: (30, 30, 30, 10),
}


def _decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid number: {value!r}")


def money(value) -> Decimal:
    if value is None or value == "":
        return ZERO
    value = _decimal(value)
    if not value.is_finite():
        raise ValueError(f"Invalid number: {value!r}")
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_float(value) -> float:
    return float(money(value))


def percent(value) -> Decimal:
    """Clamp a percentage into [0, 100]."""
    if value is None or value == "":
        return ZERO
    pct = _decimal(value)
    if not pct.is_finite():
        raise ValueError(f"Invalid number: {value!r}")
    return max(ZERO, min(HUNDRED, pct))


def percentage_of(amount, pct) -> Decimal:
    return money(money(amount) * _decimal(pct or 0) / HUNDRED)


def calculate_gst(base, rate) -> Decimal:
    return percentage_of(base, rate)


def extract_base_from_total(total, rate) -> Decimal:
    divisor = Decimal("1") + Decimal(str(rate or 0)) / HUNDRED
    return money(money(total) / divisor)


def extract_gst_from_total(total, rate) -> Decimal:
    return money(total) - extract_base_from_total(total, rate)


def instalment_weights(count: int, split: str = "equal") -> List[Decimal]:
    if count < 1:
        raise ValueError("instalment count must be at least 1")
    if split == "weighted" and count in WEIGHTED_SPLITS:
        return [Decimal(w) for w in WEIGHTED_SPLITS[count]]
    return [Decimal(1)] * count


def split_amount(total, weights: Sequence) -> List[Decimal]:
    """Split ``total`` proportionally to ``weights``.

    The last share absorbs rounding so the shares always sum to ``money(total)``.
    """
    if not weights:
        return []
    total = money(total)
    weights = [Decimal(str(w)) for w in weights]
    weight_sum = sum(weights)
    if weight_sum <= 0:
        raise ValueError("weights must sum to a positive number")
    shares = [money(total * w / weight_sum) for w in weights[:-1]]
    shares.append(total - sum(shares, ZERO))
    return shares


def distribute_backwards(amounts: Sequence, deduction) -> List[Decimal]:
    """Take ``deduction`` out of ``amounts`` starting from the last element.

    Returns the per-element deduction; no element goes below zero.
    """
    remaining = money(deduction)
    taken = [ZERO] * len(amounts)
    for idx in range(len(amounts) - 1, -1, -1):
        if remaining <= 0:
            break
        take = min(money(amounts[idx]), remaining)
        taken[idx] = take
        remaining -= take
    return taken


def distribute_equally(amounts: Sequence, deduction) -> List[Decimal]:
    """Spread ``deduction`` evenly; the remainder lands on the last element.

    Shares are rounded down so the remainder is never negative.
    """
    if not amounts:
        return []
    deduction = money(deduction)
    count = len(amounts)
    each = (deduction / count).quantize(CENT, rounding=ROUND_DOWN)
    taken = [min(each, money(a)) for a in amounts[:-1]]
    taken.append(min(money(amounts[-1]), deduction - sum(taken, ZERO)))
    return taken


def total(values: Iterable) -> Decimal:
    return sum((money(v) for v in values), ZERO)
