from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

AMOUNT_SCALE = Decimal(10_000)
AMOUNT_QUANTUM = Decimal("0.0001")
# Largest amount whose 1/10000 count fits a signed 64-bit column.
AMOUNT_MAX = Decimal("922337203685477.5807")
# Sums are split into high and low parts so SQL SUM() never overflows int64.
AMOUNT_SPLIT = 1_000_000_000
PERCENT_QUANTUM = Decimal("0.01")
ZERO = Decimal(0)
HUNDRED = Decimal(100)


def to_decimal(value: object) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def amount_from_parts(high: Optional[object], low: Optional[object]) -> Decimal:
    """Rebuild an exact amount from split sums of 1/10000 units."""
    units = int(high or 0) * AMOUNT_SPLIT + int(low or 0)
    return Decimal(f"{units}E-4")


def format_amount(value: Optional[object]) -> str:
    """Render an amount with exactly four fractional digits."""
    return f"{to_decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP):f}"


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    """Relative change in percent.

    A zero base counts as a full swing when the current value grew, and as no
    change otherwise.
    """
    if previous == 0:
        return HUNDRED if current > 0 else ZERO
    return (current - previous) / previous * HUNDRED


def share_percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return part / whole * HUNDRED


def round_percentage(value: Decimal) -> float:
    return float(value.quantize(PERCENT_QUANTUM, rounding=ROUND_HALF_UP))
