from decimal import Decimal

import pytest

from amounts import (
    AMOUNT_MAX,
    amount_from_parts,
    format_amount,
    percent_change,
    round_percentage,
    share_percentage,
)
from models import FixedPointAmount


def test_format_amount_keeps_four_decimals() -> None:
    assert format_amount(Decimal("15")) == "15.0000"
    assert format_amount(Decimal("10.0001") + Decimal("10.0001") - Decimal("5.0002")) == "15.0000"
    assert format_amount(None) == "0.0000"
    assert format_amount("12.5") == "12.5000"
    assert format_amount(Decimal("-3.25")) == "-3.2500"


def test_format_amount_does_not_use_binary_floats() -> None:
    total = sum([Decimal("0.1")] * 10, Decimal(0))
    assert format_amount(total) == "1.0000"
    total = sum([Decimal("0.0001")] * 33_333, Decimal(0))
    assert format_amount(total) == "3.3333"


def test_percent_change_from_zero_base() -> None:
    assert percent_change(Decimal(5), Decimal(0)) == 100
    assert percent_change(Decimal(0), Decimal(0)) == 0
    assert percent_change(Decimal(-3), Decimal(0)) == 0


def test_percent_change_regular() -> None:
    assert round_percentage(percent_change(Decimal(150), Decimal(100))) == 50.0
    assert round_percentage(percent_change(Decimal(50), Decimal(100))) == -50.0
    assert round_percentage(percent_change(Decimal(1), Decimal(3))) == -66.67


def test_share_percentage_handles_zero_total() -> None:
    assert share_percentage(Decimal(0), Decimal(0)) == 0
    assert round_percentage(share_percentage(Decimal(1), Decimal(3))) == 33.33
    assert round_percentage(share_percentage(Decimal(2), Decimal(3))) == 66.67


def test_round_percentage_rounds_half_up() -> None:
    assert round_percentage(Decimal("12.345")) == 12.35
    assert round_percentage(Decimal("-12.345")) == -12.35
    assert round_percentage(Decimal("100")) == 100.0


def test_amount_from_parts_rebuilds_totals_beyond_int64() -> None:
    # 2 x AMOUNT_MAX in 1/10000 units, split at 10**9
    high = 2 * 9_223_372_036
    low = 2 * 854_775_807
    assert amount_from_parts(high, low) == Decimal("1844674407370955.1614")
    assert format_amount(amount_from_parts(high, low)) == "1844674407370955.1614"
    assert amount_from_parts(None, None) == Decimal(0)


def test_fixed_point_column_rejects_amounts_it_cannot_store() -> None:
    column = FixedPointAmount()
    assert column.process_bind_param(AMOUNT_MAX, None) == 9_223_372_036_854_775_807
    with pytest.raises(ValueError):
        column.process_bind_param(AMOUNT_MAX + Decimal("0.0001"), None)
    with pytest.raises(ValueError):
        column.process_bind_param(Decimal("1.00001"), None)
