import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

import pytest  # noqa: E402

from tally.services.money import (  # noqa: E402
    MAX_SAFE_INTEGER,
    parse_amount_cents,
    parse_market_value_cents,
    parse_shares_micros,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("$10.00", 1000),
        ("20.50", 2050),
        ("20.5", 2050),
        ("7", 700),
        ("$1,234.56", 123456),
        ("1234567.89", 123456789),
        (" $3.10 ", 310),
    ],
)
def test_parse_amount_cents_accepts_display_formats(value, expected):
    assert parse_amount_cents(value) == expected


@pytest.mark.parametrize(
    "value",
    [
        "",
        "0",
        "0.00",
        "-5.00",
        "+5.00",
        "1e3",
        "1.2.3",
        "10.123",
        "1,23.00",
        "12,3456",
        "$",
        "abc",
        None,
    ],
)
def test_parse_amount_cents_rejects_malformed_values(value):
    assert parse_amount_cents(value) is None


def test_parse_amount_cents_rejects_values_past_safe_integer_range():
    too_big = str(MAX_SAFE_INTEGER // 100 + 1)
    assert parse_amount_cents(too_big) is None


def test_parse_market_value_cents_rounds_extra_precision():
    assert parse_market_value_cents("100.005") == 10001
    assert parse_market_value_cents("100.004") == 10000
    assert parse_market_value_cents("$1,000.999") == 100100


def test_parse_market_value_cents_rejects_values_rounding_to_zero():
    assert parse_market_value_cents("0.004") is None


def test_parse_shares_micros_keeps_six_decimals():
    assert parse_shares_micros("165.7") == 165_700_000
    assert parse_shares_micros("1,000") == 1_000_000_000
    assert parse_shares_micros("0.0000005") == 1


def _shift_digits(text, zero):
    return "".join(chr(zero + int(ch)) if ch in "0123456789" else ch for ch in text)


@pytest.mark.parametrize(
    "value",
    [
        _shift_digits("10", 0x0660),
        _shift_digits("10", 0xFF10) + ".00",
        "$" + _shift_digits("1,000", 0x0966),
        "1." + _shift_digits("50", 0x0660),
    ],
)
def test_parsers_reject_non_ascii_digits(value):
    assert parse_amount_cents(value) is None
    assert parse_market_value_cents(value) is None
    assert parse_shares_micros(value) is None
