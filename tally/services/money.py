"""Exact parsing of display-formatted money and quantity values.

All values are converted to integer minor units (cents, micro-shares) with
:class:`decimal.Decimal`; no float ever touches an amount.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

# Optional "$", then either a plain digit run or comma-separated groups of
# three, then an optional fractional part. Signs, exponents and a second
# decimal point cannot match.
_NUMBER_PATTERN = re.compile(r"^\$?([0-9]+|[0-9]{1,3}(?:,[0-9]{3})+)(?:\.([0-9]+))?$")

MAX_SAFE_INTEGER = 2**53 - 1

CENT_DECIMALS = 2
SHARE_DECIMALS = 6


def parse_scaled_number(
    value: Optional[str],
    decimals: int,
    *,
    round_excess: bool = False,
) -> Optional[int]:
    """Parse ``value`` into an integer count of ``10 ** -decimals`` units.

    Parameters
    ----------
    value:
        Text such as ``"$1,234.5"`` or ``"20"``. Surrounding whitespace is
        ignored.
    decimals:
        Number of fractional digits one unit represents (2 for cents).
    round_excess:
        When ``False`` a value with more than ``decimals`` fractional digits
        is rejected. When ``True`` it is rounded half-up to the nearest unit.

    Returns
    -------
    int or None
        The positive unit count, or ``None`` when the text is malformed, the
        result is zero, or it exceeds :data:`MAX_SAFE_INTEGER`.
    """

    if not isinstance(value, str):
        return None
    match = _NUMBER_PATTERN.fullmatch(value.strip())
    if not match:
        return None

    whole_text, fraction_text = match.group(1), match.group(2) or ""
    if len(fraction_text) > decimals and not round_excess:
        return None

    number = Decimal(f"{whole_text.replace(',', '')}.{fraction_text or '0'}")
    try:
        units = number.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold; far past the limit.
        return None
    total = int(units)

    if total <= 0 or total > MAX_SAFE_INTEGER:
        return None
    return total


def parse_amount_cents(value: Optional[str]) -> Optional[int]:
    """Expense/income amounts: more than two decimals is an error."""

    return parse_scaled_number(value, CENT_DECIMALS)


def parse_market_value_cents(value: Optional[str]) -> Optional[int]:
    """Portfolio market values: extra precision is rounded to the cent."""

    return parse_scaled_number(value, CENT_DECIMALS, round_excess=True)


def parse_shares_micros(value: Optional[str]) -> Optional[int]:
    """Share counts in millionths of a share, rounded past six decimals."""

    return parse_scaled_number(value, SHARE_DECIMALS, round_excess=True)

