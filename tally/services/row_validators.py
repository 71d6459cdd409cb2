"""Per-row semantic validation for expense, income and portfolio imports.

Each validator is a pure function of one typed CSV row plus its explicit
configuration inputs. It returns either a validated value object or a
:class:`FieldError` describing the first problem found in that row.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union

from tally.core.config import KeywordRule
from tally.services.categorize import categorize
from tally.services.csv_utils import ExpenseCsvRow, IncomeCsvRow, PortfolioCsvRow
from tally.services.dates import parse_import_date
from tally.services.fingerprint import (
    expense_fingerprint,
    income_fingerprint,
    normalize_display,
    normalize_for_dedup,
)
from tally.services.import_types import FieldError
from tally.services.money import (
    parse_amount_cents,
    parse_market_value_cents,
    parse_shares_micros,
)

MAX_TEXT_LENGTH = 150

DATE_MESSAGE = "Date must be a real calendar date in MM-DD-YYYY format."
AMOUNT_MESSAGE = (
    "Amount must be a positive number with optional $/commas and up to 2 decimal places."
)
MARKET_VALUE_MESSAGE = "Market value must be a positive number with optional $/commas."
SHARES_MESSAGE = "Shares must be a positive number with optional commas."

DEFAULT_INCOME_SOURCE = "Other"


@dataclass(frozen=True)
class ValidatedExpense:
    txn_date: str
    description: str
    amount_cents: int
    category: str
    description_dedup: str
    category_dedup: str
    currency: str
    fingerprint: str


@dataclass(frozen=True)
class ValidatedIncome:
    income_date: str
    amount_cents: int
    source: str
    source_dedup: str
    currency: str
    fingerprint: str


@dataclass
class PortfolioPosition:
    symbol: str
    company_name: str
    market_value_cents: int
    shares_micros: int = 0
    exchange: Optional[str] = None
    currency: Optional[str] = None
    logo_url: Optional[str] = None


def _too_long(row: int, field: str, label: str) -> FieldError:
    return FieldError(row, field, f"{label} exceeds maximum length of {MAX_TEXT_LENGTH} characters.")


def validate_expense_row(
    row: ExpenseCsvRow,
    rules: Sequence[KeywordRule],
    currency: str,
    fallback_category: str = "Uncategorized",
) -> Union[ValidatedExpense, FieldError]:
    txn_date = parse_import_date(row.date)
    if txn_date is None:
        return FieldError(row.row_number, "date", DATE_MESSAGE)

    description = normalize_display(row.description)
    if not description:
        return FieldError(row.row_number, "description", "Description is required.")
    if len(description) > MAX_TEXT_LENGTH:
        return _too_long(row.row_number, "description", "Description")

    category = normalize_display(row.category)
    if not category:
        category = categorize(description, rules, fallback_category)
    if len(category) > MAX_TEXT_LENGTH:
        return _too_long(row.row_number, "category", "Category")

    amount_cents = parse_amount_cents(row.amount)
    if amount_cents is None:
        return FieldError(row.row_number, "amount", AMOUNT_MESSAGE)

    description_dedup = normalize_for_dedup(description)
    category_dedup = normalize_for_dedup(category)
    return ValidatedExpense(
        txn_date=txn_date,
        description=description,
        amount_cents=amount_cents,
        category=category,
        description_dedup=description_dedup,
        category_dedup=category_dedup,
        currency=currency,
        fingerprint=expense_fingerprint(
            txn_date, description_dedup, amount_cents, category_dedup, currency
        ),
    )


def validate_income_row(row: IncomeCsvRow, currency: str) -> Union[ValidatedIncome, FieldError]:
    income_date = parse_import_date(row.date)
    if income_date is None:
        return FieldError(row.row_number, "date", DATE_MESSAGE)

    source = normalize_display(row.source) or DEFAULT_INCOME_SOURCE
    if len(source) > MAX_TEXT_LENGTH:
        return _too_long(row.row_number, "source", "Source")

    amount_cents = parse_amount_cents(row.amount)
    if amount_cents is None:
        return FieldError(row.row_number, "amount", AMOUNT_MESSAGE)

    source_dedup = normalize_for_dedup(source)
    return ValidatedIncome(
        income_date=income_date,
        amount_cents=amount_cents,
        source=source,
        source_dedup=source_dedup,
        currency=currency,
        fingerprint=income_fingerprint(income_date, amount_cents, source_dedup, currency),
    )


def validate_portfolio_row(row: PortfolioCsvRow) -> Union[PortfolioPosition, FieldError]:
    symbol = normalize_display(row.symbol).upper()
    if not symbol:
        return FieldError(row.row_number, "symbol", "Symbol is required.")

    company_name = normalize_display(row.company_name)
    if not company_name:
        return FieldError(row.row_number, "companyName", "Company name is required.")
    if len(company_name) > MAX_TEXT_LENGTH:
        return _too_long(row.row_number, "companyName", "Company name")

    market_value_cents = parse_market_value_cents(row.market_value)
    if market_value_cents is None:
        return FieldError(row.row_number, "marketValue", MARKET_VALUE_MESSAGE)

    shares_micros = 0
    if row.shares.strip():
        parsed_shares = parse_shares_micros(row.shares)
        if parsed_shares is None:
            return FieldError(row.row_number, "shares", SHARES_MESSAGE)
        shares_micros = parsed_shares

    return PortfolioPosition(
        symbol=symbol,
        company_name=company_name,
        market_value_cents=market_value_cents,
        shares_micros=shares_micros,
        exchange=normalize_display(row.exchange) or None,
        currency=normalize_display(row.currency).upper() or None,
        logo_url=normalize_display(row.logo_url) or None,
    )
