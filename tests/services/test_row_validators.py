import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

import hashlib  # noqa: E402

from tally.core.config import KeywordRule, parse_keyword_rules  # noqa: E402
from tally.services.categorize import categorize  # noqa: E402
from tally.services.csv_utils import ExpenseCsvRow, IncomeCsvRow, PortfolioCsvRow  # noqa: E402
from tally.services.fingerprint import rescue_fingerprint  # noqa: E402
from tally.services.import_types import FieldError  # noqa: E402
from tally.services.row_validators import (  # noqa: E402
    PortfolioPosition,
    ValidatedExpense,
    ValidatedIncome,
    validate_expense_row,
    validate_income_row,
    validate_portfolio_row,
)

RULES = parse_keyword_rules(None)


def _expense(**overrides):
    values = {
        "row_number": 2,
        "date": "01-01-2025",
        "description": "Store A",
        "amount": "$10.00",
        "category": "Food",
    }
    values.update(overrides)
    return ExpenseCsvRow(**values)


def test_validate_expense_row_normalizes_fields():
    result = validate_expense_row(
        _expense(description="  Corner   Store ", category=" Food "), RULES, "CAD"
    )

    assert isinstance(result, ValidatedExpense)
    assert result.txn_date == "2025-01-01"
    assert result.description == "Corner Store"
    assert result.description_dedup == "corner store"
    assert result.category == "Food"
    assert result.amount_cents == 1000
    assert result.currency == "CAD"


def test_expense_fingerprint_matches_pipe_delimited_digest():
    result = validate_expense_row(_expense(), RULES, "CAD")

    expected = hashlib.sha256("2025-01-01|store a|1000|food|CAD".encode("utf-8")).hexdigest()
    assert result.fingerprint == expected
    assert len(result.fingerprint) == 64


def test_expense_fingerprint_ignores_case_spacing_and_currency_symbol():
    first = validate_expense_row(_expense(description="STORE   a", amount="$1,000.00"), RULES, "CAD")
    second = validate_expense_row(_expense(description=" store a ", amount="1000", category="FOOD"), RULES, "CAD")

    assert first.fingerprint == second.fingerprint


def test_expense_fingerprint_depends_on_currency():
    cad = validate_expense_row(_expense(), RULES, "CAD")
    usd = validate_expense_row(_expense(), RULES, "USD")

    assert cad.fingerprint != usd.fingerprint


def test_validate_expense_row_reports_field_errors():
    assert validate_expense_row(_expense(date="02-30-2025"), RULES, "CAD") == FieldError(
        2, "date", "Date must be a real calendar date in MM-DD-YYYY format."
    )
    assert validate_expense_row(_expense(description="   "), RULES, "CAD").field == "description"
    long_text = validate_expense_row(_expense(description="x" * 151), RULES, "CAD")
    assert long_text.message == "Description exceeds maximum length of 150 characters."
    assert validate_expense_row(_expense(category="c" * 151), RULES, "CAD").field == "category"
    assert validate_expense_row(_expense(amount="10.001"), RULES, "CAD").field == "amount"


def test_validate_expense_row_accepts_text_at_maximum_length():
    result = validate_expense_row(_expense(description="x" * 150), RULES, "CAD")

    assert isinstance(result, ValidatedExpense)


def test_blank_category_is_assigned_by_keyword_rules():
    food = validate_expense_row(_expense(description="Uber Eats order", category=""), RULES, "CAD")
    ride = validate_expense_row(_expense(description="UBER trip", category=""), RULES, "CAD")
    unknown = validate_expense_row(_expense(description="Mystery", category=""), RULES, "CAD")

    assert food.category == "Food"
    assert ride.category == "Transport"
    assert unknown.category == "Uncategorized"


def test_categorize_uses_explicit_rules_and_fallback():
    rules = (KeywordRule("Pets", ("vet", "kibble")),)

    assert categorize("Downtown VET clinic", rules) == "Pets"
    assert categorize("Costco", rules, fallback="Misc") == "Misc"


def test_validate_income_row_defaults_blank_source():
    result = validate_income_row(
        IncomeCsvRow(row_number=2, date="03-15-2025", source="", amount="2,500.00"), "CAD"
    )

    assert isinstance(result, ValidatedIncome)
    assert result.source == "Other"
    assert result.income_date == "2025-03-15"
    assert result.amount_cents == 250000
    expected = hashlib.sha256("income|2025-03-15|250000|other|CAD".encode("utf-8")).hexdigest()
    assert result.fingerprint == expected


def test_validate_income_row_reports_errors():
    bad_amount = validate_income_row(
        IncomeCsvRow(row_number=4, date="03-15-2025", source="Payroll", amount="-1"), "CAD"
    )
    long_source = validate_income_row(
        IncomeCsvRow(row_number=5, date="03-15-2025", source="s" * 151, amount="1"), "CAD"
    )

    assert bad_amount == FieldError(
        4,
        "amount",
        "Amount must be a positive number with optional $/commas and up to 2 decimal places.",
    )
    assert long_source.field == "source"


def test_validate_portfolio_row_normalizes_position():
    result = validate_portfolio_row(
        PortfolioCsvRow(
            row_number=2,
            symbol=" msft ",
            company_name="Microsoft  Corporation",
            market_value="$13,340.004",
            shares="31.76",
            exchange="NASDAQ",
            currency="usd",
        )
    )

    assert isinstance(result, PortfolioPosition)
    assert result.symbol == "MSFT"
    assert result.company_name == "Microsoft Corporation"
    assert result.market_value_cents == 1_334_000
    assert result.shares_micros == 31_760_000
    assert result.currency == "USD"
    assert result.logo_url is None


def test_validate_portfolio_row_reports_errors():
    def row(**overrides):
        values = {"row_number": 3, "symbol": "A", "company_name": "Agilent", "market_value": "1"}
        values.update(overrides)
        return PortfolioCsvRow(**values)

    assert validate_portfolio_row(row(symbol="")).field == "symbol"
    assert validate_portfolio_row(row(company_name="")).field == "companyName"
    assert validate_portfolio_row(row(market_value="0")).field == "marketValue"
    assert validate_portfolio_row(row(shares="many")).field == "shares"


def test_rescue_fingerprint_appends_random_token():
    first = rescue_fingerprint("abc")
    second = rescue_fingerprint("abc")

    assert first.startswith("abc:")
    assert first != second
