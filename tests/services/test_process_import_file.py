import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

import pytest  # noqa: E402

from tally.core.config import ImportSettings  # noqa: E402
from tally.services.import_types import ImportFileFailure, ImportFileSuccess  # noqa: E402
from tally.services.process_import_file import (  # noqa: E402
    fold_positions,
    get_processor,
    list_processors,
    process_expense_file,
    process_income_file,
    process_portfolio_file,
    processor_for_kind,
)
from tally.services.row_validators import PortfolioPosition  # noqa: E402

SETTINGS = ImportSettings()


def test_process_expense_file_accepts_vendor_header_example():
    data = (
        "date,vendor,amount,category\n"
        "01-01-2025,Store A,$10.00,Food\n"
        "01-02-2025,Store B,20.50,Transport"
    ).encode("utf-8")

    result = process_expense_file("expenses.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileSuccess)
    assert result.status == "succeeded"
    assert result.total_rows == 2
    assert result.rows[0].amount_cents == 1000
    assert result.rows[1].description == "Store B"


def test_long_cell_within_upload_limit_reaches_row_validation():
    long_description = "x" * 200_000
    data = f"date,description,amount\n01-01-2025,{long_description},1.00\n".encode("utf-8")

    result = process_expense_file("long.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileFailure)
    assert [(error.row, error.field) for error in result.errors] == [(2, "description")]
    assert result.errors[0].message == "Description exceeds maximum length of 150 characters."


def test_process_expense_file_collects_every_row_error():
    data = (
        "date,description,amount\n"
        "01-01-2025,Good,1.00\n"
        "02-30-2025,Bad date,1.00\n"
        "01-03-2025,,1.00\n"
        "01-04-2025,Bad amount,1e3\n"
    ).encode("utf-8")

    result = process_expense_file("expenses.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileFailure)
    assert result.status == "failed"
    assert result.row_count_total == 4
    assert [(error.row, error.field) for error in result.errors] == [
        (3, "date"),
        (4, "description"),
        (5, "amount"),
    ]


def test_process_expense_file_stops_at_file_level_errors():
    not_csv = process_expense_file("notes.txt", "text/plain", b"date,description,amount", SETTINGS)
    bad_utf8 = process_expense_file("x.csv", "text/csv", b"\xff\xfe\x00", SETTINGS)
    extra = process_expense_file(
        "x.csv", "text/csv", b"date,description,amount,memo\n01-01-2025,A,1,x\n", SETTINGS
    )

    assert not_csv.first_message == "File must be a CSV."
    assert bad_utf8.first_message == "File must be valid UTF-8 text."
    assert extra.first_message == "Unexpected headers: memo."
    assert extra.row_count_total is None


def test_process_expense_file_uses_configured_currency_and_rules():
    settings = ImportSettings(currency="USD", fallback_category="Misc", keyword_rules=())
    data = b"date,description,amount\n01-01-2025,Costco,5\n"

    result = process_expense_file("x.csv", "text/csv", data, settings)

    assert result.rows[0].currency == "USD"
    assert result.rows[0].category == "Misc"


def test_process_income_file_rejects_category_column():
    data = b"date,source,amount,category\n01-01-2025,Payroll,5,Work\n"

    result = process_income_file("income.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileFailure)
    assert result.first_message == "Unexpected headers: category."


def test_process_income_file_success():
    data = b"Date,Source,Amount\n01-15-2025,Payroll,\"2,000.00\"\n01-31-2025,,15\n"

    result = process_income_file("income.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileSuccess)
    assert [row.source for row in result.rows] == ["Payroll", "Other"]
    assert result.rows[0].amount_cents == 200000


def test_process_portfolio_file_folds_repeated_symbols_and_ignores_extras():
    data = (
        "Symbol,Company Name,Market Value,Exchange,Account\n"
        "aapl,Apple,100.00,NASDAQ,TFSA\n"
        "MSFT,Microsoft,50,NASDAQ,TFSA\n"
        "AAPL,Apple Inc.,25.005,,RRSP\n"
    ).encode("utf-8")

    result = process_portfolio_file("holdings.csv", "text/csv", data, SETTINGS)

    assert isinstance(result, ImportFileSuccess)
    assert result.total_rows == 3
    assert result.unique_symbols == 2
    apple = result.rows[0]
    assert apple.symbol == "AAPL"
    assert apple.market_value_cents == 12501
    assert apple.company_name == "Apple Inc."
    assert apple.exchange == "NASDAQ"


def test_process_portfolio_file_requires_core_headers():
    result = process_portfolio_file("h.csv", "text/csv", b"symbol,marketvalue\nA,1\n", SETTINGS)

    assert result.first_message == "Missing required headers: companyname."


def test_fold_positions_does_not_mutate_inputs():
    first = PortfolioPosition(symbol="A", company_name="A Co", market_value_cents=10, logo_url="x")
    second = PortfolioPosition(symbol="A", company_name="A Corp", market_value_cents=5)

    folded = fold_positions([first, second])

    assert folded[0].market_value_cents == 15
    assert folded[0].logo_url == "x"
    assert first.market_value_cents == 10


def test_processor_registry_describes_each_kind():
    ids = [processor.id for processor in list_processors()]

    assert ids == ["generic-csv", "income-csv", "portfolio-csv"]
    assert get_processor("generic-csv").process is process_expense_file
    assert processor_for_kind("income").process is process_income_file
    assert get_processor("generic-csv").accept == (
        ".csv,text/csv,application/csv,application/vnd.ms-excel"
    )
    assert get_processor("missing") is None
    with pytest.raises(ValueError):
        processor_for_kind("transfers")


def test_processor_catalog_matches_default_upload_settings():
    for processor in list_processors():
        assert processor.accepted_extensions == SETTINGS.accepted_formats
        assert processor.accepted_mime_types == SETTINGS.accepted_mime_types
        assert "application/csv" in processor.describe()["accepted_mime_types"]
