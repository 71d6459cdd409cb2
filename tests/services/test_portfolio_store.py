import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

import pytest  # noqa: E402

from tally.core import database  # noqa: E402
from tally.core.models import (  # noqa: E402
    PortfolioImportFile,
    PortfolioSnapshot,
    PortfolioSnapshotPosition,
    Security,
)
from tally.core.seed import ensure_seed  # noqa: E402
from tally.services.portfolio_merge import WeightedPosition  # noqa: E402
from tally.services.portfolio_store import (  # noqa: E402
    DuplicatePortfolioImportError,
    SnapshotValidationError,
    list_latest_breakdown,
    merge_snapshot_positions_from_import,
    upsert_snapshot_with_positions,
    validate_snapshot_positions,
)
from tally.services.row_validators import PortfolioPosition  # noqa: E402


@pytest.fixture
def session(tmp_path):
    ensure_seed(str(tmp_path / "data" / "tally.db"))
    try:
        with database.SessionLocal() as db_session:
            yield db_session
    finally:
        database.dispose_engine()


def _holding(symbol, value, company_name=None, **kwargs):
    return PortfolioPosition(
        symbol=symbol,
        company_name=company_name or f"{symbol} Inc",
        market_value_cents=value,
        **kwargs,
    )


def _weighted(symbol, value, weight_bps, company_name="Company"):
    return WeightedPosition(
        symbol=symbol,
        company_name=company_name,
        market_value_cents=value,
        weight_bps=weight_bps,
    )


def test_first_import_creates_snapshot_with_weights(session):
    result = merge_snapshot_positions_from_import(
        session,
        "holdings.csv",
        "2025-03-31",
        [_holding("AAPL", 10_000), _holding("MSFT", 15_000)],
        row_count=2,
    )

    assert result["position_count"] == 2
    assert result["total_market_value_cents"] == 25_000
    assert result["imported_rows"] == 2

    breakdown = list_latest_breakdown(session)
    assert breakdown["snapshot"]["as_of_date"] == "2025-03-31"
    assert breakdown["snapshot"]["source"] == "import"
    assert [(p["symbol"], p["weight_bps"], p["weight_percent"]) for p in breakdown["positions"]] == [
        ("MSFT", 6000, 60.0),
        ("AAPL", 4000, 40.0),
    ]
    status = session.query(PortfolioImportFile.status).scalar()
    assert status == "succeeded"


def test_second_file_for_same_date_merges_into_snapshot(session):
    merge_snapshot_positions_from_import(
        session, "broker-a.csv", "2025-03-31", [_holding("AAPL", 10_000)], row_count=1
    )
    merge_snapshot_positions_from_import(
        session,
        "broker-b.csv",
        "2025-03-31",
        [_holding("aapl", 5_000, company_name="Apple"), _holding("VOO", 5_000, exchange="ARCA")],
        row_count=2,
    )

    assert session.query(PortfolioSnapshot).count() == 1
    positions = {p["symbol"]: p for p in list_latest_breakdown(session)["positions"]}
    assert positions["AAPL"]["market_value_cents"] == 15_000
    assert positions["AAPL"]["company_name"] == "Apple"
    assert positions["VOO"]["exchange"] == "ARCA"
    assert positions["VOO"]["currency"] == "USD"
    assert sum(p["weight_bps"] for p in positions.values()) == 10_000
    assert session.query(PortfolioSnapshotPosition).count() == 2
    assert session.query(Security).count() == 2


def test_same_file_for_same_date_is_rejected(session):
    merge_snapshot_positions_from_import(
        session, "holdings.csv", "2025-03-31", [_holding("AAPL", 10_000)], row_count=1
    )

    with pytest.raises(DuplicatePortfolioImportError) as exc_info:
        merge_snapshot_positions_from_import(
            session, "holdings.csv", "2025-03-31", [_holding("AAPL", 10_000)], row_count=1
        )

    assert exc_info.value.code == "duplicate_portfolio_import"
    positions = list_latest_breakdown(session)["positions"]
    assert positions[0]["market_value_cents"] == 10_000
    assert session.query(PortfolioImportFile).count() == 1


def test_same_file_for_another_date_creates_new_snapshot(session):
    merge_snapshot_positions_from_import(
        session, "holdings.csv", "2025-03-31", [_holding("AAPL", 10_000)], row_count=1
    )
    merge_snapshot_positions_from_import(
        session, "holdings.csv", "2025-04-30", [_holding("AAPL", 12_000)], row_count=1
    )

    breakdown = list_latest_breakdown(session)
    assert breakdown["snapshot"]["as_of_date"] == "2025-04-30"
    assert breakdown["positions"][0]["market_value_cents"] == 12_000
    assert session.query(PortfolioSnapshot).count() == 2


@pytest.mark.parametrize(
    "filename, as_of_date, row_count, code",
    [
        ("", "2025-03-31", 1, "missing_filename"),
        ("a.csv", "2025-02-30", 1, "invalid_date"),
        ("a.csv", "03-31-2025", 1, "invalid_date"),
        ("a.csv", "2025-03-31", 0, "invalid_row_count"),
    ],
)
def test_merge_rejects_bad_arguments(session, filename, as_of_date, row_count, code):
    with pytest.raises(SnapshotValidationError) as exc_info:
        merge_snapshot_positions_from_import(
            session, filename, as_of_date, [_holding("AAPL", 1)], row_count=row_count
        )

    assert exc_info.value.code == code
    assert session.query(PortfolioImportFile).count() == 0


def test_breakdown_without_snapshot_is_empty(session):
    breakdown = list_latest_breakdown(session)

    assert breakdown["portfolio"]["name"] == "My Portfolio"
    assert breakdown["snapshot"] is None
    assert breakdown["positions"] == []


def test_manual_upsert_replaces_positions(session):
    upsert_snapshot_with_positions(
        session, "2025-01-31", [_weighted("AAA", 100, 5000), _weighted("BBB", 100, 5000)]
    )
    result = upsert_snapshot_with_positions(session, "2025-01-31", [_weighted("CCC", 300, 10_000)])

    assert result["position_count"] == 1
    symbols = [p["symbol"] for p in list_latest_breakdown(session)["positions"]]
    assert symbols == ["CCC"]


@pytest.mark.parametrize(
    "positions, code",
    [
        ([_weighted("", 1, 10_000)], "missing_symbol"),
        ([_weighted("AAA", 1, 10_000, company_name=" ")], "missing_company_name"),
        ([_weighted("AAA", 1, 5000), _weighted("aaa", 1, 5000)], "duplicate_symbol"),
        ([_weighted("AAA", -1, 10_000)], "negative_value"),
        ([_weighted("AAA", 1, 10_001)], "invalid_weight"),
        ([_weighted("AAA", 1, 4000), _weighted("BBB", 1, 4000)], "weights_total"),
    ],
)
def test_snapshot_validation_rules(positions, code):
    with pytest.raises(SnapshotValidationError) as exc_info:
        validate_snapshot_positions(positions)

    assert exc_info.value.code == code


def test_weights_within_one_basis_point_are_accepted():
    validate_snapshot_positions([_weighted("AAA", 1, 4999), _weighted("BBB", 1, 5000)])
