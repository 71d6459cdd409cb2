"""Persistence for portfolio snapshots and holdings imports."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from tally.core.config import DEFAULT_CONFIG
from tally.core.models import (
    Portfolio,
    PortfolioImportFile,
    PortfolioSnapshot,
    PortfolioSnapshotPosition,
    Security,
)
from tally.services.dates import parse_strict_date
from tally.services.portfolio_merge import TOTAL_BPS, WeightedPosition, merge_portfolio_positions
from tally.services.row_validators import PortfolioPosition

log = logging.getLogger(__name__)

DEFAULT_PORTFOLIO_NAME = DEFAULT_CONFIG["portfolio"]["default_name"]
DEFAULT_BASE_CURRENCY = DEFAULT_CONFIG["portfolio"]["base_currency"]
DEFAULT_SECURITY_CURRENCY = DEFAULT_CONFIG["portfolio"]["security_currency"]

SNAPSHOT_SOURCES = ("manual", "import")


class SnapshotValidationError(ValueError):
    """Raised when a snapshot payload breaks a structural rule."""

    def __init__(self, message: str, code: str = "invalid_snapshot") -> None:
        super().__init__(message)
        self.code = code


class DuplicatePortfolioImportError(ValueError):
    """Raised when the same filename is imported twice for one as-of date."""

    def __init__(self, message: str = "This file was already imported for this portfolio/date.") -> None:
        super().__init__(message)
        self.code = "duplicate_portfolio_import"


def get_or_create_default_portfolio(
    db: Session,
    name: str = DEFAULT_PORTFOLIO_NAME,
    base_currency: str = DEFAULT_BASE_CURRENCY,
) -> Portfolio:
    portfolio = db.query(Portfolio).filter(Portfolio.name == name).first()
    if portfolio is not None:
        return portfolio

    portfolio = Portfolio(name=name, base_currency=base_currency)
    try:
        db.add(portfolio)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    log.info("Created default portfolio %r", name)
    return portfolio


def validate_snapshot_positions(positions: Sequence[WeightedPosition]) -> None:
    symbols = set()
    for position in positions:
        symbol = position.symbol.strip().upper()
        if not symbol:
            raise SnapshotValidationError("Position symbol is required.", "missing_symbol")
        if not position.company_name.strip():
            raise SnapshotValidationError(
                "Position companyName is required.", "missing_company_name"
            )
        if symbol in symbols:
            raise SnapshotValidationError(
                f"Duplicate symbol in snapshot payload: {symbol}", "duplicate_symbol"
            )
        symbols.add(symbol)
        if position.market_value_cents < 0 or position.shares_micros < 0:
            raise SnapshotValidationError(
                "Market value and shares must be non-negative integers.", "negative_value"
            )
        if not 0 <= position.weight_bps <= TOTAL_BPS:
            raise SnapshotValidationError(
                "weightBps must be an integer between 0 and 10000.", "invalid_weight"
            )

    total_bps = sum(position.weight_bps for position in positions)
    if positions and abs(total_bps - TOTAL_BPS) > 1:
        raise SnapshotValidationError(
            f"Snapshot weights must total 10000 bps (+/-1). Received {total_bps}.",
            "weights_total",
        )


def _upsert_securities(
    db: Session,
    positions: Sequence[WeightedPosition],
    default_currency: str,
) -> Dict[str, Security]:
    symbols = [position.symbol.strip().upper() for position in positions]
    existing = db.query(Security).filter(Security.symbol.in_(symbols)).all() if symbols else []
    by_symbol = {security.symbol: security for security in existing}

    now = datetime.utcnow()
    for position, symbol in zip(positions, symbols):
        security = by_symbol.get(symbol)
        if security is None:
            security = Security(symbol=symbol)
            db.add(security)
            by_symbol[symbol] = security
        security.company_name = position.company_name.strip()
        security.exchange = (position.exchange or "").strip() or None
        security.currency = (position.currency or "").strip().upper() or default_currency
        security.logo_url = (position.logo_url or "").strip() or None
        security.is_active = True
        security.updated_at = now
    db.flush()
    return by_symbol


def upsert_snapshot_with_positions(
    db: Session,
    as_of_date: str,
    positions: Sequence[WeightedPosition],
    source: str = "manual",
    *,
    portfolio: Optional[Portfolio] = None,
    default_security_currency: str = DEFAULT_SECURITY_CURRENCY,
    commit: bool = True,
) -> Dict[str, Any]:
    """Replace the position set of the portfolio's snapshot for ``as_of_date``.

    Securities are upserted by symbol and the snapshot row is created when
    missing. With ``commit=False`` the caller owns the transaction.
    """

    if source not in SNAPSHOT_SOURCES:
        raise SnapshotValidationError(f"Unknown snapshot source: {source}", "invalid_source")
    validate_snapshot_positions(positions)

    portfolio = portfolio or get_or_create_default_portfolio(db)
    total_market_value_cents = sum(position.market_value_cents for position in positions)

    try:
        securities = _upsert_securities(db, positions, default_security_currency)

        snapshot = (
            db.query(PortfolioSnapshot)
            .filter(
                PortfolioSnapshot.portfolio_id == portfolio.id,
                PortfolioSnapshot.as_of_date == as_of_date,
            )
            .first()
        )
        if snapshot is None:
            snapshot = PortfolioSnapshot(portfolio_id=portfolio.id, as_of_date=as_of_date)
            db.add(snapshot)
        snapshot.total_market_value_cents = total_market_value_cents
        snapshot.source = source
        db.flush()

        db.query(PortfolioSnapshotPosition).filter(
            PortfolioSnapshotPosition.snapshot_id == snapshot.id
        ).delete(synchronize_session=False)

        for index, position in enumerate(positions):
            security = securities[position.symbol.strip().upper()]
            db.add(
                PortfolioSnapshotPosition(
                    snapshot_id=snapshot.id,
                    security_id=security.id,
                    shares_micros=position.shares_micros,
                    market_value_cents=position.market_value_cents,
                    weight_bps=position.weight_bps,
                    sort_order=position.sort_order if position.sort_order is not None else index,
                )
            )

        if commit:
            db.commit()
        else:
            db.flush()
    except SQLAlchemyError:
        db.rollback()
        raise

    return {
        "portfolio_id": portfolio.id,
        "snapshot_id": snapshot.id,
        "total_market_value_cents": total_market_value_cents,
        "position_count": len(positions),
    }


def load_snapshot_positions(db: Session, snapshot_id: int) -> List[PortfolioPosition]:
    rows = (
        db.query(PortfolioSnapshotPosition, Security)
        .join(Security, PortfolioSnapshotPosition.security_id == Security.id)
        .filter(PortfolioSnapshotPosition.snapshot_id == snapshot_id)
        .order_by(PortfolioSnapshotPosition.sort_order.asc())
        .all()
    )
    return [
        PortfolioPosition(
            symbol=security.symbol,
            company_name=security.company_name,
            market_value_cents=position.market_value_cents,
            shares_micros=position.shares_micros,
            exchange=security.exchange,
            currency=security.currency,
            logo_url=security.logo_url,
        )
        for position, security in rows
    ]


def _mark_import_failed(db: Session, import_file_id: int, message: str) -> None:
    import_file = db.get(PortfolioImportFile, import_file_id)
    if import_file is None:
        return
    import_file.status = "failed"
    import_file.error_message = message
    db.commit()


def merge_snapshot_positions_from_import(
    db: Session,
    filename: str,
    as_of_date: str,
    positions: Sequence[PortfolioPosition],
    row_count: int,
    *,
    portfolio_name: str = DEFAULT_PORTFOLIO_NAME,
    base_currency: str = DEFAULT_BASE_CURRENCY,
    default_security_currency: str = DEFAULT_SECURITY_CURRENCY,
) -> Dict[str, Any]:
    """Merge imported holdings into the snapshot for ``as_of_date``.

    A filename already imported for the same date is rejected with
    :class:`DuplicatePortfolioImportError` so re-uploads never double-count.
    The import is tracked by a :class:`PortfolioImportFile` row that moves
    from ``processing`` to ``succeeded`` together with the snapshot write, or
    to ``failed`` when the write is rolled back.
    """

    filename = (filename or "").strip()
    if not filename:
        raise SnapshotValidationError("Filename is required.", "missing_filename")
    if parse_strict_date(as_of_date) is None:
        raise SnapshotValidationError(
            "asOfDate must be a valid ISO date (YYYY-MM-DD).", "invalid_date"
        )
    if row_count < 1:
        raise SnapshotValidationError("rowCount must be a positive integer.", "invalid_row_count")

    portfolio = get_or_create_default_portfolio(db, portfolio_name, base_currency)

    already_imported = (
        db.query(PortfolioImportFile.id)
        .filter(
            PortfolioImportFile.portfolio_id == portfolio.id,
            PortfolioImportFile.as_of_date == as_of_date,
            PortfolioImportFile.filename == filename,
        )
        .first()
    )
    if already_imported is not None:
        raise DuplicatePortfolioImportError()

    import_file = PortfolioImportFile(
        portfolio_id=portfolio.id,
        as_of_date=as_of_date,
        filename=filename,
        row_count=row_count,
        status="processing",
    )
    try:
        db.add(import_file)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise DuplicatePortfolioImportError() from exc
    import_file_id = import_file.id

    try:
        snapshot = (
            db.query(PortfolioSnapshot)
            .filter(
                PortfolioSnapshot.portfolio_id == portfolio.id,
                PortfolioSnapshot.as_of_date == as_of_date,
            )
            .first()
        )
        existing = load_snapshot_positions(db, snapshot.id) if snapshot is not None else []
        merged = merge_portfolio_positions(existing, positions)

        result = upsert_snapshot_with_positions(
            db,
            as_of_date,
            merged,
            source="import",
            portfolio=portfolio,
            default_security_currency=default_security_currency,
            commit=False,
        )
        import_file.status = "succeeded"
        import_file.error_message = None
        db.commit()
    except (SQLAlchemyError, SnapshotValidationError) as exc:
        db.rollback()
        _mark_import_failed(db, import_file_id, str(exc) or type(exc).__name__)
        raise

    log.info(
        "Merged portfolio import (filename=%s, as_of_date=%s, rows=%s, positions=%s)",
        filename,
        as_of_date,
        row_count,
        len(merged),
    )
    return {
        **result,
        "imported_rows": row_count,
        "merged_symbols": len(merged),
    }


def list_latest_breakdown(
    db: Session,
    portfolio_name: str = DEFAULT_PORTFOLIO_NAME,
    base_currency: str = DEFAULT_BASE_CURRENCY,
) -> Dict[str, Any]:
    portfolio = get_or_create_default_portfolio(db, portfolio_name, base_currency)
    portfolio_view = {
        "id": portfolio.id,
        "name": portfolio.name,
        "base_currency": portfolio.base_currency,
    }

    snapshot = (
        db.query(PortfolioSnapshot)
        .filter(PortfolioSnapshot.portfolio_id == portfolio.id)
        .order_by(PortfolioSnapshot.as_of_date.desc(), PortfolioSnapshot.created_at.desc())
        .first()
    )
    if snapshot is None:
        return {"portfolio": portfolio_view, "snapshot": None, "positions": []}

    rows = (
        db.query(PortfolioSnapshotPosition, Security)
        .join(Security, PortfolioSnapshotPosition.security_id == Security.id)
        .filter(PortfolioSnapshotPosition.snapshot_id == snapshot.id)
        .order_by(
            PortfolioSnapshotPosition.weight_bps.desc(),
            PortfolioSnapshotPosition.sort_order.asc(),
            Security.symbol.asc(),
        )
        .all()
    )
    positions = [
        {
            "symbol": security.symbol,
            "company_name": security.company_name,
            "exchange": security.exchange,
            "currency": security.currency,
            "logo_url": security.logo_url,
            "shares_micros": position.shares_micros,
            "market_value_cents": position.market_value_cents,
            "weight_bps": position.weight_bps,
            "weight_percent": position.weight_bps / 100,
            "sort_order": position.sort_order,
        }
        for position, security in rows
    ]
    return {
        "portfolio": portfolio_view,
        "snapshot": {
            "id": snapshot.id,
            "as_of_date": snapshot.as_of_date,
            "total_market_value_cents": snapshot.total_market_value_cents,
            "source": snapshot.source,
        },
        "positions": positions,
    }
