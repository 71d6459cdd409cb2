from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


IMPORT_KINDS = ("expense", "income")


class Base(DeclarativeBase):
    pass


class Meta(Base):
    __tablename__ = "meta"
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(String)


class ImportRecord(Base):
    """Audit row written once for every uploaded expense/income file."""

    __tablename__ = "imports"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    row_count_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_count_inserted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    row_count_duplicates: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # succeeded/failed
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(16), default="expense", nullable=False)  # expense/income


class Expense(Base):
    __tablename__ = "expenses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    txn_date: Mapped[str] = mapped_column(String, index=True)  # YYYY-MM-DD
    description: Mapped[str] = mapped_column(String(150), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(150), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CAD", nullable=False)
    # Sole dedup boundary: two imports can race past the existence check,
    # the loser fails here at commit time.
    fingerprint: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    import_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("imports.id", ondelete="CASCADE"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Income(Base):
    __tablename__ = "incomes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    income_date: Mapped[str] = mapped_column(String, index=True)  # YYYY-MM-DD
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(150), default="Other", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="CAD", nullable=False)
    fingerprint: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    import_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("imports.id", ondelete="CASCADE"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ImportDuplicate(Base):
    """A row held back at import time because its fingerprint was taken."""

    __tablename__ = "import_duplicates"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    import_id: Mapped[int] = mapped_column(
        ForeignKey("imports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    txn_date: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(String(150), nullable=False)  # source for income
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="CAD", nullable=False)
    fingerprint: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(String(16), nullable=False)  # cross_import/within_file
    kind: Mapped[str] = mapped_column(String(16), default="expense", nullable=False)


class Portfolio(Base):
    __tablename__ = "portfolios"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), default="CAD", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class Security(Base):
    __tablename__ = "securities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    company_name: Mapped[str] = mapped_column(String(150), nullable=False)
    exchange: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    logo_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class PortfolioSnapshot(Base):
    __tablename__ = "portfolio_snapshots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    as_of_date: Mapped[str] = mapped_column(String, nullable=False)  # YYYY-MM-DD
    total_market_value_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    source: Mapped[str] = mapped_column(String(16), default="manual", nullable=False)  # manual/import
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    __table_args__ = (
        UniqueConstraint("portfolio_id", "as_of_date", name="uix_snapshot_portfolio_date"),
    )


class PortfolioSnapshotPosition(Base):
    __tablename__ = "portfolio_snapshot_positions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[int] = mapped_column(
        ForeignKey("portfolio_snapshots.id", ondelete="CASCADE"), nullable=False
    )
    security_id: Mapped[int] = mapped_column(ForeignKey("securities.id"), nullable=False)
    shares_micros: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    market_value_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    weight_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    __table_args__ = (
        UniqueConstraint("snapshot_id", "security_id", name="uix_position_snapshot_security"),
        Index("ix_position_snapshot_weight", "snapshot_id", "weight_bps"),
    )


class PortfolioImportFile(Base):
    __tablename__ = "portfolio_import_files"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolios.id"), nullable=False)
    as_of_date: Mapped[str] = mapped_column(String, nullable=False)
    filename: Mapped[str] = mapped_column(String, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="processing", nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    __table_args__ = (
        UniqueConstraint("portfolio_id", "as_of_date", "filename", name="uix_portfolio_import_file"),
    )
