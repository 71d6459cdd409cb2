"""File-level orchestration: shape check, decode, structural parse, row validation.

A file either validates completely or fails with every row error collected;
nothing is persisted here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from tally.core.config import DEFAULT_CONFIG, ImportSettings
from tally.services.csv_utils import (
    ExpenseCsvRow,
    IncomeCsvRow,
    ParsedCsv,
    PortfolioCsvRow,
    decode_csv_bytes,
    ensure_field_size_limit,
    parse_csv_text,
    validate_csv_file_input,
)
from tally.services.import_types import FieldError, ImportFileFailure, ImportFileSuccess
from tally.services.row_validators import (
    PortfolioPosition,
    validate_expense_row,
    validate_income_row,
    validate_portfolio_row,
)

log = logging.getLogger(__name__)

EXPENSE_REQUIRED = ("date", "description", "amount")
EXPENSE_OPTIONAL = ("category",)
# Older exports label the description column "vendor".
EXPENSE_ALIASES = {"vendor": "description"}

INCOME_REQUIRED = ("date", "source", "amount")

PORTFOLIO_REQUIRED = ("symbol", "companyname", "marketvalue")
PORTFOLIO_OPTIONAL = ("exchange", "currency", "logourl", "shares")

ProcessResult = Union[ImportFileSuccess, ImportFileFailure]


def _parse_file(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
    required: Sequence[str],
    optional: Sequence[str] = (),
    aliases: Optional[Mapping[str, str]] = None,
    allow_extra: bool = False,
) -> Union[ParsedCsv, ImportFileFailure]:
    file_error = validate_csv_file_input(filename, content_type, data, settings)
    if file_error is not None:
        return ImportFileFailure([file_error])

    text = decode_csv_bytes(data)
    if isinstance(text, FieldError):
        return ImportFileFailure([text])

    ensure_field_size_limit(settings.max_upload_bytes)
    parsed = parse_csv_text(
        text, required, optional, aliases=aliases, allow_extra=allow_extra
    )
    if isinstance(parsed, FieldError):
        return ImportFileFailure([parsed])
    return parsed


def _row_failure(filename: str, errors: List[FieldError], total_rows: int) -> ImportFileFailure:
    log.debug("Rejected %s: %s of %s rows invalid", filename, len(errors), total_rows)
    return ImportFileFailure(errors, row_count_total=total_rows)


def _validate_all(records, validate) -> Tuple[List, List[FieldError]]:
    values = []
    errors: List[FieldError] = []
    for record in records:
        outcome = validate(record)
        if isinstance(outcome, FieldError):
            errors.append(outcome)
        else:
            values.append(outcome)
    return values, errors


def process_expense_file(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
) -> ProcessResult:
    parsed = _parse_file(
        filename,
        content_type,
        data,
        settings,
        EXPENSE_REQUIRED,
        EXPENSE_OPTIONAL,
        aliases=EXPENSE_ALIASES,
    )
    if isinstance(parsed, ImportFileFailure):
        return parsed

    rows = [ExpenseCsvRow.from_record(record) for record in parsed.records]
    values, errors = _validate_all(
        rows,
        lambda row: validate_expense_row(
            row, settings.keyword_rules, settings.currency, settings.fallback_category
        ),
    )
    if errors:
        return _row_failure(filename, errors, len(rows))
    return ImportFileSuccess(rows=values, total_rows=len(rows))


def process_income_file(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
) -> ProcessResult:
    parsed = _parse_file(filename, content_type, data, settings, INCOME_REQUIRED)
    if isinstance(parsed, ImportFileFailure):
        return parsed

    rows = [IncomeCsvRow.from_record(record) for record in parsed.records]
    values, errors = _validate_all(
        rows, lambda row: validate_income_row(row, settings.currency)
    )
    if errors:
        return _row_failure(filename, errors, len(rows))
    return ImportFileSuccess(rows=values, total_rows=len(rows))


def fold_positions(positions: Sequence[PortfolioPosition]) -> List[PortfolioPosition]:
    """Collapse repeated symbols into one position, keeping first-seen order.

    Market value and shares add up. The later row's company name wins, and
    its exchange, currency or logo win only when present.
    """

    by_symbol: Dict[str, PortfolioPosition] = {}
    for position in positions:
        existing = by_symbol.get(position.symbol)
        if existing is None:
            by_symbol[position.symbol] = replace(position)
            continue
        existing.market_value_cents += position.market_value_cents
        existing.shares_micros += position.shares_micros
        existing.company_name = position.company_name
        existing.exchange = position.exchange or existing.exchange
        existing.currency = position.currency or existing.currency
        existing.logo_url = position.logo_url or existing.logo_url
    return list(by_symbol.values())


def process_portfolio_file(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
) -> ProcessResult:
    # Brokerage exports carry many extra columns; they are ignored here.
    parsed = _parse_file(
        filename,
        content_type,
        data,
        settings,
        PORTFOLIO_REQUIRED,
        PORTFOLIO_OPTIONAL,
        allow_extra=True,
    )
    if isinstance(parsed, ImportFileFailure):
        return parsed

    rows = [PortfolioCsvRow.from_record(record) for record in parsed.records]
    values, errors = _validate_all(rows, validate_portfolio_row)
    if errors:
        return _row_failure(filename, errors, len(rows))

    folded = fold_positions(values)
    return ImportFileSuccess(
        rows=folded, total_rows=len(rows), unique_symbols=len(folded)
    )


@dataclass(frozen=True)
class FileProcessor:
    id: str
    label: str
    description: str
    accepted_extensions: Tuple[str, ...]
    accepted_mime_types: Tuple[str, ...]
    process: Callable[[str, Optional[str], bytes, ImportSettings], ProcessResult]

    @property
    def accept(self) -> str:
        """Value for an HTML ``accept`` attribute."""

        return ",".join(self.accepted_extensions + self.accepted_mime_types)

    def describe(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "accepted_extensions": list(self.accepted_extensions),
            "accepted_mime_types": list(self.accepted_mime_types),
            "accept": self.accept,
        }


_CSV_EXTENSIONS = tuple(DEFAULT_CONFIG["import"]["accepted_formats"])
_CSV_MIME_TYPES = tuple(DEFAULT_CONFIG["import"]["accepted_mime_types"])

_PROCESSORS: Dict[str, FileProcessor] = {
    processor.id: processor
    for processor in (
        FileProcessor(
            id="generic-csv",
            label="Generic CSV",
            description="CSV with headers date,description,amount and optional category (date in MM-DD-YYYY)",
            accepted_extensions=_CSV_EXTENSIONS,
            accepted_mime_types=_CSV_MIME_TYPES,
            process=process_expense_file,
        ),
        FileProcessor(
            id="income-csv",
            label="Income CSV",
            description="CSV with headers date,source,amount (date in MM-DD-YYYY)",
            accepted_extensions=_CSV_EXTENSIONS,
            accepted_mime_types=_CSV_MIME_TYPES,
            process=process_income_file,
        ),
        FileProcessor(
            id="portfolio-csv",
            label="Portfolio holdings CSV",
            description="Brokerage holdings with symbol,companyName,marketValue; extra columns are ignored",
            accepted_extensions=_CSV_EXTENSIONS,
            accepted_mime_types=_CSV_MIME_TYPES,
            process=process_portfolio_file,
        ),
    )
}

PROCESSOR_FOR_KIND = {
    "expense": "generic-csv",
    "income": "income-csv",
    "portfolio": "portfolio-csv",
}


def get_processor(processor_id: str) -> Optional[FileProcessor]:
    return _PROCESSORS.get(processor_id)


def processor_for_kind(kind: str) -> FileProcessor:
    processor_id = PROCESSOR_FOR_KIND.get(kind)
    processor = get_processor(processor_id) if processor_id else None
    if processor is None:
        raise ValueError(f"Unsupported import kind: {kind}")
    return processor


def list_processors() -> List[FileProcessor]:
    return list(_PROCESSORS.values())
