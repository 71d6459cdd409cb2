"""Structural validation shared by every CSV import path."""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from tally.core.config import ImportSettings
from tally.services.import_types import FieldError

_HEADER_SPACE_PATTERN = re.compile(r"\s+")


@dataclass(frozen=True)
class CsvRecord:
    """One non-blank data row; ``row_number`` is 1-based with the header as row 1."""

    row_number: int
    cells: Dict[str, str]

    def get(self, header: str) -> str:
        return self.cells.get(header, "")


@dataclass(frozen=True)
class ParsedCsv:
    headers: List[str]
    records: List[CsvRecord]


def normalize_header(label: Optional[str]) -> str:
    """Fold case and drop whitespace: ``" Market Value "`` -> ``"marketvalue"``."""

    return _HEADER_SPACE_PATTERN.sub("", (label or "").strip().lower())


def validate_csv_file_input(
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
) -> Optional[FieldError]:
    """Check size and type before any byte is decoded."""

    if not data:
        return FieldError(0, "file", "File is empty.")

    if len(data) > settings.max_upload_bytes:
        return FieldError(
            0, "file", f"File exceeds max size of {settings.max_upload_bytes} bytes."
        )

    suffix = Path(filename or "").suffix.lower()
    mime = (content_type or "").split(";", 1)[0].strip().lower()
    if suffix not in settings.accepted_formats and mime not in settings.accepted_mime_types:
        return FieldError(0, "file", "File must be a CSV.")

    return None


def decode_csv_bytes(data: bytes) -> Union[str, FieldError]:
    """Decode strictly as UTF-8; a leading byte-order mark is dropped."""

    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError:
        return FieldError(0, "file", "File must be valid UTF-8 text.")


def ensure_field_size_limit(max_bytes: int) -> None:
    """Let a single cell be as large as the whole upload.

    The ``csv`` module caps fields at 131072 characters by default, which is
    smaller than an accepted file. The limit is process-wide and only raised.
    """

    if csv.field_size_limit() < max_bytes:
        csv.field_size_limit(max_bytes)


def _tokenizer_error(row: int, exc: csv.Error) -> FieldError:
    code = "FieldTooLarge" if "field limit" in str(exc) else "InvalidQuotes"
    return FieldError(row, "file", f"CSV parse error [{code}]: {exc}")


def _field_mismatch(data_index: int, expected: int, parsed: int) -> FieldError:
    if parsed < expected:
        code, detail = "TooFewFields", "Too few fields"
    else:
        code, detail = "TooManyFields", "Too many fields"
    return FieldError(
        data_index + 2,
        "file",
        f"CSV parse error [{code}]: {detail}: expected {expected} fields but parsed {parsed}",
    )


def parse_csv_text(
    text: str,
    required: Sequence[str],
    optional: Sequence[str] = (),
    *,
    aliases: Optional[Mapping[str, str]] = None,
    allow_extra: bool = False,
) -> Union[ParsedCsv, FieldError]:
    """Split ``text`` into header-keyed records or return the first structural error.

    Parameters
    ----------
    text:
        Decoded file contents.
    required, optional:
        Canonical (already normalized) header names.
    aliases:
        Alternate normalized header names mapped onto canonical ones.
    allow_extra:
        Ignore headers outside ``required`` and ``optional`` instead of
        rejecting the file.

    Every cell is trimmed and fully blank lines are skipped. Checks run in a
    fixed order and the first failure wins: tokenizer errors, no data rows,
    duplicate headers, missing headers, unexpected headers.
    """

    if not text.strip():
        return FieldError(0, "file", "CSV file is empty.")

    alias_map = dict(aliases or {})
    reader = csv.reader(io.StringIO(text, newline=""), strict=True)

    headers: Optional[List[str]] = None
    raw_rows: List[List[str]] = []
    while True:
        try:
            raw = next(reader)
        except StopIteration:
            break
        except csv.Error as exc:
            return _tokenizer_error(len(raw_rows) + 1, exc)

        cells = [cell.strip() for cell in raw]
        if not any(cells):
            continue
        if headers is None:
            headers = [
                alias_map.get(normalize_header(cell), normalize_header(cell)) for cell in cells
            ]
            continue
        if len(cells) != len(headers):
            return _field_mismatch(len(raw_rows), len(headers), len(cells))
        raw_rows.append(cells)

    if headers is None or not raw_rows:
        return FieldError(0, "file", "CSV file is empty.")

    if len(set(headers)) != len(headers):
        return FieldError(1, "header", "Duplicate header detected.")

    header_set = set(headers)
    missing = [header for header in required if header not in header_set]
    if missing:
        return FieldError(1, "header", f"Missing required headers: {', '.join(missing)}.")

    if not allow_extra:
        allowed = set(required) | set(optional)
        extra = [header for header in headers if header not in allowed]
        if extra:
            return FieldError(1, "header", f"Unexpected headers: {', '.join(extra)}.")

    records = [
        CsvRecord(row_number=index + 2, cells=dict(zip(headers, cells)))
        for index, cells in enumerate(raw_rows)
    ]
    return ParsedCsv(headers=headers, records=records)


@dataclass(frozen=True)
class ExpenseCsvRow:
    row_number: int
    date: str
    description: str
    amount: str
    category: str = ""

    @classmethod
    def from_record(cls, record: CsvRecord) -> "ExpenseCsvRow":
        return cls(
            row_number=record.row_number,
            date=record.get("date"),
            description=record.get("description"),
            amount=record.get("amount"),
            category=record.get("category"),
        )


@dataclass(frozen=True)
class IncomeCsvRow:
    row_number: int
    date: str
    source: str
    amount: str

    @classmethod
    def from_record(cls, record: CsvRecord) -> "IncomeCsvRow":
        return cls(
            row_number=record.row_number,
            date=record.get("date"),
            source=record.get("source"),
            amount=record.get("amount"),
        )


@dataclass(frozen=True)
class PortfolioCsvRow:
    row_number: int
    symbol: str
    company_name: str
    market_value: str
    shares: str = ""
    exchange: str = ""
    currency: str = ""
    logo_url: str = ""

    @classmethod
    def from_record(cls, record: CsvRecord) -> "PortfolioCsvRow":
        return cls(
            row_number=record.row_number,
            symbol=record.get("symbol"),
            company_name=record.get("companyname"),
            market_value=record.get("marketvalue"),
            shares=record.get("shares"),
            exchange=record.get("exchange"),
            currency=record.get("currency"),
            logo_url=record.get("logourl"),
        )
