"""Dedup-aware persistence of validated expense and income files.

Every processed file leaves exactly one :class:`ImportRecord`. A file that
fails validation gets a ``failed`` record written in its own transaction.
A valid file is partitioned into new rows and duplicates, then the audit
record, the new rows and the duplicate rows are committed together.

The fingerprint existence check and the insert are not serialized across
requests. Two concurrent uploads sharing rows can both pass the check; the
UNIQUE fingerprint column rejects the loser at commit time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tally.core import cache_tags
from tally.core.config import ImportSettings
from tally.core.models import Expense, ImportDuplicate, ImportRecord, Income
from tally.core.utils import chunked
from tally.services.fingerprint import rescue_fingerprint
from tally.services.import_types import (
    FAILED,
    SUCCEEDED,
    FieldError,
    ImportFileFailure,
)
from tally.services.process_import_file import processor_for_kind
from tally.services.row_validators import ValidatedExpense, ValidatedIncome

log = logging.getLogger(__name__)

EXPENSE = "expense"
INCOME = "income"

CROSS_IMPORT = "cross_import"
WITHIN_FILE = "within_file"

PARTIAL = "partial"

UPLOAD_FAILED_MESSAGE = "Upload failed. Try again."

ValidatedRow = Union[ValidatedExpense, ValidatedIncome]

_RECORD_MODELS = {EXPENSE: Expense, INCOME: Income}
_DATA_TAGS = {EXPENSE: cache_tags.EXPENSES, INCOME: cache_tags.INCOME}


class ImportNotFoundError(ValueError):
    """Raised when an operation names an import id that does not exist."""

    def __init__(self, import_id: int) -> None:
        super().__init__("Import not found.")
        self.code = "import_not_found"
        self.import_id = import_id


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: Optional[str]
    data: bytes


@dataclass
class ImportSummary:
    import_id: int
    filename: str
    total_rows: int
    inserted_rows: int
    duplicate_rows: int
    status: str = SUCCEEDED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "status": self.status,
            "import_id": self.import_id,
            "total_rows": self.total_rows,
            "inserted_rows": self.inserted_rows,
            "duplicate_rows": self.duplicate_rows,
        }


@dataclass
class BatchUploadResult:
    status: str = FAILED
    files: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[FieldError] = field(default_factory=list)
    total_rows: int = 0
    inserted_rows: int = 0
    duplicate_rows: int = 0
    invalidated_tags: List[str] = field(default_factory=list)

    @property
    def succeeded_files(self) -> int:
        return sum(1 for item in self.files if item.get("status") == SUCCEEDED)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "total_files": len(self.files),
            "succeeded_files": self.succeeded_files,
            "failed_files": len(self.files) - self.succeeded_files,
            "total_rows": self.total_rows,
            "inserted_rows": self.inserted_rows,
            "duplicate_rows": self.duplicate_rows,
            "files": self.files,
            "errors": [error.as_dict() for error in self.errors],
        }


@dataclass
class DeleteImportResult:
    status: str
    import_id: int
    deleted_record_count: int = 0
    error: Optional[str] = None
    invalidated_tags: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        if self.status != SUCCEEDED:
            return {"status": self.status, "error": self.error}
        return {
            "status": self.status,
            "import_id": self.import_id,
            "deleted_record_count": self.deleted_record_count,
        }


def _record_model(kind: str):
    try:
        return _RECORD_MODELS[kind]
    except KeyError:
        raise ValueError(f"Unsupported import kind: {kind}") from None


def tags_for_kind(kind: str) -> List[str]:
    """Read sets made stale by a committed write of ``kind`` records."""

    return [_DATA_TAGS[kind], cache_tags.IMPORTS]


def find_existing_fingerprints(
    db: Session,
    kind: str,
    fingerprints: Iterable[str],
    batch_size: int = 500,
) -> Set[str]:
    """Return the subset of ``fingerprints`` already stored for ``kind``.

    The lookup runs in batches of ``batch_size`` to bound the number of
    bound parameters per query.
    """

    model = _record_model(kind)
    unique = list(dict.fromkeys(fingerprints))
    existing: Set[str] = set()
    for batch in chunked(unique, batch_size):
        rows = db.query(model.fingerprint).filter(model.fingerprint.in_(batch)).all()
        existing.update(row[0] for row in rows)
    return existing


def partition_rows(
    rows: Sequence[ValidatedRow],
    existing: Set[str],
) -> Tuple[List[ValidatedRow], List[Tuple[ValidatedRow, str]]]:
    """Split ``rows`` in order into new rows and ``(row, reason)`` duplicates."""

    new_rows: List[ValidatedRow] = []
    duplicates: List[Tuple[ValidatedRow, str]] = []
    seen: Set[str] = set()
    for row in rows:
        if row.fingerprint in existing:
            duplicates.append((row, CROSS_IMPORT))
        elif row.fingerprint in seen:
            duplicates.append((row, WITHIN_FILE))
        else:
            seen.add(row.fingerprint)
            new_rows.append(row)
    return new_rows, duplicates


def _build_record(kind: str, row: ValidatedRow, import_id: int, fingerprint: Optional[str] = None):
    fingerprint = fingerprint or row.fingerprint
    if kind == EXPENSE:
        return Expense(
            txn_date=row.txn_date,
            description=row.description,
            amount_cents=row.amount_cents,
            category=row.category,
            currency=row.currency,
            fingerprint=fingerprint,
            import_id=import_id,
        )
    return Income(
        income_date=row.income_date,
        amount_cents=row.amount_cents,
        source=row.source,
        currency=row.currency,
        fingerprint=fingerprint,
        import_id=import_id,
    )


def _build_duplicate(kind: str, row: ValidatedRow, import_id: int, reason: str) -> ImportDuplicate:
    if kind == EXPENSE:
        return ImportDuplicate(
            import_id=import_id,
            txn_date=row.txn_date,
            description=row.description,
            amount_cents=row.amount_cents,
            category=row.category,
            currency=row.currency,
            fingerprint=row.fingerprint,
            reason=reason,
            kind=kind,
        )
    return ImportDuplicate(
        import_id=import_id,
        txn_date=row.income_date,
        description=row.source,
        amount_cents=row.amount_cents,
        category=None,
        currency=row.currency,
        fingerprint=row.fingerprint,
        reason=reason,
        kind=kind,
    )


def record_failed_import(
    db: Session,
    kind: str,
    filename: str,
    failure: ImportFileFailure,
) -> ImportRecord:
    """Commit a ``failed`` audit row so rejected uploads stay visible in history."""

    record = ImportRecord(
        filename=filename,
        uploaded_at=datetime.utcnow(),
        row_count_total=failure.row_count_total or 0,
        row_count_inserted=0,
        row_count_duplicates=0,
        status=FAILED,
        error_message=failure.first_message,
        kind=kind,
    )
    try:
        db.add(record)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    return record


def ingest_rows(
    db: Session,
    kind: str,
    filename: str,
    rows: Sequence[ValidatedRow],
    total_rows: int,
    batch_size: int = 500,
) -> ImportSummary:
    """Persist validated rows and their audit record in one transaction."""

    existing = find_existing_fingerprints(
        db, kind, (row.fingerprint for row in rows), batch_size
    )
    new_rows, duplicates = partition_rows(rows, existing)

    record = ImportRecord(
        filename=filename,
        uploaded_at=datetime.utcnow(),
        row_count_total=total_rows,
        row_count_inserted=len(new_rows),
        row_count_duplicates=len(duplicates),
        status=SUCCEEDED,
        error_message=None,
        kind=kind,
    )
    try:
        db.add(record)
        db.flush()
        db.add_all(_build_record(kind, row, record.id) for row in new_rows)
        db.add_all(
            _build_duplicate(kind, row, record.id, reason) for row, reason in duplicates
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info(
        "Imported %s file (filename=%s, import_id=%s, rows=%s, inserted=%s, duplicates=%s)",
        kind,
        filename,
        record.id,
        total_rows,
        len(new_rows),
        len(duplicates),
    )
    return ImportSummary(
        import_id=record.id,
        filename=filename,
        total_rows=total_rows,
        inserted_rows=len(new_rows),
        duplicate_rows=len(duplicates),
    )


def import_file(
    db: Session,
    kind: str,
    filename: str,
    content_type: Optional[str],
    data: bytes,
    settings: ImportSettings,
) -> Union[ImportSummary, ImportFileFailure]:
    """Validate one uploaded file and persist it.

    Storage errors propagate after the session is rolled back.
    """

    _record_model(kind)
    result = processor_for_kind(kind).process(filename, content_type, data, settings)
    if isinstance(result, ImportFileFailure):
        record_failed_import(db, kind, filename, result)
        log.info(
            "Rejected %s file (filename=%s, errors=%s, first=%s)",
            kind,
            filename,
            len(result.errors),
            result.first_message,
        )
        return result
    return ingest_rows(
        db,
        kind,
        filename,
        result.rows,
        result.total_rows,
        settings.fingerprint_batch_size,
    )


def upload_files(
    db: Session,
    kind: str,
    files: Sequence[UploadedFile],
    settings: ImportSettings,
) -> BatchUploadResult:
    """Import a batch of files independently and aggregate the outcome.

    The batch status is ``succeeded`` when every file imported, ``partial``
    when some did and ``failed`` when none did. Row counts sum over the
    successful files only.
    """

    if not files:
        return BatchUploadResult(errors=[FieldError(0, "file", "Missing file in form-data.")])
    if len(files) > settings.max_files_per_upload:
        return BatchUploadResult(
            errors=[
                FieldError(
                    0,
                    "file",
                    f"You can upload up to {settings.max_files_per_upload} CSV files at once.",
                )
            ]
        )

    batch = BatchUploadResult()
    for upload in files:
        try:
            outcome = import_file(
                db, kind, upload.filename, upload.content_type, upload.data, settings
            )
        except SQLAlchemyError:
            db.rollback()
            log.exception(
                "Import failed with a storage error (filename=%s, kind=%s, size=%s)",
                upload.filename,
                kind,
                len(upload.data),
            )
            batch.files.append(
                {
                    "filename": upload.filename,
                    "status": FAILED,
                    "errors": [FieldError(0, "file", UPLOAD_FAILED_MESSAGE).as_dict()],
                }
            )
            continue

        if isinstance(outcome, ImportFileFailure):
            batch.files.append({"filename": upload.filename, **outcome.as_dict()})
            batch.invalidated_tags = [cache_tags.IMPORTS]
            continue

        batch.files.append(outcome.as_dict())
        batch.total_rows += outcome.total_rows
        batch.inserted_rows += outcome.inserted_rows
        batch.duplicate_rows += outcome.duplicate_rows

    succeeded = batch.succeeded_files
    if succeeded == len(batch.files):
        batch.status = SUCCEEDED
    elif succeeded:
        batch.status = PARTIAL
    else:
        batch.status = FAILED
    if succeeded:
        batch.invalidated_tags = tags_for_kind(kind)
    return batch


def import_selected_duplicates(
    db: Session,
    import_id: int,
    duplicate_ids: Iterable[int],
) -> int:
    """Promote held-back duplicates of ``import_id`` to real records.

    Each selected row gets a fresh fingerprint so it no longer collides with
    the record it duplicated. The inserts, the duplicate-row deletes and the
    parent counter updates share one transaction. Ids that do not belong to
    the import are ignored; the number actually rescued is returned.
    """

    ids = sorted({int(value) for value in duplicate_ids})
    record = db.get(ImportRecord, import_id)
    if record is None:
        raise ImportNotFoundError(import_id)
    if not ids:
        return 0

    selected = (
        db.query(ImportDuplicate)
        .filter(ImportDuplicate.import_id == import_id, ImportDuplicate.id.in_(ids))
        .order_by(ImportDuplicate.id.asc())
        .all()
    )
    if not selected:
        return 0

    try:
        for duplicate in selected:
            kind = duplicate.kind or EXPENSE
            fingerprint = rescue_fingerprint(duplicate.fingerprint)
            if kind == EXPENSE:
                db.add(
                    Expense(
                        txn_date=duplicate.txn_date,
                        description=duplicate.description,
                        amount_cents=duplicate.amount_cents,
                        category=duplicate.category or "",
                        currency=duplicate.currency,
                        fingerprint=fingerprint,
                        import_id=import_id,
                    )
                )
            else:
                db.add(
                    Income(
                        income_date=duplicate.txn_date,
                        amount_cents=duplicate.amount_cents,
                        source=duplicate.description,
                        currency=duplicate.currency,
                        fingerprint=fingerprint,
                        import_id=import_id,
                    )
                )
            db.delete(duplicate)

        rescued = len(selected)
        record.row_count_inserted += rescued
        record.row_count_duplicates = max(0, record.row_count_duplicates - rescued)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info("Rescued %s duplicate(s) into import %s", rescued, import_id)
    return rescued


def delete_import(db: Session, import_id: int) -> DeleteImportResult:
    """Delete an import with its records and any open duplicates."""

    record = db.get(ImportRecord, import_id)
    if record is None:
        return DeleteImportResult(status=FAILED, import_id=import_id, error="Import not found.")

    kind = record.kind or EXPENSE
    model = _record_model(kind)
    try:
        deleted = (
            db.query(model)
            .filter(model.import_id == import_id)
            .delete(synchronize_session=False)
        )
        db.query(ImportDuplicate).filter(ImportDuplicate.import_id == import_id).delete(
            synchronize_session=False
        )
        db.delete(record)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    log.info("Deleted import %s (kind=%s, records=%s)", import_id, kind, deleted)
    return DeleteImportResult(
        status=SUCCEEDED,
        import_id=import_id,
        deleted_record_count=deleted,
        invalidated_tags=tags_for_kind(kind),
    )


def list_imports(db: Session, kind: Optional[str] = None) -> List[Dict[str, Any]]:
    query = db.query(ImportRecord)
    if kind:
        query = query.filter(ImportRecord.kind == kind)
    records = query.order_by(ImportRecord.uploaded_at.desc(), ImportRecord.id.desc()).all()
    return [
        {
            "id": record.id,
            "filename": record.filename,
            "uploaded_at": record.uploaded_at.isoformat() if record.uploaded_at else None,
            "row_count_total": record.row_count_total,
            "row_count_inserted": record.row_count_inserted,
            "row_count_duplicates": record.row_count_duplicates,
            "status": record.status,
            "error_message": record.error_message,
            "kind": record.kind,
        }
        for record in records
    ]


def list_duplicates(db: Session, import_id: int) -> List[Dict[str, Any]]:
    duplicates = (
        db.query(ImportDuplicate)
        .filter(ImportDuplicate.import_id == import_id)
        .order_by(ImportDuplicate.id.asc())
        .all()
    )
    return [
        {
            "id": duplicate.id,
            "date": duplicate.txn_date,
            "description": duplicate.description,
            "amount_cents": duplicate.amount_cents,
            "category": duplicate.category,
            "currency": duplicate.currency,
            "reason": duplicate.reason,
            "kind": duplicate.kind,
        }
        for duplicate in duplicates
    ]
