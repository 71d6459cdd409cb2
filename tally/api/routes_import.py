from typing import List, Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tally.core.config import ImportSettings
from tally.core.database import get_session
from tally.core.logger import get_logger
from tally.core.models import IMPORT_KINDS, ImportRecord
from tally.services.import_ingestion import (
    EXPENSE,
    INCOME,
    ImportNotFoundError,
    UploadedFile,
    delete_import,
    import_selected_duplicates,
    list_duplicates,
    list_imports,
    tags_for_kind,
    upload_files,
)
from tally.services.process_import_file import list_processors

router = APIRouter()
log = get_logger(__name__)


class DuplicateSelection(BaseModel):
    duplicate_ids: List[int] = []


def get_import_settings(request: Request) -> ImportSettings:
    settings = getattr(request.app.state, "import_settings", None)
    if isinstance(settings, ImportSettings):
        return settings
    return ImportSettings()


def signal_cache_tags(request: Request, tags: List[str]) -> List[str]:
    """Invalidate ``tags`` on the app registry; call only after a commit."""

    registry = getattr(request.app.state, "cache_tags", None)
    if registry is None or not tags:
        return []
    return registry.invalidate(tags)


async def read_upload(upload: UploadFile, max_bytes: int) -> UploadedFile:
    # Reading one byte past the limit is enough to detect an oversized file
    # without buffering an unbounded payload.
    try:
        data = await upload.read(max_bytes + 1)
    finally:
        await upload.close()
    return UploadedFile(
        filename=upload.filename or "",
        content_type=upload.content_type,
        data=data,
    )


async def _upload(request: Request, db: Session, kind: str, files: Optional[List[UploadFile]]):
    settings = get_import_settings(request)
    uploads = [await read_upload(upload, settings.max_upload_bytes) for upload in files or []]

    result = upload_files(db, kind, uploads, settings)
    signal_cache_tags(request, result.invalidated_tags)
    log.info(
        "Processed %s upload batch (files=%s, status=%s, inserted=%s, duplicates=%s)",
        kind,
        len(uploads),
        result.status,
        result.inserted_rows,
        result.duplicate_rows,
    )
    if result.errors:
        return JSONResponse(result.as_dict(), status_code=400)
    return result.as_dict()


@router.post("/api/imports/expenses")
async def upload_expense_files(
    request: Request,
    file: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_session),
):
    return await _upload(request, db, EXPENSE, file)


@router.post("/api/imports/income")
async def upload_income_files(
    request: Request,
    file: Optional[List[UploadFile]] = File(None),
    db: Session = Depends(get_session),
):
    return await _upload(request, db, INCOME, file)


@router.get("/api/imports/processors")
def get_import_processors():
    return {"processors": [processor.describe() for processor in list_processors()]}


@router.get("/api/imports")
def get_imports(kind: Optional[str] = None, db: Session = Depends(get_session)):
    if kind and kind not in IMPORT_KINDS:
        return JSONResponse({"detail": f"Unknown import kind: {kind}"}, status_code=400)
    return {"imports": list_imports(db, kind)}


@router.get("/api/imports/{import_id}/duplicates")
def get_import_duplicates(import_id: int, db: Session = Depends(get_session)):
    if db.get(ImportRecord, import_id) is None:
        return JSONResponse({"detail": "Import not found."}, status_code=404)
    return {"import_id": import_id, "duplicates": list_duplicates(db, import_id)}


@router.post("/api/imports/{import_id}/duplicates")
def rescue_import_duplicates(
    import_id: int,
    payload: DuplicateSelection,
    request: Request,
    db: Session = Depends(get_session),
):
    if not payload.duplicate_ids:
        return JSONResponse(
            {"status": "failed", "error": "No duplicates selected."}, status_code=400
        )

    record = db.get(ImportRecord, import_id)
    kind = record.kind if record is not None else EXPENSE
    try:
        imported_count = import_selected_duplicates(db, import_id, payload.duplicate_ids)
    except ImportNotFoundError as exc:
        return JSONResponse({"status": "failed", "error": str(exc)}, status_code=404)
    except SQLAlchemyError:
        log.exception(
            "Failed to import duplicates (import_id=%s, selected=%s)",
            import_id,
            len(payload.duplicate_ids),
        )
        return JSONResponse(
            {"status": "failed", "error": "Failed to import duplicates."}, status_code=500
        )

    if imported_count:
        signal_cache_tags(request, tags_for_kind(kind))
    return {"status": "succeeded", "imported_count": imported_count}


@router.delete("/api/imports/{import_id}")
def remove_import(import_id: int, request: Request, db: Session = Depends(get_session)):
    try:
        result = delete_import(db, import_id)
    except SQLAlchemyError:
        log.exception("Failed to delete import %s", import_id)
        return JSONResponse(
            {"status": "failed", "error": "Failed to delete import."}, status_code=500
        )

    if result.error:
        return JSONResponse(result.as_dict(), status_code=404)
    signal_cache_tags(request, result.invalidated_tags)
    return result.as_dict()


@router.get("/api/cache-tags")
def get_cache_tags(request: Request):
    registry = getattr(request.app.state, "cache_tags", None)
    return {"tags": registry.snapshot() if registry is not None else {}}
