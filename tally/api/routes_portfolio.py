from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tally.api.routes_import import get_import_settings, read_upload, signal_cache_tags
from tally.core import cache_tags
from tally.core.config import DEFAULT_CONFIG
from tally.core.database import get_session
from tally.core.logger import get_logger
from tally.services.dates import parse_strict_date
from tally.services.import_types import FieldError, ImportFileFailure
from tally.services.portfolio_store import (
    DuplicatePortfolioImportError,
    SnapshotValidationError,
    list_latest_breakdown,
    merge_snapshot_positions_from_import,
)
from tally.services.process_import_file import process_portfolio_file

router = APIRouter()
log = get_logger(__name__)

PORTFOLIO_FAILED_MESSAGE = "Portfolio import failed. Try again."


def _portfolio_config(request: Request) -> dict:
    defaults = DEFAULT_CONFIG["portfolio"]
    cfg = getattr(request.app.state, "config", None)
    section = cfg.raw.get("portfolio", {}) if cfg is not None and isinstance(cfg.raw, dict) else {}
    if not isinstance(section, dict):
        section = {}
    resolved = dict(defaults)
    for key, value in section.items():
        if isinstance(value, str) and value.strip():
            resolved[key] = value.strip()
    return resolved


def _failed(errors, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"status": "failed", "errors": [error.as_dict() for error in errors]},
        status_code=status_code,
    )


@router.post("/api/portfolio/imports")
async def upload_portfolio_file(
    request: Request,
    as_of_date: str = Form(""),
    file: Optional[UploadFile] = File(None),
    db: Session = Depends(get_session),
):
    as_of_date = (as_of_date or "").strip()
    if file is None:
        return _failed([FieldError(0, "file", "As-of date and file are required.")], 400)
    if not as_of_date:
        await file.close()
        return _failed([FieldError(0, "file", "As-of date is required.")], 400)
    if parse_strict_date(as_of_date) is None:
        await file.close()
        return _failed(
            [FieldError(0, "asOfDate", "As-of date must be a valid date in YYYY-MM-DD format.")],
            400,
        )

    settings = get_import_settings(request)
    upload = await read_upload(file, settings.max_upload_bytes)
    processed = process_portfolio_file(
        upload.filename, upload.content_type, upload.data, settings
    )
    if isinstance(processed, ImportFileFailure):
        log.info(
            "Rejected portfolio file (filename=%s, as_of_date=%s, errors=%s)",
            upload.filename,
            as_of_date,
            len(processed.errors),
        )
        return _failed(processed.errors, 400)

    portfolio_cfg = _portfolio_config(request)
    try:
        merged = merge_snapshot_positions_from_import(
            db,
            upload.filename,
            as_of_date,
            processed.rows,
            processed.total_rows,
            portfolio_name=portfolio_cfg["default_name"],
            base_currency=portfolio_cfg["base_currency"],
            default_security_currency=portfolio_cfg["security_currency"],
        )
    except DuplicatePortfolioImportError as exc:
        log.info(
            "Skipped repeated portfolio import (filename=%s, as_of_date=%s)",
            upload.filename,
            as_of_date,
        )
        return _failed([FieldError(0, "file", str(exc))], 409)
    except (SQLAlchemyError, SnapshotValidationError):
        log.exception(
            "Portfolio import failed (filename=%s, as_of_date=%s, rows=%s, symbols=%s)",
            upload.filename,
            as_of_date,
            processed.total_rows,
            processed.unique_symbols,
        )
        return _failed([FieldError(0, "file", PORTFOLIO_FAILED_MESSAGE)], 500)

    signal_cache_tags(request, [cache_tags.PORTFOLIO])
    return {
        "status": "succeeded",
        "as_of_date": as_of_date,
        "filename": upload.filename,
        "imported_rows": merged["imported_rows"],
        "merged_symbols": processed.unique_symbols,
        "total_portfolio_symbols": merged["position_count"],
    }


@router.get("/api/portfolio")
def get_portfolio(request: Request, db: Session = Depends(get_session)):
    portfolio_cfg = _portfolio_config(request)
    return list_latest_breakdown(
        db,
        portfolio_name=portfolio_cfg["default_name"],
        base_currency=portfolio_cfg["base_currency"],
    )
