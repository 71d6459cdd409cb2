"""Utilities for (re)building the FastAPI application state."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from tally.core.cache_tags import CacheTagRegistry
from tally.core.config import AppConfig
from tally.core.database import dispose_engine, init_db
from tally.core.logger import configure_logging
from tally.core.seed import ensure_seed
from tally.core.utils import coerce_bool


log = logging.getLogger(__name__)

DB_FILENAME = "tally.db"


def get_default_data_dir() -> str:
    """Return ``<project root>/data``, used when ``TALLY_DATA`` is unset."""

    package_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(os.path.dirname(package_dir), "data")


def reload_application_state(app: FastAPI, data_dir: str | None = None) -> AppConfig:
    """Reload configuration, logging and database connections in-place.

    ``config.yaml`` is re-read from disk and the SQLAlchemy engine is
    recreated, so edits to either take effect without restarting the server.
    The cache-tag registry survives reloads so existing subscribers keep
    receiving invalidations.
    """

    data_dir = data_dir or os.environ.get("TALLY_DATA") or get_default_data_dir()
    os.makedirs(data_dir, exist_ok=True)

    cfg = AppConfig.load(data_dir)
    diagnostics_cfg = cfg.raw.get("diagnostics", {}) if isinstance(cfg.raw, dict) else {}
    debug_logging = coerce_bool(diagnostics_cfg.get("debug_logging"), False)
    env_debug = os.environ.get("TALLY_DEBUG_LOGGING")
    if env_debug is not None:
        debug_logging = coerce_bool(env_debug, debug_logging)
    log_path = configure_logging(
        data_dir,
        debug_enabled=debug_logging,
        max_bytes=diagnostics_cfg.get("log_max_bytes", 1_048_576),
        retention=diagnostics_cfg.get("log_retention", 5),
    )

    db_path = os.path.join(data_dir, DB_FILENAME)

    # Recreate the engine so SQLite reopens the database file.
    dispose_engine()
    ensure_seed(db_path)
    init_db(db_path)

    app.state.config = cfg
    app.state.import_settings = cfg.import_settings()
    app.state.data_dir = data_dir
    app.state.db_path = db_path
    app.state.log_path = str(log_path)
    app.state.debug_logging_enabled = debug_logging
    if not isinstance(getattr(app.state, "cache_tags", None), CacheTagRegistry):
        app.state.cache_tags = CacheTagRegistry()

    log.info(
        "Application state reloaded (debug_logging=%s, db_path=%s, log_path=%s)",
        debug_logging,
        db_path,
        log_path,
    )

    return cfg
